"""
Audit Hashing — SHA-256 digests that chain audit records together.
"""
import hashlib
import json


def canonical_json(data: dict) -> str:
    """Stable JSON encoding (sorted keys, no whitespace) used as hash input."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def generate_hash(data: dict) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def generate_chain_hash(current_data: dict, previous_hash: str = "") -> str:
    """SHA-256(previous_hash + SHA-256(current_record)).

    Editing or deleting any record changes every hash after it.
    """
    chain_input = f"{previous_hash}{generate_hash(current_data)}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()
