from ledger.utils.hashing import generate_hash, generate_chain_hash
from ledger.utils.signing import SignatureGuard, SignedPayload, build_sign_string, compute_signature
from ledger.utils.validators import require_positive_int, parse_minor_units, validate_amount

__all__ = [
    "generate_hash", "generate_chain_hash",
    "SignatureGuard", "SignedPayload", "build_sign_string", "compute_signature",
    "require_positive_int", "parse_minor_units", "validate_amount",
]
