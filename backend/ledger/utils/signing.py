"""
Payment Signing — HMAC-SHA256 signatures for pay links and gateway callbacks.

The guard is stateless: it signs and verifies over its inputs plus a clock.
Nonce single-use tracking lives in ``ledger.services.replay_guard``.
"""
import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from ledger.exceptions import InvalidSignature, SignatureExpired
from ledger.utils.clock import unix_seconds, utcnow

SIGNATURE_FIELDS = ("sign", "signature")
PLACEHOLDER_MARKER = "REPLACE_WITH"


def build_sign_string(payload: Mapping[str, object]) -> str:
    """Deterministic ``k1=v1&k2=v2`` string: sorted keys, signature and empty values excluded."""
    keys = sorted(k for k in payload if k not in SIGNATURE_FIELDS)
    return "&".join(
        f"{key}={payload[key]}"
        for key in keys
        if payload[key] is not None and payload[key] != ""
    )


def compute_signature(payload: Mapping[str, object], secret: str) -> str:
    """Lowercase hex HMAC-SHA256 of ``build_sign_string(payload)``."""
    message = build_sign_string(payload).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def generate_nonce() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SignedPayload:
    nonce: str
    timestamp: int
    signature: str


class SignatureGuard:
    """Signs payloads and verifies signatures inside a fixed validity window.

    Args:
        secret: Shared HMAC key. Empty or placeholder keys are refused.
        window_seconds: Maximum age (either direction) of a signed timestamp.
        clock: Returns the current naive-UTC datetime.
    """

    def __init__(
        self,
        secret: str,
        window_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not secret or PLACEHOLDER_MARKER in secret:
            raise ValueError("payment secret is not configured")
        if window_seconds <= 0:
            raise ValueError("signature window must be positive")
        self._secret = secret
        self.window_seconds = window_seconds
        self._clock = clock

    def now(self) -> int:
        return unix_seconds(self._clock())

    def sign(self, payload: Mapping[str, object], nonce: Optional[str] = None) -> SignedPayload:
        nonce = nonce or generate_nonce()
        timestamp = self.now()
        signature = compute_signature({**payload, "nonce": nonce, "timestamp": timestamp}, self._secret)
        return SignedPayload(nonce=nonce, timestamp=timestamp, signature=signature)

    def sign_params(self, params: Mapping[str, object]) -> str:
        """Signature for params that already carry their own nonce/timestamp."""
        return compute_signature(params, self._secret)

    def verify(
        self,
        payload: Mapping[str, object],
        nonce: str,
        timestamp: int | str,
        signature: str,
    ) -> None:
        """Raise ``SignatureExpired`` or ``InvalidSignature``; return None when valid."""
        ts = self._check_window(timestamp)
        expected = compute_signature({**payload, "nonce": nonce, "timestamp": ts}, self._secret)
        self._compare(expected, signature)

    def verify_callback(self, params: Mapping[str, object]) -> None:
        """Verify a gateway callback whose ``sign`` covers every other field."""
        self._check_window(params.get("timestamp"))
        expected = compute_signature(params, self._secret)
        self._compare(expected, str(params.get("sign") or ""))

    def _check_window(self, timestamp) -> int:
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            raise InvalidSignature("timestamp missing or malformed")
        if abs(self.now() - ts) > self.window_seconds:
            raise SignatureExpired(f"signature timestamp outside {self.window_seconds}s window")
        return ts

    @staticmethod
    def _compare(expected: str, provided: str) -> None:
        if not hmac.compare_digest(expected.encode("utf-8"), (provided or "").encode("utf-8")):
            raise InvalidSignature("signature mismatch")
