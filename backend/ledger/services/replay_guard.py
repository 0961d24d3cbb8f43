"""
Replay Guard — single-use nonce registry on top of the TTL store.
"""
from ledger.exceptions import InvalidInput, ReplayDetected
from ledger.utils.ttl_store import TTLStore


class NonceRegistry:
    """Marks nonces as used; a second use within the TTL is a replay.

    The TTL must cover the signature validity window, otherwise a nonce could
    be forgotten while its signature is still accepted.
    """

    def __init__(self, store: TTLStore, ttl_seconds: int, min_window_seconds: int = 0):
        if ttl_seconds < min_window_seconds:
            raise ValueError("nonce TTL must be at least the signature window")
        self._store = store
        self._ttl = ttl_seconds

    def consume(self, nonce: str, scope: str = "callback") -> None:
        if not nonce:
            raise InvalidInput("nonce is required")
        if not self._store.add(f"nonce:{scope}:{nonce}", "1", self._ttl):
            raise ReplayDetected(f"nonce already used: scope={scope}")

    def seen(self, nonce: str, scope: str = "callback") -> bool:
        return self._store.get(f"nonce:{scope}:{nonce}") is not None

    def release(self, nonce: str, scope: str = "callback") -> None:
        """Forget a consumed nonce so the same message can be retried."""
        if nonce:
            self._store.delete(f"nonce:{scope}:{nonce}")
