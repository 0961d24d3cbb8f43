"""
TTL Store — Expiring key/value collaborator for nonces and rate-limit counters.

Two backends share one small interface:
    InMemoryTTLStore  single-process store for development and tests
    RedisTTLStore     shared store for multi-process deployments
"""
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis


class TTLStore(Protocol):
    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set ``key`` only if absent. True when this call created it."""

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL on first use."""

    def get(self, key: str) -> Optional[str]:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryTTLStore:
    """Dict-backed store. Entries are purged lazily on access."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_seconds)
            return True

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._clock() + ttl_seconds)
                return 1
            count = int(entry[0]) + 1
            self._data[key] = (str(count), entry[1])
            return count

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class RedisTTLStore:
    """Redis-backed store; ``add`` maps to ``SET NX EX`` so it is atomic across processes."""

    def __init__(self, client: "redis.Redis", prefix: str = "ledger:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisTTLStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self._client.set(self._prefix + key, value, nx=True, ex=ttl_seconds))

    def incr(self, key: str, ttl_seconds: int) -> int:
        full_key = self._prefix + key
        pipe = self._client.pipeline()
        pipe.incr(full_key)
        pipe.expire(full_key, ttl_seconds, nx=True)
        count, _ = pipe.execute()
        return int(count)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(self._prefix + key)

    def delete(self, key: str) -> None:
        self._client.delete(self._prefix + key)


_default_store: Optional[TTLStore] = None
_store_lock = threading.Lock()


def get_ttl_store() -> TTLStore:
    """Process-wide store, Redis when ``REDIS_URL`` is configured."""
    global _default_store
    with _store_lock:
        if _default_store is None:
            from ledger.config import get_settings

            url = get_settings().REDIS_URL
            _default_store = RedisTTLStore.from_url(url) if url else InMemoryTTLStore()
        return _default_store
