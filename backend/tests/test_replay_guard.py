import pytest

from ledger.exceptions import InvalidInput, ReplayDetected
from ledger.services.replay_guard import NonceRegistry
from ledger.utils.ttl_store import InMemoryTTLStore


class Tick:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_second_use_is_a_replay():
    registry = NonceRegistry(InMemoryTTLStore(), ttl_seconds=900)
    registry.consume("n-1")
    with pytest.raises(ReplayDetected):
        registry.consume("n-1")
    assert registry.seen("n-1")


def test_scopes_are_independent():
    registry = NonceRegistry(InMemoryTTLStore(), ttl_seconds=900)
    registry.consume("n-1", scope="pay")
    registry.consume("n-1", scope="callback")


def test_nonce_is_forgotten_after_ttl():
    tick = Tick()
    registry = NonceRegistry(InMemoryTTLStore(clock=tick), ttl_seconds=900)
    registry.consume("n-1")
    tick.t += 899
    with pytest.raises(ReplayDetected):
        registry.consume("n-1")
    tick.t += 2
    registry.consume("n-1")


def test_ttl_must_cover_signature_window():
    with pytest.raises(ValueError):
        NonceRegistry(InMemoryTTLStore(), ttl_seconds=60, min_window_seconds=300)


def test_empty_nonce_is_invalid():
    with pytest.raises(InvalidInput):
        NonceRegistry(InMemoryTTLStore(), ttl_seconds=900).consume("")


def test_counter_expires():
    tick = Tick()
    store = InMemoryTTLStore(clock=tick)
    assert store.incr("k", 60) == 1
    assert store.incr("k", 60) == 2
    tick.t += 61
    assert store.incr("k", 60) == 1


def test_released_nonce_can_be_used_again():
    registry = NonceRegistry(InMemoryTTLStore(), ttl_seconds=900)
    registry.consume("n-1")
    registry.release("n-1")
    assert not registry.seen("n-1")
    registry.consume("n-1")
    with pytest.raises(ReplayDetected):
        registry.consume("n-1")
