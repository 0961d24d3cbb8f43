from datetime import datetime

import pytest

from ledger.exceptions import InvalidSignature, SignatureExpired
from ledger.utils.signing import SignatureGuard, build_sign_string, compute_signature

from tests.conftest import FrozenClock


@pytest.fixture
def guard_clock():
    return FrozenClock(datetime(2024, 3, 10, 12, 0, 0))


@pytest.fixture
def guard(guard_clock):
    return SignatureGuard("unit-secret", 600, clock=guard_clock)


def test_sign_string_sorts_keys_and_skips_signature_and_empty_values():
    payload = {"b": "2", "a": 1, "sign": "zzz", "signature": "yyy", "c": "", "d": None}
    assert build_sign_string(payload) == "a=1&b=2"


def test_signature_is_lowercase_hex_sha256():
    sig = compute_signature({"order_no": "ORD1", "amount": 600}, "k")
    assert len(sig) == 64
    assert sig == sig.lower()
    assert sig != compute_signature({"order_no": "ORD1", "amount": 601}, "k")


def test_round_trip_verifies(guard):
    payload = {"order_no": "ORD1", "amount": 600, "user_id": 7}
    signed = guard.sign(payload)
    guard.verify(payload, signed.nonce, signed.timestamp, signed.signature)


def test_tampered_payload_is_rejected(guard):
    payload = {"order_no": "ORD1", "amount": 600, "user_id": 7}
    signed = guard.sign(payload)
    with pytest.raises(InvalidSignature):
        guard.verify({**payload, "amount": 1}, signed.nonce, signed.timestamp, signed.signature)


def test_other_secret_is_rejected(guard, guard_clock):
    payload = {"order_no": "ORD1"}
    signed = SignatureGuard("other-secret", 600, clock=guard_clock).sign(payload)
    with pytest.raises(InvalidSignature):
        guard.verify(payload, signed.nonce, signed.timestamp, signed.signature)


def test_signature_comparison_is_exact(guard):
    payload = {"order_no": "ORD1"}
    signed = guard.sign(payload)
    with pytest.raises(InvalidSignature):
        guard.verify(payload, signed.nonce, signed.timestamp, signed.signature.upper())


def test_window_boundary(guard, guard_clock):
    payload = {"order_no": "ORD1"}
    signed = guard.sign(payload)
    guard_clock.advance(seconds=600)
    guard.verify(payload, signed.nonce, signed.timestamp, signed.signature)
    guard_clock.advance(seconds=1)
    with pytest.raises(SignatureExpired):
        guard.verify(payload, signed.nonce, signed.timestamp, signed.signature)


def test_future_timestamp_outside_window_is_rejected(guard, guard_clock):
    payload = {"order_no": "ORD1"}
    signed = guard.sign(payload)
    guard_clock.advance(seconds=-601)
    with pytest.raises(SignatureExpired):
        guard.verify(payload, signed.nonce, signed.timestamp, signed.signature)


def test_malformed_timestamp(guard):
    with pytest.raises(InvalidSignature):
        guard.verify({"order_no": "ORD1"}, "n", "not-a-number", "sig")


def test_callback_params_verify_and_tamper(guard):
    params = {
        "order_no": "ORD1",
        "trade_no": "MOCK1",
        "amount": "600",
        "status": "success",
        "timestamp": str(guard.now()),
        "nonce": "abc",
    }
    params["sign"] = guard.sign_params(params)
    guard.verify_callback(params)

    with pytest.raises(InvalidSignature):
        guard.verify_callback({**params, "amount": "599"})
    with pytest.raises(InvalidSignature):
        guard.verify_callback({**params, "sign": ""})


@pytest.mark.parametrize("secret", ["", "REPLACE_WITH_PAYMENT_SECRET"])
def test_unconfigured_secret_is_refused(secret):
    with pytest.raises(ValueError):
        SignatureGuard(secret, 600)
