import pytest

from ledger.config import Settings
from ledger.exceptions import (
    AmountMismatch, CallbackForbidden, InvalidInput, InvalidSignature,
    ReplayDetected, SignatureExpired, StoreUnavailable,
)
from ledger.models.order import ORDER_PAID, ORDER_PENDING
from ledger.services.audit_service import AuditService
from ledger.services.callback_service import PaymentCallbackService
from ledger.services.mock_gateway import MockGateway
from ledger.services.order_service import OrderService
from ledger.services.risk_engine import AuditAction
from ledger.utils.ttl_store import InMemoryTTLStore


@pytest.fixture
def store():
    return InMemoryTTLStore()


@pytest.fixture
def callbacks(db, settings, store, audit, catalog, clock):
    return PaymentCallbackService(db, settings=settings, store=store, audit=audit,
                                  catalog=catalog, clock=clock)


@pytest.fixture
def gateway(settings, clock):
    return MockGateway(settings, clock=clock)


@pytest.fixture
def order(db, audit, clock, user):
    return OrderService(db, audit=audit, clock=clock).create_order(user.id, 1200, "coins", "140").order


def system_actions(db):
    return [entry.action for entry in AuditService.get_trail(db, None)]


def test_signed_callback_settles_order(callbacks, gateway, order, user):
    result = callbacks.process(gateway.complete(order), client_ip="10.0.0.1")
    assert result.status == ORDER_PAID
    assert result.duplicate is False
    assert result.granted["coins"] == 140
    assert callbacks.orchestrator.ledger.balance(user.id) == 140


def test_replayed_callback_is_rejected(callbacks, gateway, order, db, user):
    params = gateway.complete(order)
    callbacks.process(params)
    with pytest.raises(ReplayDetected):
        callbacks.process(params)
    assert callbacks.orchestrator.ledger.balance(user.id) == 140
    assert AuditAction.REPLAY_DETECTED in system_actions(db)


def test_tampered_callback_is_rejected(callbacks, gateway, order, db):
    params = gateway.complete(order)
    params["amount"] = "1"
    with pytest.raises(InvalidSignature):
        callbacks.process(params, client_ip="6.6.6.6")
    db.refresh(order)
    assert order.status == ORDER_PENDING

    [entry] = AuditService.get_trail(db, None)
    assert entry.action == AuditAction.SIGNATURE_INVALID
    assert entry.risk_level == "high"
    assert entry.ip_address == "6.6.6.6"


def test_callback_signed_with_another_secret(callbacks, order, clock):
    foreign = MockGateway(Settings(PAYMENT_SECRET="x", CALLBACK_SECRET="someone-else"), clock=clock)
    with pytest.raises(InvalidSignature):
        callbacks.process(foreign.complete(order))


def test_stale_callback_is_rejected(callbacks, gateway, order, clock, db):
    params = gateway.complete(order)
    clock.advance(seconds=301)
    with pytest.raises(SignatureExpired):
        callbacks.process(params)
    db.refresh(order)
    assert order.status == ORDER_PENDING
    assert AuditAction.SIGNATURE_EXPIRED in system_actions(db)


def test_rejected_nonce_is_not_burned(callbacks, gateway, order):
    params = gateway.complete(order)
    forged = dict(params, sign="0" * 64)
    with pytest.raises(InvalidSignature):
        callbacks.process(forged)
    assert callbacks.process(params).status == ORDER_PAID


def test_nonce_is_released_when_settlement_fails(callbacks, gateway, order, user, db, monkeypatch):
    params = gateway.complete(order)

    def unavailable(*args, **kwargs):
        raise StoreUnavailable("db down")

    monkeypatch.setattr(callbacks.orchestrator.ledger, "credit", unavailable)
    with pytest.raises(StoreUnavailable):
        callbacks.process(params)
    db.refresh(order)
    assert order.status == ORDER_PENDING
    assert not callbacks.nonces.seen(params["nonce"])

    monkeypatch.undo()
    assert callbacks.process(params).status == ORDER_PAID
    assert callbacks.orchestrator.ledger.balance(user.id) == 140


def test_gateway_retry_is_acknowledged(callbacks, gateway, order, user):
    first = gateway.complete(order)
    callbacks.process(first)

    retry = dict(first, nonce="f" * 32)
    retry.pop("sign")
    retry["sign"] = gateway.guard.sign_params(retry)
    result = callbacks.process(retry)
    assert result.duplicate is True
    assert result.status == ORDER_PAID
    assert callbacks.orchestrator.ledger.balance(user.id) == 140


def test_conflicting_second_callback_is_not_a_duplicate(callbacks, gateway, order):
    from ledger.exceptions import AlreadyTerminal

    callbacks.process(gateway.complete(order))
    with pytest.raises(AlreadyTerminal):
        callbacks.process(gateway.complete(order, outcome="failed"))


def test_amount_mismatch(callbacks, gateway, order, user, db):
    with pytest.raises(AmountMismatch):
        callbacks.process(gateway.complete(order, amount=1199))
    db.refresh(order)
    assert order.status == ORDER_PENDING
    assert callbacks.orchestrator.ledger.balance(user.id) == 0
    assert AuditService.get_trail(db, user.id)[0].action == AuditAction.PAYMENT_REJECTED


def test_missing_fields(callbacks, gateway, order):
    params = gateway.complete(order)
    del params["trade_no"]
    with pytest.raises(InvalidInput):
        callbacks.process(params)


def test_ip_allow_list_in_production(db, store, audit, catalog, clock, order, gateway):
    prod = Settings(
        ENVIRONMENT="production",
        PAYMENT_CALLBACK_IPS="10.0.0.1, 10.0.0.2",
        PAYMENT_SECRET="test-payment-secret",
        CALLBACK_SECRET="test-callback-secret",
    )
    callbacks = PaymentCallbackService(db, settings=prod, store=store, audit=audit,
                                       catalog=catalog, clock=clock)
    with pytest.raises(CallbackForbidden):
        callbacks.process(gateway.complete(order), client_ip="192.168.1.5")
    assert AuditAction.CALLBACK_IP_REJECTED in system_actions(db)
    assert callbacks.process(gateway.complete(order), client_ip="10.0.0.2").status == ORDER_PAID


def test_ip_check_is_off_outside_production(callbacks):
    assert callbacks.is_ip_allowed("203.0.113.9")
    assert callbacks.is_ip_allowed(None)
