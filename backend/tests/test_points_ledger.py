import threading
from datetime import date

import pytest

from ledger.database import SessionLocal
from ledger.exceptions import AlreadyClaimed, InsufficientBalance, InvalidAmount, InvalidInput, UserNotFound
from ledger.models.points import DailyClaim, PointsTransaction
from ledger.models.user import User
from ledger.services.audit_service import AuditService
from ledger.services.points_ledger import PointsLedger, find_package
from ledger.services.subscription_service import SubscriptionService

from tests.conftest import make_user


@pytest.fixture
def ledger(db, audit):
    return PointsLedger(db, audit=audit)


def test_credit_appends_transaction_with_snapshots(ledger, user):
    tx = ledger.credit(user.id, 130, source="purchase", reference_type="order", reference_id="ORD1")
    assert tx.amount == 130
    assert (tx.balance_before, tx.balance_after) == (0, 130)
    assert tx.type == "earn"
    assert ledger.balance(user.id) == 130


def test_debit_records_negative_amount(ledger, user):
    ledger.credit(user.id, 100, source="purchase")
    tx = ledger.debit(user.id, 40, source="shop")
    assert tx.amount == -40
    assert (tx.balance_before, tx.balance_after) == (100, 60)
    assert tx.type == "spend"


def test_debit_beyond_balance_fails_without_side_effects(ledger, user, db):
    ledger.credit(user.id, 10, source="purchase")
    with pytest.raises(InsufficientBalance):
        ledger.debit(user.id, 11, source="shop")
    assert ledger.balance(user.id) == 10
    assert db.query(PointsTransaction).count() == 1


@pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True])
def test_non_positive_or_non_integer_amounts_are_rejected(ledger, user, amount):
    with pytest.raises(InvalidAmount):
        ledger.credit(user.id, amount, source="purchase")
    with pytest.raises(InvalidAmount):
        ledger.debit(user.id, amount, source="shop")


def test_unknown_user(ledger):
    with pytest.raises(UserNotFound):
        ledger.credit(999, 5, source="purchase")
    with pytest.raises(UserNotFound):
        ledger.debit(999, 5, source="shop")
    with pytest.raises(UserNotFound):
        ledger.balance(999)


def test_refund_and_gift_types(ledger, user):
    refund = ledger.refund(user.id, 25, original_reference_id="17")
    gift = ledger.gift(user.id, 5, operator_id=1, reason="launch promo")
    assert (refund.type, refund.source, refund.reference_id) == ("refund", "refund", "17")
    assert (gift.type, gift.source, gift.operator_id) == ("gift", "admin", 1)
    with pytest.raises(InvalidInput):
        ledger.gift(user.id, 5, operator_id=1, reason="  ")


def test_sum_of_transactions_equals_balance(ledger, user):
    ledger.credit(user.id, 500, source="purchase")
    ledger.debit(user.id, 120, source="shop")
    ledger.gift(user.id, 30, operator_id=None, reason="apology")
    ledger.debit(user.id, 410, source="shop")
    with pytest.raises(InsufficientBalance):
        ledger.debit(user.id, 1, source="shop")
    report = ledger.reconcile(user.id)
    assert report == {"user_id": user.id, "balance": 0, "ledger_sum": 0, "consistent": True}


def test_reconcile_flags_out_of_band_edits(ledger, user, db):
    ledger.credit(user.id, 50, source="purchase")
    db.query(User).filter(User.id == user.id).update({User.points: 75})
    db.commit()
    assert ledger.reconcile(user.id)["consistent"] is False


def test_history_is_newest_first_and_paged(ledger, user):
    for amount in (1, 2, 3, 4, 5):
        ledger.credit(user.id, amount, source="purchase")
    page = [tx.amount for tx in ledger.history(user.id, limit=2, offset=1)]
    assert page == [4, 3]


def test_iter_history_walks_every_page_and_restarts(ledger, user):
    for amount in range(1, 8):
        ledger.credit(user.id, amount, source="purchase")
    first = [tx.amount for tx in ledger.iter_history(user.id, page_size=3)]
    second = [tx.amount for tx in ledger.iter_history(user.id, page_size=3)]
    assert first == [7, 6, 5, 4, 3, 2, 1]
    assert second == first


def test_history_ignores_other_users(ledger, user, db):
    other = make_user(db, "bob")
    ledger.credit(other.id, 9, source="purchase")
    assert list(ledger.history(user.id)) == []


def test_concurrent_debits_never_overdraw(ledger, user):
    ledger.credit(user.id, 100, source="purchase")
    user_id = user.id
    outcomes = []
    lock = threading.Lock()

    def worker():
        session = SessionLocal()
        try:
            PointsLedger(session, audit=AuditService(SessionLocal)).debit(user_id, 30, source="shop")
            result = "ok"
        except InsufficientBalance:
            result = "insufficient"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 3
    assert outcomes.count("insufficient") == 5
    assert ledger.balance(user_id) == 10
    assert ledger.reconcile(user_id)["consistent"] is True


def test_recharge_packages():
    package = find_package("pkg_12")
    assert (package.price, package.total_coins) == (1200, 140)
    with pytest.raises(InvalidInput):
        find_package("pkg_0")


def test_daily_reward_is_credited_once_per_day(ledger, user):
    tx = ledger.claim_daily_reward(user.id, 10, today=date(2024, 3, 1))
    assert tx.amount == 10
    assert tx.source == "daily_login"
    assert tx.reference_type == "daily_claim" and tx.reference_id == "2024-03-01"

    with pytest.raises(AlreadyClaimed):
        ledger.claim_daily_reward(user.id, 10, today=date(2024, 3, 1))
    assert ledger.balance(user.id) == 10

    ledger.claim_daily_reward(user.id, 10, today=date(2024, 3, 2))
    assert ledger.balance(user.id) == 20
    assert ledger.reconcile(user.id)["consistent"] is True


def test_daily_reward_uses_tier_multiplier(ledger, user, db, catalog):
    subs = SubscriptionService(db, catalog=catalog)
    subs.create_or_activate(user.id, catalog.by_name("vip").id, "monthly")
    multiplier = subs.privilege_value(user.id, "coin_multiplier", 1.0)
    assert multiplier == 1.5

    tx = ledger.claim_daily_reward(user.id, 15, multiplier)
    assert tx.amount == 22


def test_daily_reward_for_unknown_user(ledger):
    with pytest.raises(UserNotFound):
        ledger.claim_daily_reward(999, 10)


def test_concurrent_daily_claims_credit_once(ledger, user, db):
    user_id = user.id
    today = date(2024, 3, 1)
    outcomes = []
    lock = threading.Lock()

    def worker():
        session = SessionLocal()
        try:
            PointsLedger(session, audit=AuditService(SessionLocal)).claim_daily_reward(user_id, 10, today=today)
            result = "ok"
        except AlreadyClaimed:
            result = "claimed"
        finally:
            session.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("claimed") == 5
    assert ledger.balance(user_id) == 10
    assert db.query(DailyClaim).filter(DailyClaim.user_id == user_id).count() == 1
