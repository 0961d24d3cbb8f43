from datetime import datetime

import pytest

from ledger.exceptions import InvalidInput, SubscriptionNotFound
from ledger.models.subscription import SUB_ACTIVE, SUB_EXPIRED
from ledger.services.audit_service import AuditService
from ledger.services.risk_engine import AuditAction
from ledger.services.subscription_service import SubscriptionService, add_months, add_period
from ledger.services.tier_service import TierPrivileges

from tests.conftest import FrozenClock


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 2, 10, 12, 0, 0))


@pytest.fixture
def subs(db, catalog, audit, clock):
    return SubscriptionService(db, catalog=catalog, audit=audit, clock=clock)


@pytest.fixture
def vip(catalog):
    return catalog.by_name("vip")


@pytest.fixture
def svip(catalog):
    return catalog.by_name("svip")


@pytest.mark.parametrize("start, months, expected", [
    (datetime(2024, 1, 31), 1, datetime(2024, 2, 29)),
    (datetime(2023, 1, 31), 1, datetime(2023, 2, 28)),
    (datetime(2024, 3, 31), 3, datetime(2024, 6, 30)),
    (datetime(2024, 11, 15), 3, datetime(2025, 2, 15)),
    (datetime(2024, 2, 29), 12, datetime(2025, 2, 28)),
])
def test_add_months_clamps_to_month_end(start, months, expected):
    assert add_months(start, months) == expected


def test_add_period_rejects_unknown_period():
    with pytest.raises(InvalidInput):
        add_period(datetime(2024, 1, 1), "weekly")


def test_activation(subs, user, vip):
    sub = subs.create_or_activate(user.id, vip.id, "monthly", order_no="ORD1")
    assert sub.status == SUB_ACTIVE
    assert sub.start_date == datetime(2024, 2, 10, 12)
    assert sub.end_date == datetime(2024, 3, 10, 12)
    assert sub.next_notify_at == datetime(2024, 3, 7, 12)
    assert sub.auto_renew is True
    assert sub.order_no == "ORD1"


def test_renewal_extends_from_current_end(subs, user, vip, clock):
    subs.create_or_activate(user.id, vip.id, "monthly")
    clock.now = datetime(2024, 3, 1, 9)
    renewed = subs.create_or_activate(user.id, vip.id, "monthly")
    assert renewed.start_date == datetime(2024, 2, 10, 12)
    assert renewed.end_date == datetime(2024, 4, 10, 12)
    assert len(subs.history(user.id)) == 1


def test_upgrade_restarts_now(subs, user, vip, svip, clock):
    subs.create_or_activate(user.id, vip.id, "monthly")
    clock.now = datetime(2024, 2, 20, 8)
    upgraded = subs.create_or_activate(user.id, svip.id, "monthly")
    assert upgraded.tier_id == svip.id
    assert upgraded.start_date == datetime(2024, 2, 20, 8)
    assert upgraded.end_date == datetime(2024, 3, 20, 8)
    assert upgraded.next_notify_at == datetime(2024, 3, 17, 8)
    assert subs.current_tier(user.id).name == "svip"


def test_lower_tier_purchase_extends_higher_tier(subs, user, vip, svip):
    subs.create_or_activate(user.id, svip.id, "monthly")
    extended = subs.create_or_activate(user.id, vip.id, "quarterly")
    assert extended.tier_id == svip.id
    assert extended.end_date == datetime(2024, 6, 10, 12)


def test_lapsed_row_is_expired_before_new_activation(subs, user, vip, clock, db):
    first = subs.create_or_activate(user.id, vip.id, "monthly")
    clock.now = datetime(2024, 5, 1)
    fresh = subs.create_or_activate(user.id, vip.id, "monthly")
    assert fresh.start_date == datetime(2024, 5, 1)
    statuses = sorted(s.status for s in subs.history(user.id))
    assert statuses == [SUB_ACTIVE, SUB_EXPIRED]

    [expiry] = [entry for entry in AuditService.get_trail(db, user.id)
                if entry.action == AuditAction.SUBSCRIPTION_EXPIRED]
    assert expiry.target_id == str(first.id)


def test_unknown_tier(subs, user):
    with pytest.raises(InvalidInput):
        subs.create_or_activate(user.id, 999, "monthly")


def test_cancel_keeps_access_until_end(subs, user, vip, clock):
    subs.create_or_activate(user.id, vip.id, "monthly")
    clock.advance(days=5)
    cancelled = subs.cancel(user.id, reason="too expensive")
    assert cancelled.status == SUB_ACTIVE
    assert cancelled.auto_renew is False
    assert cancelled.cancelled_at == datetime(2024, 2, 15, 12)
    assert cancelled.cancel_reason == "too expensive"
    assert subs.current_tier(user.id).name == "vip"

    resumed = subs.resume(user.id)
    assert resumed.auto_renew is True
    assert resumed.cancelled_at is None


def test_renewal_turns_auto_renew_back_on(subs, user, vip, clock):
    subs.create_or_activate(user.id, vip.id, "monthly")
    subs.cancel(user.id, reason="pausing")
    clock.advance(days=3)
    renewed = subs.create_or_activate(user.id, vip.id, "monthly")
    assert renewed.end_date == datetime(2024, 4, 10, 12)
    assert renewed.auto_renew is True
    assert renewed.cancelled_at is None
    assert renewed.cancel_reason is None


def test_cancel_without_subscription(subs, user, vip, clock):
    with pytest.raises(SubscriptionNotFound):
        subs.cancel(user.id)
    subs.create_or_activate(user.id, vip.id, "monthly")
    clock.now = datetime(2024, 3, 11)
    with pytest.raises(SubscriptionNotFound):
        subs.cancel(user.id)
    with pytest.raises(SubscriptionNotFound):
        subs.resume(user.id)


def test_current_tier_falls_back_to_free(subs, user, vip, clock):
    assert subs.current_tier(user.id).name == "free"
    subs.create_or_activate(user.id, vip.id, "monthly")
    assert subs.current_tier(user.id).name == "vip"
    clock.now = datetime(2024, 3, 10, 12, 0, 1)
    assert subs.current_tier(user.id).name == "free"
    assert subs.current(user.id) is None


def test_expire_due_is_idempotent(subs, user, vip, db):
    from tests.conftest import make_user

    other = make_user(db, "bob")
    subs.create_or_activate(user.id, vip.id, "monthly")
    subs.create_or_activate(other.id, vip.id, "yearly")

    assert subs.expire_due(datetime(2024, 3, 11)) == 1
    assert subs.expire_due(datetime(2024, 3, 11)) == 0
    assert [s.status for s in subs.history(user.id)] == [SUB_EXPIRED]
    assert [s.status for s in subs.history(other.id)] == [SUB_ACTIVE]


def test_renewal_notices(subs, user, vip):
    sub = subs.create_or_activate(user.id, vip.id, "monthly")
    assert subs.due_for_notification(datetime(2024, 3, 7)) == []
    due = subs.due_for_notification(datetime(2024, 3, 7, 12))
    assert [s.id for s in due] == [sub.id]
    assert subs.mark_notified(sub.id) is True
    assert subs.mark_notified(sub.id) is False
    assert subs.due_for_notification(datetime(2024, 3, 8)) == []


def test_privileges(subs, user, vip):
    assert subs.has_privilege(user.id, "ad_free") is False
    assert subs.privilege_value(user.id, "ai_chat_per_day") == 3
    subs.create_or_activate(user.id, vip.id, "monthly")
    assert subs.has_privilege(user.id, "ad_free") is True
    assert subs.privilege_value(user.id, "coin_multiplier") == 1.5
    assert subs.privilege_value(user.id, "model_config", "nope") == "nope"
    assert subs.privilege_value(user.id, "teleport", 0) == 0


def test_malformed_privileges_fail_closed():
    assert TierPrivileges.parse("not a dict") == TierPrivileges()
    assert TierPrivileges.parse({"ad_free": "definitely", "download": True}) == TierPrivileges()
    parsed = TierPrivileges.parse({"download": True, "hover_board": True})
    assert parsed.download is True
    assert parsed.ad_free is False
