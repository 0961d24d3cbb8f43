from datetime import datetime, timedelta

import pytest

from ledger.database import SessionLocal
from ledger.jobs.sweeper import MIN_INTERVAL_SECONDS, SweepWorker, sweep_once
from ledger.services.order_service import OrderService
from ledger.services.subscription_service import SubscriptionService

from tests.conftest import FrozenClock

NOTHING = {"orders_expired": 0, "subscriptions_expired": 0, "renewal_notices": 0}


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 5, 10, 0, 0))


def test_sweep_expires_orders_and_subscriptions(db, audit, catalog, clock, user):
    orders = OrderService(db, audit=audit, clock=clock)
    stale = orders.create_order(user.id, 600, "coins", "60").order
    subs = SubscriptionService(db, catalog=catalog, audit=audit, clock=clock)
    subs.create_or_activate(user.id, catalog.by_name("vip").id, "monthly")

    first = sweep_once(db, clock.now + timedelta(days=29))
    assert first == {"orders_expired": 1, "subscriptions_expired": 0, "renewal_notices": 1}
    assert orders.get(stale.order_no).status == "expired"

    much_later = clock.now + timedelta(days=40)
    assert sweep_once(db, much_later) == {"orders_expired": 0, "subscriptions_expired": 1, "renewal_notices": 0}
    assert sweep_once(db, much_later) == NOTHING


def test_worker_interval_has_a_floor():
    assert SweepWorker(interval=5).interval == MIN_INTERVAL_SECONDS
    assert SweepWorker(interval=600).interval == 600


def test_worker_pass_uses_its_own_session():
    assert SweepWorker(SessionLocal).run_pass() == NOTHING


def test_worker_pass_survives_failures(caplog):
    class DeadSession:
        info = None

        def close(self):
            pass

    assert SweepWorker(DeadSession).run_pass() is None
    assert "sweep pass failed" in caplog.text
