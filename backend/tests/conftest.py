"""
Shared fixtures. The environment is pinned before ``ledger`` is imported so
the module-level engine points at a throwaway SQLite file.
"""
import os
import tempfile
from datetime import datetime, timedelta

_TMP_DIR = tempfile.mkdtemp(prefix="ledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'ledger.db')}"
os.environ["PAYMENT_SECRET"] = "test-payment-secret"
os.environ["CALLBACK_SECRET"] = "test-callback-secret"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["ENVIRONMENT"] = "development"
os.environ["REDIS_URL"] = ""
os.environ["LOG_DIR"] = ""
os.environ["SWEEPER_ENABLED"] = "false"

import pytest  # noqa: E402

from ledger.config import get_settings  # noqa: E402
from ledger.database import Base, SessionLocal, engine, init_db  # noqa: E402
from ledger.models.shop import ShopItem  # noqa: E402
from ledger.models.user import User  # noqa: E402
from ledger.services.audit_service import AuditService  # noqa: E402
from ledger.services.tier_service import TierCatalog  # noqa: E402
from ledger.utils import ttl_store  # noqa: E402
from ledger.utils.clock import utcnow  # noqa: E402


class FrozenClock:
    """Callable clock returning a fixed naive-UTC time until advanced."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    Base.metadata.drop_all(bind=engine)
    init_db()
    monkeypatch.setattr(ttl_store, "_default_store", ttl_store.InMemoryTTLStore())
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def audit():
    return AuditService(SessionLocal)


@pytest.fixture
def catalog(db):
    return TierCatalog.load(db)


@pytest.fixture
def clock():
    return FrozenClock(utcnow().replace(microsecond=0))


def make_user(db, username="alice", points=0):
    user = User(username=username, points=points)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def make_item(db):
    def _make(name="Golden Frame", type="avatar_frame", price=100, stock=-1):
        item = ShopItem(name=name, type=type, price_coins=price, stock=stock)
        db.add(item)
        db.commit()
        db.refresh(item)
        return item
    return _make
