"""
Database Engine & Session Management
SQLAlchemy setup, FastAPI session dependency and the ``atomic`` unit of work.
"""
import os
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from ledger.config import get_settings
from ledger.exceptions import StoreUnavailable

settings = get_settings()


def build_engine(url: str, echo: bool = False):
    """Create an engine; SQLite gets cross-thread access and a generous busy timeout."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if url.startswith("sqlite:///") and ":memory:" not in url:
            path = url.replace("sqlite:///", "", 1)
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    return create_engine(url, connect_args=connect_args, echo=echo)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: yields a database session, auto-closes on finish."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ─── Unit of Work ────────────────────────────────────────────────────
_DEPTH_KEY = "atomic_depth"
_HOOKS_KEY = "on_commit_hooks"


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a block as one database transaction.

    Nested ``atomic`` blocks on the same session join the outermost one, so a
    coordinator can compose several service calls into a single commit.
    The outermost block commits on success and rolls back on any exception;
    ``SQLAlchemyError`` is re-raised as ``StoreUnavailable``. Hooks registered
    with ``on_commit`` run after the outermost commit and are dropped on
    rollback.
    """
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1
    outermost = depth == 0
    if outermost:
        db.info[_HOOKS_KEY] = []
    try:
        yield db
        if outermost:
            db.commit()
    except SQLAlchemyError as exc:
        if outermost:
            db.rollback()
        raise StoreUnavailable(f"database error: {exc.__class__.__name__}") from exc
    except BaseException:
        if outermost:
            db.rollback()
        raise
    finally:
        db.info[_DEPTH_KEY] = depth
        hooks = db.info.pop(_HOOKS_KEY, []) if outermost else []

    for hook in hooks:
        hook()


def in_atomic(db: Session) -> bool:
    return db.info.get(_DEPTH_KEY, 0) > 0


def on_commit(db: Session, hook: Callable[[], None]) -> None:
    """Defer ``hook`` until the enclosing ``atomic`` block commits (or run it now)."""
    if in_atomic(db):
        db.info.setdefault(_HOOKS_KEY, []).append(hook)
    else:
        hook()


def init_db(bind=None):
    """Create all tables and seed reference data. Called once at application startup."""
    from ledger.models import user as _user_model             # noqa: F401
    from ledger.models import order as _order_model           # noqa: F401
    from ledger.models import points as _points_model         # noqa: F401
    from ledger.models import subscription as _sub_model      # noqa: F401
    from ledger.models import tier as _tier_model             # noqa: F401
    from ledger.models import shop as _shop_model             # noqa: F401
    from ledger.models import audit as _audit_model           # noqa: F401
    from ledger.services.tier_service import seed_default_tiers

    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    db = Session(bind=bind)
    try:
        seed_default_tiers(db)
    finally:
        db.close()
