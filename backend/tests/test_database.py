import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from ledger.database import atomic, in_atomic, on_commit
from ledger.exceptions import StoreUnavailable
from ledger.models.user import User

from tests.conftest import make_user


def test_commit_and_hooks_run_after_outermost_block(db):
    calls = []
    with atomic(db):
        db.add(User(username="dave"))
        with atomic(db):
            assert in_atomic(db)
            on_commit(db, lambda: calls.append("inner"))
        assert calls == []
        on_commit(db, lambda: calls.append("outer"))
    assert calls == ["inner", "outer"]
    assert not in_atomic(db)
    assert db.query(User).filter(User.username == "dave").count() == 1


def test_inner_failure_rolls_back_the_whole_unit(db):
    calls = []
    with pytest.raises(ValueError):
        with atomic(db):
            db.add(User(username="erin"))
            on_commit(db, lambda: calls.append("hook"))
            with atomic(db):
                raise ValueError("inner")
    assert calls == []
    assert db.query(User).filter(User.username == "erin").count() == 0


def test_hook_outside_atomic_runs_immediately(db):
    calls = []
    on_commit(db, lambda: calls.append("now"))
    assert calls == ["now"]


def test_database_errors_become_store_unavailable(db):
    with pytest.raises(StoreUnavailable) as info:
        with atomic(db):
            db.execute(text("SELECT * FROM no_such_table"))
    assert isinstance(info.value.__cause__, OperationalError)
    assert info.value.to_dict()["error"] == "StoreUnavailable"
    assert not in_atomic(db)


def test_unique_violation_is_rolled_back(db):
    make_user(db, "frank")
    with pytest.raises(StoreUnavailable):
        with atomic(db):
            db.add(User(username="frank"))
            db.flush()
    assert db.query(User).count() == 1
