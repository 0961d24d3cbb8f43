"""
Clock helpers — naive UTC timestamps, matching how rows are stored.
"""
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo (SQLite DateTime columns are naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def unix_seconds(dt: datetime | None = None) -> int:
    if dt is None:
        return int(time.time())
    return int(dt.replace(tzinfo=timezone.utc).timestamp())

