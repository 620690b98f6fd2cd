"""UTC helpers shared by the analytics and ledger code.

Domain timestamps are **naive** UTC datetimes; chart markers use integer
POSIX seconds. ``datetime.utcnow()`` is deprecated since Python 3.12, so
everything goes through these wrappers.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> int:
    """Convert a naive-UTC (or aware) datetime to whole POSIX seconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())
