"""Wall-clock helpers.

Timestamps are stored as naive UTC datetimes (`DateTime` columns without a
timezone), so every comparison against a stored value must use naive UTC too.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive datetime read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z."""
    value = as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def to_naive_utc(value: datetime) -> datetime:
    """Inverse of `as_utc`: aware datetimes become naive UTC for queries."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
