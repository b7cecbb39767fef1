"""UTC time helpers.

All timestamps are stored as naive UTC datetimes so that comparisons behave
the same on PostgreSQL and SQLite.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert a Unix timestamp (as sent by Stripe) to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> int:
    """Unix timestamp of a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())
