"""
Timestamp helpers shared by the webhook path, the reconciler and the store.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """Store representation: naive UTC (SQLite drops offsets)."""
    return to_utc(value).replace(tzinfo=None)


def isoformat_ms(value: datetime) -> str:
    """Format as ISO-8601 with millisecond precision and a Z suffix."""
    return to_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
