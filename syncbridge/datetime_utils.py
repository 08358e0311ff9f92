"""
DateTime utility functions for the application.

All timestamps are stored as naive UTC datetimes so that SQLite and
PostgreSQL compare them the same way.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt):
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_or_none(dt):
    """ISO-8601 string with a trailing Z, or None."""
    if not dt:
        return None
    return to_naive_utc(dt).isoformat() + "Z"
