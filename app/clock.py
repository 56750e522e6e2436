"""
UTC time helpers.

Every timestamp the payments core writes is timezone-aware UTC. SQLite hands
DateTime values back without tzinfo, so anything read from the database is
passed through as_utc() before it is compared with utcnow().
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
