"""
Date helpers shared by every backend.

All stored timestamps are UTC. Range end bounds are inclusive through
23:59:59.999 of the given day unless the caller asks for an exact bound.
"""
from datetime import date, datetime, time, timedelta, timezone

DEFAULT_WINDOW_DAYS = 7


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime | date) -> datetime:
    """Coerce a date or datetime to an aware UTC datetime.

    Naive datetimes are taken to already be UTC. Plain dates become
    midnight UTC.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage(value: datetime | date) -> datetime:
    """Naive UTC datetime, the form written to and compared in the stores."""
    return to_utc(value).replace(tzinfo=None)


def end_of_day(value: datetime | date) -> datetime:
    """Adjust to the last millisecond of the day (23:59:59.999 UTC)."""
    return to_utc(value).replace(hour=23, minute=59, second=59, microsecond=999000)


def resolve_end(value: datetime | date, is_exact: bool = False) -> datetime:
    """End bound as given when exact, otherwise end of that day."""
    return to_utc(value) if is_exact else end_of_day(value)


def default_window_start(now: datetime | None = None, days: int = DEFAULT_WINDOW_DAYS) -> datetime:
    """Start of the rolling window ending now."""
    return (now or utcnow()) - timedelta(days=days)
