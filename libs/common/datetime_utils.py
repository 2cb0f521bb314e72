"""Datetime utilities for timezone-aware UTC timestamps and credit periods.

Usage:
    from libs.common.datetime_utils import utc_now

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utc_now
    )
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return timezone-aware UTC datetime.

    Always use this for timestamps in the database.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_key(value: datetime) -> str:
    """Period key for the calendar month containing ``value`` (UTC), e.g. ``2026-03``."""
    value = ensure_utc(value)
    return f"{value.year:04d}-{value.month:02d}"


def start_of_month_utc(value: datetime) -> datetime:
    value = ensure_utc(value)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)
