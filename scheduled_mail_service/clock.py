"""Time helpers shared by the scheduler, the dispatcher and the storage layer."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MICROSECOND = timedelta(microseconds=1)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch_us(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to whole microseconds since epoch (naive values are taken as UTC).

    Integer arithmetic keeps the conversion exact, so a stored ``next_run``
    compares against ``now`` without rounding.
    """
    if value is None:
        return None
    return (ensure_utc(value) - EPOCH) // MICROSECOND


def from_epoch_us(value: Optional[int]) -> Optional[datetime]:
    """Convert microseconds since epoch to an aware UTC datetime."""
    if value is None:
        return None
    return EPOCH + timedelta(microseconds=int(value))


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Move ``value`` forward by whole calendar months.

    The day of month is clamped to the last day of the target month, so
    January 31st advances to the last day of February.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def minute_bucket(value: datetime) -> str:
    """Return ``value`` in UTC truncated to the minute, as ``YYYY-MM-DDTHH:MM``."""
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M")


def iso_utc(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as an ISO-8601 UTC string with a ``Z`` suffix."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


