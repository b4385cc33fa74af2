from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware_utc(value: datetime) -> datetime:
    """
    Ensure datetime is timezone-aware in UTC.

    - If naive, assume it is UTC and attach tzinfo.
    - If aware, convert to UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert datetime to aware UTC; pass None through."""
    if value is None:
        return None
    return ensure_aware_utc(value)


def utc_day_window(now: datetime) -> tuple[datetime, datetime]:
    now_utc = ensure_aware_utc(now)
    day_start = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    return day_start, day_start + timedelta(days=1)


def utc_date(now: datetime) -> date:
    return ensure_aware_utc(now).date()


def seconds_until_next_utc_midnight(now: datetime) -> int:
    _, day_end = utc_day_window(now)
    return max(1, int((day_end - ensure_aware_utc(now)).total_seconds()))
