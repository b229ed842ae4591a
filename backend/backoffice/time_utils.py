from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def to_iso_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """
    Settlement period for a calendar month as [first instant, first instant of next month).

    The end is exclusive so timestamps with sub-second precision on the last
    day still fall inside the month.
    """
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def month_dates(year: int, month: int) -> tuple[date, date]:
    """Invoice period for a calendar month as (first day, last day)."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def end_of_day_exclusive(d: date) -> datetime:
    """Midnight after `d`, used as an exclusive upper bound for date-inclusive periods."""
    return datetime(d.year, d.month, d.day) + timedelta(days=1)
