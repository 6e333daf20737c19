from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional, Tuple

from zoneinfo import ZoneInfo

UTC = dt.timezone.utc

WEEK_START_OFFSETS = {"MONDAY": 0, "SUNDAY": 6}


def now_utc() -> dt.datetime:
    return dt.datetime.now(UTC)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    return as_utc(value)


def to_db_datetime(value: dt.datetime) -> dt.datetime:
    # SQLite drops offsets, so everything is stored as naive UTC.
    return as_utc(value).replace(tzinfo=None)


def normalize_day_key(value: Any) -> Optional[str]:
    """Return a canonical ``YYYY-MM-DD`` key for dates, datetimes and ISO strings."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        candidate = text[:10]
        try:
            return dt.date.fromisoformat(candidate).isoformat()
        except ValueError:
            return None
    if len(text) == 8 and text.isdigit():
        try:
            return dt.datetime.strptime(text, "%Y%m%d").date().isoformat()
        except ValueError:
            return None
    return None


def week_start_for(day: dt.date, week_start: str) -> dt.date:
    """Return the first day of the week that contains ``day``."""
    first_weekday = WEEK_START_OFFSETS.get(week_start.upper(), 0)
    delta = (day.weekday() - first_weekday) % 7
    return day - dt.timedelta(days=delta)


def week_dates(week_start: dt.date) -> List[dt.date]:
    return [week_start + dt.timedelta(days=offset) for offset in range(7)]


def week_bounds(week_start: dt.date, timezone: str) -> Tuple[dt.datetime, dt.datetime]:
    """UTC instants of the first and the last moment of a seven-day week."""
    tz = ZoneInfo(timezone)
    start_local = dt.datetime.combine(week_start, dt.time.min, tzinfo=tz)
    end_local = dt.datetime.combine(week_start + dt.timedelta(days=6), dt.time.max, tzinfo=tz)
    return start_local.astimezone(UTC), end_local.astimezone(UTC)


def today_in(timezone: str, now: Optional[dt.datetime] = None) -> dt.date:
    reference = as_utc(now) if now is not None else now_utc()
    return reference.astimezone(ZoneInfo(timezone)).date()


def week_starts_in_range(
    start_date: dt.date,
    end_date: dt.date,
    week_start: str,
) -> List[dt.date]:
    """Week starts of every week overlapping ``[start_date, end_date]``.

    The week containing ``start_date`` is always included, even when it begins
    before ``start_date``.
    """
    if start_date > end_date:
        return []
    current = week_start_for(start_date, week_start)
    weeks: List[dt.date] = []
    while current <= end_date:
        weeks.append(current)
        current += dt.timedelta(days=7)
    return weeks
