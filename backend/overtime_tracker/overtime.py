"""Weekly overtime arithmetic.

Expected time is spread evenly over ``working_days_per_week`` eligible days.
A day is *exempt* (expected 0, every worked second counts as overtime) when it
falls on a weekend, precedes the configuration start, lies after the
reference date, or exceeds the cap of eligible workdays for the week. The same
rule therefore covers a partially elapsed week, a mid-week start and weekend
work.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

from .utils import normalize_day_key, now_utc

DayKey = Union[dt.date, str]


@dataclass
class DailyOvertime:
    date: dt.date
    weekday: int
    is_weekend: bool
    is_before_config_start: bool
    is_future: bool
    worked_seconds: int
    expected_seconds: float
    overtime_seconds: float


@dataclass
class OvertimeResult:
    daily: Dict[dt.date, DailyOvertime] = field(default_factory=dict)
    total_worked_seconds: int = 0
    total_expected_seconds: float = 0.0
    total_overtime_seconds: float = 0.0
    expected_seconds_per_workday: float = 0.0
    eligible_workday_count: int = 0


def _coerce_day(value: DayKey) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    key = normalize_day_key(value)
    return dt.date.fromisoformat(key) if key else None


def _worked_by_day(daily_worked_seconds: Mapping[DayKey, int]) -> Dict[dt.date, int]:
    worked: Dict[dt.date, int] = {}
    for key, seconds in daily_worked_seconds.items():
        day = _coerce_day(key)
        if day is None:
            continue
        worked[day] = worked.get(day, 0) + int(seconds or 0)
    return worked


def _reference_day(reference: Optional[Union[dt.datetime, dt.date]]) -> dt.date:
    if reference is None:
        return now_utc().date()
    if isinstance(reference, dt.datetime):
        return reference.date()
    return reference


def calculate_weekly_overtime(
    daily_worked_seconds: Mapping[DayKey, int],
    regular_hours_per_week: float,
    working_days_per_week: int,
    config_start_date: Optional[DayKey] = None,
    week_start_date: Optional[DayKey] = None,
    reference: Optional[Union[dt.datetime, dt.date]] = None,
) -> OvertimeResult:
    """Compute per-day and weekly expected/worked/overtime seconds.

    ``reference`` is the moment the calculation is made for; pass an aware
    datetime already converted to the owner's timezone, or a plain date. Days
    strictly after its date have not happened yet and are exempt.
    """
    if working_days_per_week > 0:
        per_workday = regular_hours_per_week * 3600 / working_days_per_week
    else:
        per_workday = 0.0

    worked = _worked_by_day(daily_worked_seconds)
    config_start = _coerce_day(config_start_date) if config_start_date is not None else None
    week_start = _coerce_day(week_start_date) if week_start_date is not None else None
    today = _reference_day(reference)

    if week_start is not None:
        days: List[dt.date] = [week_start + dt.timedelta(days=offset) for offset in range(7)]
    else:
        days = sorted(worked)

    result = OvertimeResult(expected_seconds_per_workday=per_workday)
    eligible = 0
    for day in days:
        worked_seconds = worked.get(day, 0)
        is_weekend = day.weekday() >= 5
        is_before_start = config_start is not None and day < config_start
        is_future = day > today
        result.total_worked_seconds += worked_seconds

        if is_weekend or is_before_start or is_future:
            expected = 0.0
        else:
            eligible += 1
            expected = per_workday if eligible <= working_days_per_week else 0.0

        result.daily[day] = DailyOvertime(
            date=day,
            weekday=day.weekday(),
            is_weekend=is_weekend,
            is_before_config_start=is_before_start,
            is_future=is_future,
            worked_seconds=worked_seconds,
            expected_seconds=expected,
            overtime_seconds=worked_seconds - expected,
        )

    result.eligible_workday_count = eligible
    capped = min(eligible, max(working_days_per_week, 0))
    result.total_expected_seconds = capped * per_workday
    result.total_overtime_seconds = result.total_worked_seconds - result.total_expected_seconds
    return result


def format_hours_minutes(seconds: float) -> str:
    total = int(abs(seconds))
    hours, remainder = divmod(total, 3600)
    return f"{hours}:{remainder // 60:02d}"


def format_overtime(seconds: float) -> str:
    sign = "-" if seconds < 0 else "+"
    return f"{sign}{format_hours_minutes(seconds)}"
