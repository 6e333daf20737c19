from __future__ import annotations

import datetime as dt

import pytest

from overtime_tracker.overtime import calculate_weekly_overtime, format_hours_minutes, format_overtime

MONDAY = dt.date(2024, 1, 8)
HOUR = 3600


def _week(*hours: float) -> dict:
    return {MONDAY + dt.timedelta(days=offset): int(value * HOUR) for offset, value in enumerate(hours)}


def test_exact_regular_week_has_no_overtime():
    result = calculate_weekly_overtime(_week(8, 8, 8, 8, 8), 40, 5, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    assert result.total_worked_seconds == 40 * HOUR
    assert result.total_expected_seconds == 40 * HOUR
    assert result.total_overtime_seconds == 0
    assert result.expected_seconds_per_workday == 8 * HOUR
    assert result.eligible_workday_count == 5


def test_one_long_day_adds_two_hours():
    result = calculate_weekly_overtime(_week(10, 8, 8, 8, 8), 40, 5, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    assert result.total_overtime_seconds == 7200
    assert result.daily[MONDAY].overtime_seconds == 7200


def test_weekend_work_counts_fully_as_overtime():
    worked = _week(8, 8, 8, 8, 8, 3)
    result = calculate_weekly_overtime(worked, 40, 5, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    saturday = result.daily[MONDAY + dt.timedelta(days=5)]
    assert saturday.is_weekend
    assert saturday.expected_seconds == 0
    assert saturday.overtime_seconds == 3 * HOUR
    assert result.total_overtime_seconds == 3 * HOUR


def test_config_start_midweek_exempts_earlier_days():
    wednesday = MONDAY + dt.timedelta(days=2)
    result = calculate_weekly_overtime(
        _week(0, 0, 8, 8, 8),
        40,
        5,
        config_start_date=wednesday,
        week_start_date=MONDAY,
        reference=dt.date(2024, 2, 1),
    )
    assert result.daily[MONDAY].is_before_config_start
    assert result.daily[MONDAY].expected_seconds == 0
    assert result.daily[MONDAY + dt.timedelta(days=1)].expected_seconds == 0
    assert result.total_expected_seconds == 3 * result.expected_seconds_per_workday
    assert result.total_overtime_seconds == 0


def test_future_days_are_exempt_in_current_week():
    tuesday = MONDAY + dt.timedelta(days=1)
    result = calculate_weekly_overtime(_week(8, 9), 40, 5, week_start_date=MONDAY, reference=tuesday)
    assert result.daily[tuesday].is_future is False
    assert result.daily[tuesday + dt.timedelta(days=1)].is_future is True
    assert result.eligible_workday_count == 2
    assert result.total_expected_seconds == 16 * HOUR
    assert result.total_overtime_seconds == HOUR


def test_eligible_days_beyond_cap_get_no_expectation():
    result = calculate_weekly_overtime(_week(8, 8, 8, 8, 8), 32, 4, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    friday = result.daily[MONDAY + dt.timedelta(days=4)]
    assert result.eligible_workday_count == 5
    assert friday.expected_seconds == 0
    assert friday.overtime_seconds == 8 * HOUR
    assert result.total_expected_seconds == 32 * HOUR
    assert result.total_overtime_seconds == 8 * HOUR


def test_missing_days_count_as_zero_and_string_keys_are_accepted():
    worked = {"2024-01-08": 4 * HOUR, "2024-01-09T10:00:00Z": 4 * HOUR}
    result = calculate_weekly_overtime(worked, 40, 5, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    assert len(result.daily) == 7
    assert result.daily[MONDAY + dt.timedelta(days=2)].worked_seconds == 0
    assert result.total_worked_seconds == 8 * HOUR
    assert result.total_overtime_seconds == -32 * HOUR


def test_without_week_start_uses_input_days():
    worked = {MONDAY + dt.timedelta(days=1): 8 * HOUR, MONDAY: 6 * HOUR}
    result = calculate_weekly_overtime(worked, 40, 5, reference=dt.date(2024, 2, 1))
    assert list(result.daily) == [MONDAY, MONDAY + dt.timedelta(days=1)]
    assert result.total_expected_seconds == 16 * HOUR


def test_zero_working_days_does_not_raise():
    result = calculate_weekly_overtime(_week(2), 40, 0, week_start_date=MONDAY, reference=dt.date(2024, 2, 1))
    assert result.expected_seconds_per_workday == 0
    assert result.total_expected_seconds == 0
    assert result.total_overtime_seconds == 2 * HOUR


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "+0:00"), (7200, "+2:00"), (-5400, "-1:30"), (3661, "+1:01")],
)
def test_format_overtime(seconds, expected):
    assert format_overtime(seconds) == expected


def test_format_hours_minutes():
    assert format_hours_minutes(40 * HOUR + 15 * 60) == "40:15"
