from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .overtime import format_hours_minutes, format_overtime


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


class _Response(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_serializer("*", mode="wrap", when_used="json")
    def _serialize_fields(self, value: Any, handler):
        if isinstance(value, dt.datetime):
            return _serialize_datetime(value)
        return handler(value)


class OwnerSettingsResponse(_Response):
    owner_id: str
    has_api_key: bool
    workspace_id: Optional[str]
    external_user_id: Optional[str]
    timezone: str
    week_start: str
    selected_client_id: Optional[str]
    selected_client_name: Optional[str]
    regular_hours_per_week: float
    working_days_per_week: int
    cumulative_overtime_start_date: Optional[dt.date]
    is_complete: bool
    updated_at: dt.datetime

    @classmethod
    def from_model(cls, owner) -> "OwnerSettingsResponse":
        return cls(
            owner_id=owner.owner_id,
            has_api_key=bool(owner.api_key),
            workspace_id=owner.workspace_id or None,
            external_user_id=owner.external_user_id,
            timezone=owner.timezone,
            week_start=owner.week_start,
            selected_client_id=owner.selected_client_id,
            selected_client_name=owner.selected_client_name,
            regular_hours_per_week=owner.regular_hours_per_week,
            working_days_per_week=owner.working_days_per_week,
            cumulative_overtime_start_date=owner.cumulative_overtime_start_date,
            is_complete=owner.is_complete,
            updated_at=owner.updated_at,
        )


class OwnerSettingsUpdateRequest(BaseModel):
    api_key: Optional[str] = None
    workspace_id: Optional[str] = None
    timezone: Optional[str] = None
    week_start: Optional[Literal["MONDAY", "SUNDAY"]] = None
    selected_client_id: Optional[str] = None
    selected_client_name: Optional[str] = None
    regular_hours_per_week: Optional[float] = Field(default=None, ge=0, le=168)
    working_days_per_week: Optional[int] = Field(default=None, ge=1, le=7)
    cumulative_overtime_start_date: Optional[dt.date] = None
    verify_api_key: bool = True

    @field_validator("api_key", "workspace_id", "selected_client_id")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip()


class ConfigEntryResponse(_Response):
    id: str
    config_type: str
    project_ids: List[str]
    project_names: List[str]
    valid_from: dt.datetime
    valid_until: Optional[dt.datetime]
    is_open: bool
    created_at: dt.datetime

    @classmethod
    def from_entry(cls, entry) -> "ConfigEntryResponse":
        value = entry.value or {}
        return cls(
            id=entry.id,
            config_type=entry.config_type,
            project_ids=list(value.get("projectIds") or []),
            project_names=list(value.get("projectNames") or []),
            valid_from=entry.valid_from,
            valid_until=entry.valid_until,
            is_open=entry.is_open,
            created_at=entry.created_at,
        )


class ConfigCreateRequest(BaseModel):
    config_type: Literal["tracked_projects"] = "tracked_projects"
    project_ids: List[str] = Field(default_factory=list)
    project_names: List[str] = Field(default_factory=list)
    valid_from: Optional[dt.datetime] = None


class ConfigReviseRequest(BaseModel):
    valid_from: Optional[dt.datetime] = None
    valid_until: Optional[dt.datetime] = None


class DeletedCountResponse(BaseModel):
    deleted_count: int


class WeeklySummaryResponse(_Response):
    week_start: dt.date
    week_end: dt.date
    total_seconds: int
    regular_hours_baseline: float
    overtime_seconds: int
    overtime_formatted: str
    cumulative_overtime_seconds: Optional[int]
    status: str
    committed_at: Optional[dt.datetime]
    calculated_at: dt.datetime
    from_cache: bool

    @classmethod
    def from_summary(cls, summary) -> "WeeklySummaryResponse":
        row = summary.row
        return cls(
            week_start=row.week_start,
            week_end=row.week_end,
            total_seconds=row.total_seconds,
            regular_hours_baseline=row.regular_hours_baseline,
            overtime_seconds=row.overtime_seconds,
            overtime_formatted=format_overtime(row.overtime_seconds),
            cumulative_overtime_seconds=row.cumulative_overtime_seconds,
            status=row.status,
            committed_at=row.committed_at,
            calculated_at=row.calculated_at,
            from_cache=summary.from_cache,
        )


class DailyOvertimeResponse(_Response):
    date: dt.date
    weekday: int
    is_weekend: bool
    is_before_config_start: bool
    is_future: bool
    worked_seconds: int
    expected_seconds: float
    overtime_seconds: float


class WeeklyOvertimeResponse(BaseModel):
    week_start: dt.date
    days: List[DailyOvertimeResponse]
    total_worked_seconds: int
    total_expected_seconds: float
    total_overtime_seconds: float
    expected_seconds_per_workday: float
    eligible_workday_count: int
    worked_formatted: str
    overtime_formatted: str

    @classmethod
    def from_result(cls, week_start: dt.date, result) -> "WeeklyOvertimeResponse":
        return cls(
            week_start=week_start,
            days=[DailyOvertimeResponse.model_validate(day) for day in result.daily.values()],
            total_worked_seconds=result.total_worked_seconds,
            total_expected_seconds=result.total_expected_seconds,
            total_overtime_seconds=result.total_overtime_seconds,
            expected_seconds_per_workday=result.expected_seconds_per_workday,
            eligible_workday_count=result.eligible_workday_count,
            worked_formatted=format_hours_minutes(result.total_worked_seconds),
            overtime_formatted=format_overtime(result.total_overtime_seconds),
        )


class WeekStatusResponse(_Response):
    week_start: dt.date
    status: str
    has_cached_data: bool
    committed_at: Optional[dt.datetime] = None
    unchanged: bool = False


class CommittedWeekRefreshResponse(_Response):
    week_start: dt.date
    old_total_seconds: int
    new_total_seconds: int
    old_overtime_seconds: int
    new_overtime_seconds: int
    discrepancy_created: bool
    cumulative_invalidated: bool
    refreshed_at: dt.datetime


class InvalidateRequest(BaseModel):
    from_date: dt.date


class InvalidateResponse(_Response):
    from_date: dt.date
    invalidated_at: dt.datetime


class RangeRefreshRequest(BaseModel):
    start_date: dt.date
    end_date: Optional[dt.date] = None
    include_committed_weeks: bool = False


class WeekRefreshOutcomeResponse(_Response):
    week_start: dt.date
    status: str
    is_committed: bool
    discrepancy_created: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


class RangeRefreshResponse(BaseModel):
    start_date: dt.date
    end_date: dt.date
    total_weeks: int
    success_count: int
    error_count: int
    skipped_count: int
    results: List[WeekRefreshOutcomeResponse]

    @classmethod
    def from_result(cls, result) -> "RangeRefreshResponse":
        return cls(
            start_date=result.start_date,
            end_date=result.end_date,
            total_weeks=result.total_weeks,
            success_count=result.success_count,
            error_count=result.error_count,
            skipped_count=result.skipped_count,
            results=[WeekRefreshOutcomeResponse.model_validate(outcome) for outcome in result.results],
        )


class CommittedWeeksResponse(BaseModel):
    committed_weeks: List[dt.date]
    has_committed_weeks: bool


class CumulativeWeekResponse(_Response):
    week_start: dt.date
    overtime_seconds: int
    cumulative_overtime_seconds: int


class CumulativeOvertimeResponse(_Response):
    start_date: Optional[dt.date]
    up_to_week: Optional[dt.date]
    total_overtime_seconds: int
    total_overtime_formatted: str
    weeks: List[CumulativeWeekResponse]
    missing_weeks: List[dt.date]

    @classmethod
    def from_summary(cls, summary) -> "CumulativeOvertimeResponse":
        return cls(
            start_date=summary.start_date,
            up_to_week=summary.up_to_week,
            total_overtime_seconds=summary.total_overtime_seconds,
            total_overtime_formatted=format_overtime(summary.total_overtime_seconds),
            weeks=[CumulativeWeekResponse.model_validate(week) for week in summary.weeks],
            missing_weeks=summary.missing_weeks,
        )


class DiscrepancyResponse(_Response):
    id: int
    week_start: dt.date
    original_total_seconds: int
    new_total_seconds: int
    difference_seconds: int
    detected_at: dt.datetime
    resolved_at: Optional[dt.datetime] = None
    resolution: Optional[str] = None


class DiscrepancyResolveRequest(BaseModel):
    resolution: Literal["accepted", "dismissed"]
