from __future__ import annotations

import datetime as dt
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from . import models
from .auth import get_owner_id
from .cache import AggregateCache
from .chronicle import (
    TrackedProjects,
    UNSET,
    append_config,
    delete_entry,
    delete_history,
    get_config_at,
    get_current_config,
    list_history,
    revise_interval,
)
from .clockify import ClockifyReportsClient, RateLimitGate
from .config import settings
from .database import engine, get_db
from .errors import ConfigIncomplete, InvalidSettings, TrackerError, tracker_error_handler
from .logging_config import setup_logger
from .models import TRACKED_PROJECTS
from .owners import get_owner_settings, save_owner_settings
from .schemas import (
    CommittedWeekRefreshResponse,
    CommittedWeeksResponse,
    ConfigCreateRequest,
    ConfigEntryResponse,
    ConfigReviseRequest,
    CumulativeOvertimeResponse,
    DeletedCountResponse,
    DiscrepancyResolveRequest,
    DiscrepancyResponse,
    InvalidateRequest,
    InvalidateResponse,
    OwnerSettingsResponse,
    OwnerSettingsUpdateRequest,
    RangeRefreshRequest,
    RangeRefreshResponse,
    WeeklyOvertimeResponse,
    WeeklySummaryResponse,
    WeekStatusResponse,
)

ClientFactory = Callable[[str], ClockifyReportsClient]


setup_logger(settings.log_level, settings.log_file)
models.Base.metadata.create_all(bind=engine)

rate_gate = RateLimitGate(settings.rate_limit_seconds)


def _client_for_key(api_key: str, time_zone: Optional[str] = None) -> ClockifyReportsClient:
    return ClockifyReportsClient.from_settings(api_key, app.state.rate_gate, time_zone=time_zone)


app = FastAPI(title=settings.app_name)
app.state.rate_gate = rate_gate
app.state.aggregate_cache = AggregateCache(source_factory=lambda owner: _client_for_key(owner.api_key, owner.timezone))
app.add_exception_handler(TrackerError, tracker_error_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_cache(request: Request) -> AggregateCache:
    return request.app.state.aggregate_cache


def get_client_factory() -> ClientFactory:
    return _client_for_key


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Owner settings
# ---------------------------------------------------------------------------
@app.get("/owner/settings", response_model=OwnerSettingsResponse)
def read_owner_settings(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> OwnerSettingsResponse:
    owner = get_owner_settings(db, owner_id)
    if owner is None:
        raise ConfigIncomplete("Owner settings have not been created yet")
    return OwnerSettingsResponse.from_model(owner)


@app.put("/owner/settings", response_model=OwnerSettingsResponse)
def update_owner_settings(
    payload: OwnerSettingsUpdateRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    client_factory: ClientFactory = Depends(get_client_factory),
) -> OwnerSettingsResponse:
    updates = payload.model_dump(exclude_unset=True, exclude={"verify_api_key"})
    if payload.api_key and payload.verify_api_key:
        client = client_factory(payload.api_key)
        if not client.validate_api_key():
            raise InvalidSettings("Clockify rejected the API key")
        user = client.get_user()
        updates["external_user_id"] = user.get("id")
        if not payload.workspace_id and user.get("activeWorkspace"):
            updates["workspace_id"] = user["activeWorkspace"]
    owner = save_owner_settings(db, owner_id, updates)
    return OwnerSettingsResponse.from_model(owner)


# ---------------------------------------------------------------------------
# Configuration history
# ---------------------------------------------------------------------------
@app.get("/config/current", response_model=Optional[ConfigEntryResponse])
def config_current(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> Optional[ConfigEntryResponse]:
    entry = get_current_config(db, owner_id, TRACKED_PROJECTS)
    return ConfigEntryResponse.from_entry(entry) if entry else None


@app.get("/config/at", response_model=Optional[ConfigEntryResponse])
def config_at(
    instant: dt.datetime = Query(...),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> Optional[ConfigEntryResponse]:
    entry = get_config_at(db, owner_id, TRACKED_PROJECTS, instant)
    return ConfigEntryResponse.from_entry(entry) if entry else None


@app.get("/config/history", response_model=List[ConfigEntryResponse])
def config_history(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> List[ConfigEntryResponse]:
    return [ConfigEntryResponse.from_entry(entry) for entry in list_history(db, owner_id, TRACKED_PROJECTS)]


@app.post("/config", response_model=ConfigEntryResponse, status_code=status.HTTP_201_CREATED)
def config_create(
    payload: ConfigCreateRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ConfigEntryResponse:
    value = TrackedProjects(project_ids=payload.project_ids, project_names=payload.project_names)
    entry = append_config(db, owner_id, payload.config_type, value, payload.valid_from)
    return ConfigEntryResponse.from_entry(entry)


@app.patch("/config/{config_id}", response_model=ConfigEntryResponse)
def config_revise(
    config_id: str,
    payload: ConfigReviseRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ConfigEntryResponse:
    fields = payload.model_fields_set
    entry = revise_interval(
        db,
        config_id,
        owner_id,
        valid_from=payload.valid_from if "valid_from" in fields else UNSET,
        valid_until=payload.valid_until if "valid_until" in fields else UNSET,
    )
    return ConfigEntryResponse.from_entry(entry)


@app.delete("/config/history", response_model=DeletedCountResponse)
def config_delete_history(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> DeletedCountResponse:
    return DeletedCountResponse(deleted_count=delete_history(db, owner_id, TRACKED_PROJECTS))


@app.delete("/config/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
def config_delete(
    config_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> Response:
    delete_entry(db, config_id, owner_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Weeks
# ---------------------------------------------------------------------------
@app.get("/weeks/{week_start}/summary", response_model=WeeklySummaryResponse)
def week_summary(
    week_start: dt.date,
    force_refresh: bool = False,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> WeeklySummaryResponse:
    summary = cache.get_weekly_summary(db, owner_id, week_start, force_refresh=force_refresh)
    return WeeklySummaryResponse.from_summary(summary)


@app.get("/weeks/{week_start}/overtime", response_model=WeeklyOvertimeResponse)
def week_overtime(
    week_start: dt.date,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> WeeklyOvertimeResponse:
    result = cache.weekly_overtime(db, owner_id, week_start)
    return WeeklyOvertimeResponse.from_result(week_start, result)


@app.get("/weeks/{week_start}/status", response_model=WeekStatusResponse)
def week_status(
    week_start: dt.date,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> WeekStatusResponse:
    return WeekStatusResponse.model_validate(cache.week_commit_status(db, owner_id, week_start))


@app.post("/weeks/{week_start}/commit", response_model=WeekStatusResponse)
def week_commit(
    week_start: dt.date,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> WeekStatusResponse:
    return WeekStatusResponse.model_validate(cache.commit_week(db, owner_id, week_start))


@app.delete("/weeks/{week_start}/commit", response_model=WeekStatusResponse)
def week_uncommit(
    week_start: dt.date,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> WeekStatusResponse:
    return WeekStatusResponse.model_validate(cache.uncommit_week(db, owner_id, week_start))


@app.post("/weeks/{week_start}/refresh-committed", response_model=CommittedWeekRefreshResponse)
def week_refresh_committed(
    week_start: dt.date,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> CommittedWeekRefreshResponse:
    return CommittedWeekRefreshResponse.model_validate(cache.refresh_committed_week(db, owner_id, week_start))


# ---------------------------------------------------------------------------
# Cache maintenance
# ---------------------------------------------------------------------------
@app.post("/cache/invalidate", response_model=InvalidateResponse)
def cache_invalidate(
    payload: InvalidateRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> InvalidateResponse:
    invalidated_at = cache.invalidate_from(db, owner_id, payload.from_date)
    return InvalidateResponse(from_date=payload.from_date, invalidated_at=invalidated_at)


@app.post("/cache/refresh-range", response_model=RangeRefreshResponse)
def cache_refresh_range(
    payload: RangeRefreshRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> RangeRefreshResponse:
    result = cache.refresh_range(
        db,
        owner_id,
        payload.start_date,
        payload.end_date,
        include_committed_weeks=payload.include_committed_weeks,
    )
    return RangeRefreshResponse.from_result(result)


@app.get("/cache/committed-weeks", response_model=CommittedWeeksResponse)
def cache_committed_weeks(
    start_date: dt.date,
    end_date: Optional[dt.date] = None,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> CommittedWeeksResponse:
    weeks = cache.committed_weeks_in_range(db, owner_id, start_date, end_date)
    return CommittedWeeksResponse(committed_weeks=weeks, has_committed_weeks=bool(weeks))


# ---------------------------------------------------------------------------
# Overtime and discrepancies
# ---------------------------------------------------------------------------
@app.get("/overtime/cumulative", response_model=CumulativeOvertimeResponse)
def overtime_cumulative(
    up_to_week: Optional[dt.date] = None,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> CumulativeOvertimeResponse:
    return CumulativeOvertimeResponse.from_summary(cache.cumulative_overtime(db, owner_id, up_to_week))


@app.get("/discrepancies", response_model=List[DiscrepancyResponse])
def discrepancies(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> List[DiscrepancyResponse]:
    return [DiscrepancyResponse.model_validate(item) for item in cache.list_unresolved_discrepancies(db, owner_id)]


@app.post("/discrepancies/{discrepancy_id}/resolve", response_model=DiscrepancyResponse)
def discrepancy_resolve(
    discrepancy_id: int,
    payload: DiscrepancyResolveRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
    cache: AggregateCache = Depends(get_cache),
) -> DiscrepancyResponse:
    resolved = cache.resolve_discrepancy(db, owner_id, discrepancy_id, payload.resolution)
    return DiscrepancyResponse.model_validate(resolved)
