"""Daily and weekly aggregate cache.

Rows are never expired by age. They stay fresh until :meth:`AggregateCache.invalidate_from`
marks them, and are replaced wholesale (delete then insert) when recomputed.
"""

from __future__ import annotations

import datetime as dt
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from .chronicle import get_config_at, tracked_projects
from .clockify import ReportSource
from .errors import (
    ConfigIncomplete,
    DiscrepancyNotFound,
    InvalidWeekStart,
    NoProjectsTracked,
    RangeRefreshPartialFailure,
    TrackerError,
    WeekNotCached,
    WeekNotCommitted,
)
from .models import (
    TRACKED_PROJECTS,
    WEEK_STATUS_COMMITTED,
    WEEK_STATUS_PENDING,
    ConfigEntry,
    DailyCacheRow,
    OwnerSettings,
    WeeklyCacheRow,
    WeeklyDiscrepancy,
)
from .overtime import OvertimeResult, calculate_weekly_overtime
from .owners import get_owner_settings, require_owner_settings
from .reconciler import reconcile
from .state import ScopeLocks, scope_locks
from .utils import (
    now_utc,
    to_db_datetime,
    today_in,
    week_bounds,
    week_start_for,
    week_starts_in_range,
)

SourceFactory = Callable[[OwnerSettings], ReportSource]

UNASSIGNED_PROJECT_ID = "__unassigned__"
UNASSIGNED_PROJECT_NAME = "Without project"

DISCREPANCY_RESOLUTIONS = ("accepted", "dismissed")


@dataclass
class WeeklySummary:
    row: WeeklyCacheRow
    from_cache: bool

    @property
    def week_start(self) -> dt.date:
        return self.row.week_start

    @property
    def total_seconds(self) -> int:
        return self.row.total_seconds

    @property
    def overtime_seconds(self) -> int:
        return self.row.overtime_seconds


@dataclass
class WeekStatus:
    week_start: dt.date
    status: str
    has_cached_data: bool
    committed_at: Optional[dt.datetime] = None
    unchanged: bool = False


@dataclass
class CommittedWeekRefresh:
    week_start: dt.date
    old_total_seconds: int
    new_total_seconds: int
    old_overtime_seconds: int
    new_overtime_seconds: int
    discrepancy_created: bool
    cumulative_invalidated: bool
    refreshed_at: dt.datetime


@dataclass
class WeekRefreshOutcome:
    week_start: dt.date
    status: str
    is_committed: bool = False
    discrepancy_created: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class RangeRefreshResult:
    start_date: dt.date
    end_date: dt.date
    results: List[WeekRefreshOutcome] = field(default_factory=list)

    @property
    def total_weeks(self) -> int:
        return len(self.results)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.results if outcome.status == status)

    @property
    def success_count(self) -> int:
        return self._count("success")

    @property
    def error_count(self) -> int:
        return self._count("error")

    @property
    def skipped_count(self) -> int:
        return self._count("skipped")

    def raise_for_errors(self) -> None:
        """Raise :class:`RangeRefreshPartialFailure` if any week failed."""
        errors = [
            {"week_start": outcome.week_start.isoformat(), "code": outcome.error_code, "message": outcome.error}
            for outcome in self.results
            if outcome.status == "error"
        ]
        if errors:
            raise RangeRefreshPartialFailure(errors, self.total_weeks)


@dataclass
class CumulativeWeek:
    week_start: dt.date
    overtime_seconds: int
    cumulative_overtime_seconds: int


@dataclass
class CumulativeOvertime:
    start_date: Optional[dt.date]
    up_to_week: Optional[dt.date]
    total_overtime_seconds: int = 0
    weeks: List[CumulativeWeek] = field(default_factory=list)
    missing_weeks: List[dt.date] = field(default_factory=list)


class AggregateCache:
    """Serves weekly sums from the cache and rebuilds them from the report source."""

    def __init__(
        self,
        source_factory: SourceFactory,
        locks: ScopeLocks = scope_locks,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._source_factory = source_factory
        self._locks = locks
        self._clock = clock or now_utc

    def _now(self) -> dt.datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    @staticmethod
    def _fresh_weekly(db: Session, owner_id: str, week_start: dt.date) -> Optional[WeeklyCacheRow]:
        return (
            db.query(WeeklyCacheRow)
            .filter(
                WeeklyCacheRow.owner_id == owner_id,
                WeeklyCacheRow.week_start == week_start,
                WeeklyCacheRow.invalidated_at.is_(None),
            )
            .order_by(WeeklyCacheRow.calculated_at.desc())
            .first()
        )

    @staticmethod
    def _latest_weekly(db: Session, owner_id: str, week_start: dt.date) -> Optional[WeeklyCacheRow]:
        return (
            db.query(WeeklyCacheRow)
            .filter(WeeklyCacheRow.owner_id == owner_id, WeeklyCacheRow.week_start == week_start)
            .order_by(WeeklyCacheRow.calculated_at.desc())
            .first()
        )

    @staticmethod
    def fresh_daily_rows(db: Session, owner_id: str, week_start: dt.date) -> List[DailyCacheRow]:
        week_end = week_start + dt.timedelta(days=6)
        return (
            db.query(DailyCacheRow)
            .filter(
                DailyCacheRow.owner_id == owner_id,
                DailyCacheRow.date >= week_start,
                DailyCacheRow.date <= week_end,
                DailyCacheRow.invalidated_at.is_(None),
            )
            .order_by(DailyCacheRow.date.asc(), DailyCacheRow.project_name.asc())
            .all()
        )

    @staticmethod
    def _daily_rows_current(db: Session, owner_id: str, week_start: dt.date) -> bool:
        """True when the week has daily rows and none of them is invalidated."""
        week_end = week_start + dt.timedelta(days=6)
        stamps = (
            db.query(DailyCacheRow.invalidated_at)
            .filter(
                DailyCacheRow.owner_id == owner_id,
                DailyCacheRow.date >= week_start,
                DailyCacheRow.date <= week_end,
            )
            .all()
        )
        return bool(stamps) and all(stamp is None for (stamp,) in stamps)

    @staticmethod
    def _check_week_start(owner: Optional[OwnerSettings], week_start: dt.date) -> None:
        if owner is None:
            return
        expected = week_start_for(week_start, owner.week_start)
        if expected != week_start:
            raise InvalidWeekStart(week_start, expected)

    def _validate_week(self, db: Session, owner_id: str, week_start: dt.date) -> None:
        self._check_week_start(get_owner_settings(db, owner_id), week_start)

    @staticmethod
    def _config_for_week(db: Session, owner: OwnerSettings, week_start: dt.date) -> Optional[ConfigEntry]:
        _, end_utc = week_bounds(week_start, owner.timezone)
        return get_config_at(db, owner.owner_id, TRACKED_PROJECTS, end_utc)

    # ------------------------------------------------------------------
    # Weekly summary
    # ------------------------------------------------------------------
    def get_weekly_summary(
        self,
        db: Session,
        owner_id: str,
        week_start: dt.date,
        force_refresh: bool = False,
    ) -> WeeklySummary:
        self._validate_week(db, owner_id, week_start)
        if not force_refresh:
            cached = self._fresh_weekly(db, owner_id, week_start)
            if cached is not None:
                logger.debug(f"Weekly cache hit for owner {owner_id} week {week_start}")
                return WeeklySummary(row=cached, from_cache=True)
        row = self.recompute_weekly(db, owner_id, week_start)
        return WeeklySummary(row=row, from_cache=False)

    def weekly_overtime(self, db: Session, owner_id: str, week_start: dt.date) -> OvertimeResult:
        """Per-day overtime of one week, computed from its cached daily rows."""
        owner = require_owner_settings(db, owner_id)
        self.get_weekly_summary(db, owner_id, week_start)
        worked: Dict[dt.date, int] = defaultdict(int)
        for row in self.fresh_daily_rows(db, owner_id, week_start):
            worked[row.date] += row.seconds
        return calculate_weekly_overtime(
            worked,
            owner.regular_hours_per_week,
            owner.working_days_per_week,
            config_start_date=owner.cumulative_overtime_start_date,
            week_start_date=week_start,
            reference=today_in(owner.timezone, self._now()),
        )

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------
    def recompute_daily(self, db: Session, owner_id: str, week_start: dt.date) -> int:
        """Rebuild the daily project rows of one week from the report source.

        Returns the number of rows cached. Nothing is deleted if resolving the
        configuration or querying the source fails.
        """
        owner = require_owner_settings(db, owner_id)
        self._check_week_start(owner, week_start)
        with self._locks.hold(owner_id, "week", week_start):
            entry = self._config_for_week(db, owner, week_start)
            if entry is None:
                raise ConfigIncomplete(
                    f"No tracked projects configured for the week of {week_start}",
                    details={"week_start": week_start.isoformat()},
                )
            projects = tracked_projects(entry)
            if not projects:
                raise NoProjectsTracked(entry.id)

            start_utc, end_utc = week_bounds(week_start, owner.timezone)
            source = self._source_factory(owner)
            breakdowns = reconcile(
                source,
                owner.workspace_id,
                owner.selected_client_id,
                projects.project_ids,
                start_utc,
                end_utc,
            )

            calculated_at = to_db_datetime(self._now())
            week_end = week_start + dt.timedelta(days=6)
            rows: List[DailyCacheRow] = []
            for key, day in breakdowns.items():
                date = dt.date.fromisoformat(key)
                # Rows outside the span would never be replaced by this week's delete.
                if not week_start <= date <= week_end:
                    logger.debug(f"Ignoring day {key} outside week {week_start} for owner {owner_id}")
                    continue
                for project_id, project in day.tracked_projects.items():
                    rows.append(self._daily_row(owner, date, project_id, project.name, project.seconds, True, calculated_at))
                for project_id, project in day.extra_work_projects.items():
                    rows.append(self._daily_row(owner, date, project_id, project.name, project.seconds, False, calculated_at))
                unassigned = day.extra_work_seconds - sum(p.seconds for p in day.extra_work_projects.values())
                if unassigned > 0:
                    rows.append(
                        self._daily_row(
                            owner, date, UNASSIGNED_PROJECT_ID, UNASSIGNED_PROJECT_NAME, unassigned, False, calculated_at
                        )
                    )

            try:
                db.query(DailyCacheRow).filter(
                    DailyCacheRow.owner_id == owner_id,
                    DailyCacheRow.date >= week_start,
                    DailyCacheRow.date <= week_end,
                ).delete(synchronize_session="fetch")
                db.add_all(rows)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.error(f"Replacing daily cache rows of owner {owner_id} week {week_start} failed: {exc}")
                raise

        logger.info(f"Cached {len(rows)} daily rows for owner {owner_id} week {week_start}")
        return len(rows)

    @staticmethod
    def _daily_row(
        owner: OwnerSettings,
        date: dt.date,
        project_id: str,
        project_name: str,
        seconds: int,
        is_tracked: bool,
        calculated_at: dt.datetime,
    ) -> DailyCacheRow:
        return DailyCacheRow(
            owner_id=owner.owner_id,
            date=date,
            project_id=project_id,
            project_name=project_name,
            client_id=owner.selected_client_id,
            seconds=max(int(seconds), 0),
            is_tracked=is_tracked,
            calculated_at=calculated_at,
            invalidated_at=None,
        )

    def recompute_weekly(self, db: Session, owner_id: str, week_start: dt.date) -> WeeklyCacheRow:
        """Sum the fresh daily rows of one week into a new weekly row."""
        owner = require_owner_settings(db, owner_id)
        self._check_week_start(owner, week_start)
        with self._locks.hold(owner_id, "week", week_start):
            if not self._daily_rows_current(db, owner_id, week_start):
                self.recompute_daily(db, owner_id, week_start)
            daily_rows = self.fresh_daily_rows(db, owner_id, week_start)

            worked: Dict[dt.date, int] = defaultdict(int)
            for row in daily_rows:
                worked[row.date] += row.seconds

            now = self._now()
            result = calculate_weekly_overtime(
                worked,
                owner.regular_hours_per_week,
                owner.working_days_per_week,
                config_start_date=owner.cumulative_overtime_start_date,
                week_start_date=week_start,
                reference=today_in(owner.timezone, now),
            )
            entry = self._config_for_week(db, owner, week_start)

            previous = self._latest_weekly(db, owner_id, week_start)
            committed = previous is not None and previous.status == WEEK_STATUS_COMMITTED
            overtime_seconds = int(round(result.total_overtime_seconds))
            overtime_changed = previous is not None and previous.overtime_seconds != overtime_seconds

            row = WeeklyCacheRow(
                owner_id=owner_id,
                week_start=week_start,
                week_end=week_start + dt.timedelta(days=6),
                client_id=owner.selected_client_id,
                total_seconds=result.total_worked_seconds,
                regular_hours_baseline=owner.regular_hours_per_week,
                overtime_seconds=overtime_seconds,
                cumulative_overtime_seconds=None,
                config_snapshot_id=entry.id if entry is not None else None,
                status=WEEK_STATUS_COMMITTED if committed else WEEK_STATUS_PENDING,
                committed_at=previous.committed_at if committed else None,
                calculated_at=to_db_datetime(now),
                invalidated_at=None,
            )
            try:
                db.query(WeeklyCacheRow).filter(
                    WeeklyCacheRow.owner_id == owner_id,
                    WeeklyCacheRow.week_start == week_start,
                ).delete(synchronize_session="fetch")
                db.add(row)
                if overtime_changed:
                    self._clear_cumulative_after(db, owner_id, week_start)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.error(f"Replacing weekly cache row of owner {owner_id} week {week_start} failed: {exc}")
                raise
            db.refresh(row)

        logger.info(
            f"Cached week {week_start} for owner {owner_id}: "
            f"total={row.total_seconds}s overtime={row.overtime_seconds}s status={row.status}"
        )
        return row

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------
    def invalidate_from(self, db: Session, owner_id: str, from_date: dt.date) -> dt.datetime:
        """Invalidate daily rows dated on or after ``from_date`` and every week reaching it."""
        now = self._now()
        stamp = to_db_datetime(now)
        daily = (
            db.query(DailyCacheRow)
            .filter(
                DailyCacheRow.owner_id == owner_id,
                DailyCacheRow.date >= from_date,
                DailyCacheRow.invalidated_at.is_(None),
            )
            .update({DailyCacheRow.invalidated_at: stamp}, synchronize_session=False)
        )
        weekly = (
            db.query(WeeklyCacheRow)
            .filter(
                WeeklyCacheRow.owner_id == owner_id,
                WeeklyCacheRow.week_end >= from_date,
                WeeklyCacheRow.invalidated_at.is_(None),
            )
            .update({WeeklyCacheRow.invalidated_at: stamp}, synchronize_session=False)
        )
        db.commit()
        db.expire_all()
        logger.info(f"Invalidated {daily} daily and {weekly} weekly rows of owner {owner_id} from {from_date}")
        return now

    @staticmethod
    def _clear_cumulative_after(db: Session, owner_id: str, week_start: dt.date) -> int:
        return (
            db.query(WeeklyCacheRow)
            .filter(
                WeeklyCacheRow.owner_id == owner_id,
                WeeklyCacheRow.week_start > week_start,
                WeeklyCacheRow.invalidated_at.is_(None),
                WeeklyCacheRow.cumulative_overtime_seconds.isnot(None),
            )
            .update({WeeklyCacheRow.cumulative_overtime_seconds: None}, synchronize_session=False)
        )

    def invalidate_cumulative_after(self, db: Session, owner_id: str, week_start: dt.date) -> int:
        cleared = self._clear_cumulative_after(db, owner_id, week_start)
        db.commit()
        db.expire_all()
        logger.debug(f"Cleared cumulative overtime of {cleared} weeks after {week_start} for owner {owner_id}")
        return cleared

    # ------------------------------------------------------------------
    # Range refresh
    # ------------------------------------------------------------------
    def _week_starts(
        self, owner: OwnerSettings, start_date: dt.date, end_date: Optional[dt.date]
    ) -> List[dt.date]:
        end = end_date or today_in(owner.timezone, self._now())
        return week_starts_in_range(start_date, end, owner.week_start)

    def committed_weeks_in_range(
        self,
        db: Session,
        owner_id: str,
        start_date: dt.date,
        end_date: Optional[dt.date] = None,
    ) -> List[dt.date]:
        owner = require_owner_settings(db, owner_id)
        weeks = self._week_starts(owner, start_date, end_date)
        if not weeks:
            return []
        committed = {
            row.week_start
            for row in db.query(WeeklyCacheRow).filter(
                WeeklyCacheRow.owner_id == owner_id,
                WeeklyCacheRow.status == WEEK_STATUS_COMMITTED,
                WeeklyCacheRow.invalidated_at.is_(None),
                WeeklyCacheRow.week_start >= weeks[0],
                WeeklyCacheRow.week_start <= weeks[-1],
            )
        }
        return [week for week in weeks if week in committed]

    def refresh_range(
        self,
        db: Session,
        owner_id: str,
        start_date: dt.date,
        end_date: Optional[dt.date] = None,
        include_committed_weeks: bool = False,
    ) -> RangeRefreshResult:
        """Recompute every week overlapping ``[start_date, end_date or today]``.

        Weeks are processed one after another; a failing week is recorded in
        the result and the remaining weeks still run.
        """
        owner = require_owner_settings(db, owner_id)
        end = end_date or today_in(owner.timezone, self._now())
        weeks = self._week_starts(owner, start_date, end)
        committed = set(self.committed_weeks_in_range(db, owner_id, start_date, end))
        result = RangeRefreshResult(start_date=start_date, end_date=end)

        logger.info(f"Refreshing {len(weeks)} weeks for owner {owner_id} from {start_date} to {end}")
        for week_start in weeks:
            is_committed = week_start in committed
            if is_committed and not include_committed_weeks:
                result.results.append(WeekRefreshOutcome(week_start, "skipped", is_committed=True))
                continue
            try:
                if is_committed:
                    refresh = self.refresh_committed_week(db, owner_id, week_start)
                    outcome = WeekRefreshOutcome(
                        week_start,
                        "success",
                        is_committed=True,
                        discrepancy_created=refresh.discrepancy_created,
                    )
                else:
                    self.recompute_daily(db, owner_id, week_start)
                    self.recompute_weekly(db, owner_id, week_start)
                    outcome = WeekRefreshOutcome(week_start, "success")
            except TrackerError as exc:
                logger.warning(f"Refreshing week {week_start} for owner {owner_id} failed: {exc.message}")
                outcome = WeekRefreshOutcome(
                    week_start,
                    "error",
                    is_committed=is_committed,
                    error=exc.message,
                    error_code=exc.code,
                )
            result.results.append(outcome)

        logger.info(
            f"Range refresh for owner {owner_id} done: {result.success_count} ok, "
            f"{result.error_count} failed, {result.skipped_count} skipped"
        )
        return result

    # ------------------------------------------------------------------
    # Commit workflow
    # ------------------------------------------------------------------
    def week_commit_status(self, db: Session, owner_id: str, week_start: dt.date) -> WeekStatus:
        self._validate_week(db, owner_id, week_start)
        row = self._fresh_weekly(db, owner_id, week_start)
        if row is None:
            return WeekStatus(week_start=week_start, status=WEEK_STATUS_PENDING, has_cached_data=False)
        return WeekStatus(
            week_start=week_start,
            status=row.status,
            has_cached_data=True,
            committed_at=row.committed_at,
        )

    def commit_week(self, db: Session, owner_id: str, week_start: dt.date) -> WeekStatus:
        self._validate_week(db, owner_id, week_start)
        with self._locks.hold(owner_id, "week", week_start):
            row = self._fresh_weekly(db, owner_id, week_start)
            if row is None:
                raise WeekNotCached(week_start)
            if row.status == WEEK_STATUS_COMMITTED:
                return WeekStatus(week_start, row.status, True, row.committed_at, unchanged=True)
            row.status = WEEK_STATUS_COMMITTED
            row.committed_at = to_db_datetime(self._now())
            db.add(row)
            db.commit()
            db.refresh(row)
        logger.info(f"Committed week {week_start} for owner {owner_id}")
        return WeekStatus(week_start, row.status, True, row.committed_at)

    def uncommit_week(self, db: Session, owner_id: str, week_start: dt.date) -> WeekStatus:
        self._validate_week(db, owner_id, week_start)
        with self._locks.hold(owner_id, "week", week_start):
            row = self._fresh_weekly(db, owner_id, week_start)
            if row is None:
                raise WeekNotCached(week_start)
            if row.status == WEEK_STATUS_PENDING:
                return WeekStatus(week_start, row.status, True, None, unchanged=True)
            row.status = WEEK_STATUS_PENDING
            row.committed_at = None
            db.add(row)
            db.commit()
            db.refresh(row)
        logger.info(f"Reopened week {week_start} for owner {owner_id}")
        return WeekStatus(week_start, row.status, True, None)

    def refresh_committed_week(self, db: Session, owner_id: str, week_start: dt.date) -> CommittedWeekRefresh:
        """Recompute a committed week and record a discrepancy if its figures moved."""
        self._validate_week(db, owner_id, week_start)
        with self._locks.hold(owner_id, "week", week_start):
            existing = self._fresh_weekly(db, owner_id, week_start)
            if existing is None:
                raise WeekNotCached(week_start)
            if existing.status != WEEK_STATUS_COMMITTED:
                raise WeekNotCommitted(week_start)

            old_total = existing.total_seconds
            old_overtime = existing.overtime_seconds
            self.recompute_daily(db, owner_id, week_start)
            row = self.recompute_weekly(db, owner_id, week_start)

            overtime_changed = row.overtime_seconds != old_overtime
            changed = row.total_seconds != old_total or overtime_changed
            refreshed_at = self._now()
            if changed:
                db.add(
                    WeeklyDiscrepancy(
                        owner_id=owner_id,
                        week_start=week_start,
                        original_total_seconds=old_total,
                        new_total_seconds=row.total_seconds,
                        difference_seconds=row.total_seconds - old_total,
                        detected_at=to_db_datetime(refreshed_at),
                    )
                )
                db.commit()
                logger.warning(
                    f"Committed week {week_start} of owner {owner_id} changed: "
                    f"{old_total}s -> {row.total_seconds}s"
                )

        return CommittedWeekRefresh(
            week_start=week_start,
            old_total_seconds=old_total,
            new_total_seconds=row.total_seconds,
            old_overtime_seconds=old_overtime,
            new_overtime_seconds=row.overtime_seconds,
            discrepancy_created=changed,
            cumulative_invalidated=overtime_changed,
            refreshed_at=refreshed_at,
        )

    # ------------------------------------------------------------------
    # Discrepancies
    # ------------------------------------------------------------------
    @staticmethod
    def list_unresolved_discrepancies(db: Session, owner_id: str) -> List[WeeklyDiscrepancy]:
        return (
            db.query(WeeklyDiscrepancy)
            .filter(WeeklyDiscrepancy.owner_id == owner_id, WeeklyDiscrepancy.resolved_at.is_(None))
            .order_by(WeeklyDiscrepancy.detected_at.desc(), WeeklyDiscrepancy.id.desc())
            .all()
        )

    def resolve_discrepancy(
        self,
        db: Session,
        owner_id: str,
        discrepancy_id: int,
        resolution: str,
    ) -> WeeklyDiscrepancy:
        if resolution not in DISCREPANCY_RESOLUTIONS:
            raise ValueError(f"resolution must be one of {DISCREPANCY_RESOLUTIONS}")
        discrepancy = db.get(WeeklyDiscrepancy, discrepancy_id)
        if discrepancy is None or discrepancy.owner_id != owner_id:
            raise DiscrepancyNotFound(discrepancy_id)
        if discrepancy.resolved_at is not None:
            return discrepancy
        discrepancy.resolved_at = to_db_datetime(self._now())
        discrepancy.resolution = resolution
        db.add(discrepancy)
        db.commit()
        db.refresh(discrepancy)
        logger.info(f"Discrepancy {discrepancy_id} of owner {owner_id} {resolution}")
        return discrepancy

    # ------------------------------------------------------------------
    # Cumulative overtime
    # ------------------------------------------------------------------
    def cumulative_overtime(
        self,
        db: Session,
        owner_id: str,
        up_to_week: Optional[dt.date] = None,
    ) -> CumulativeOvertime:
        """Running overtime total over the cached weekly rows.

        Never queries the report source. The running total is written back to
        each weekly row; weeks without a fresh row are listed as missing and
        add nothing.
        """
        owner = get_owner_settings(db, owner_id)
        if owner is None:
            raise ConfigIncomplete("Owner settings are missing")

        start_date = owner.cumulative_overtime_start_date
        if start_date is None:
            earliest = (
                db.query(WeeklyCacheRow)
                .filter(WeeklyCacheRow.owner_id == owner_id, WeeklyCacheRow.invalidated_at.is_(None))
                .order_by(WeeklyCacheRow.week_start.asc())
                .first()
            )
            if earliest is None:
                return CumulativeOvertime(start_date=None, up_to_week=up_to_week)
            start_date = earliest.week_start

        last_week = up_to_week or week_start_for(today_in(owner.timezone, self._now()), owner.week_start)
        summary = CumulativeOvertime(start_date=start_date, up_to_week=last_week)
        weeks = week_starts_in_range(start_date, last_week, owner.week_start)
        if not weeks:
            return summary

        with self._locks.hold(owner_id, "cumulative"):
            rows = {
                row.week_start: row
                for row in db.query(WeeklyCacheRow).filter(
                    WeeklyCacheRow.owner_id == owner_id,
                    WeeklyCacheRow.invalidated_at.is_(None),
                    WeeklyCacheRow.week_start >= weeks[0],
                    WeeklyCacheRow.week_start <= weeks[-1],
                )
            }
            running = 0
            for week_start in weeks:
                row = rows.get(week_start)
                if row is None:
                    summary.missing_weeks.append(week_start)
                    continue
                running += row.overtime_seconds
                if row.cumulative_overtime_seconds != running:
                    row.cumulative_overtime_seconds = running
                    db.add(row)
                summary.weeks.append(CumulativeWeek(week_start, row.overtime_seconds, running))
            db.commit()

        summary.total_overtime_seconds = running
        if summary.missing_weeks:
            logger.debug(f"Cumulative overtime of owner {owner_id} misses {len(summary.missing_weeks)} weeks")
        return summary
