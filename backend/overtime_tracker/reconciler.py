from __future__ import annotations

import datetime as dt
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from loguru import logger

from .clockify import DayProjectTotals, DayTotal, ReportSource
from .utils import normalize_day_key


@dataclass
class ProjectSeconds:
    name: str
    seconds: int = 0


@dataclass
class DailyBreakdown:
    date: str
    tracked_projects: Dict[str, ProjectSeconds] = field(default_factory=dict)
    extra_work_projects: Dict[str, ProjectSeconds] = field(default_factory=dict)
    total_seconds: int = 0
    extra_work_seconds: int = 0

    @property
    def tracked_seconds(self) -> int:
        return sum(project.seconds for project in self.tracked_projects.values())


def _breakdown(days: Dict[str, DailyBreakdown], key: str) -> DailyBreakdown:
    entry = days.get(key)
    if entry is None:
        entry = DailyBreakdown(date=key)
        days[key] = entry
    return entry


def _add(target: Dict[str, ProjectSeconds], project_id: str, name: str, seconds: int) -> None:
    current = target.get(project_id)
    if current is None:
        target[project_id] = ProjectSeconds(name=name, seconds=seconds)
    else:
        current.seconds += seconds


def merge_reports(
    totals: Iterable[DayTotal],
    tracked: Iterable[DayProjectTotals],
    everything: Iterable[DayProjectTotals],
    tracked_project_ids: Iterable[str],
) -> Dict[str, DailyBreakdown]:
    """Merge the three grouped reports into one breakdown per day."""
    tracked_ids = {str(project_id) for project_id in tracked_project_ids}
    days: Dict[str, DailyBreakdown] = {}

    for total in totals:
        key = normalize_day_key(total.day)
        if key is None:
            logger.warning(f"Skipping daily total with unparseable day {total.day!r}")
            continue
        _breakdown(days, key).total_seconds += int(total.seconds)

    for group in everything:
        key = normalize_day_key(group.day)
        if key is None:
            continue
        entry = _breakdown(days, key)
        for project in group.projects:
            if project.project_id in tracked_ids:
                continue
            _add(entry.extra_work_projects, project.project_id, project.project_name, int(project.seconds))

    seen_tracked = set()
    for group in tracked:
        key = normalize_day_key(group.day)
        if key is None:
            continue
        entry = _breakdown(days, key)
        seen_tracked.add(key)
        for project in group.projects:
            _add(entry.tracked_projects, project.project_id, project.project_name, int(project.seconds))

    for key, entry in days.items():
        if key in seen_tracked:
            entry.extra_work_seconds = entry.total_seconds - entry.tracked_seconds
            if entry.extra_work_seconds < 0:
                logger.warning(
                    f"Tracked time exceeds total on {key}: "
                    f"tracked={entry.tracked_seconds}s total={entry.total_seconds}s"
                )
        else:
            entry.extra_work_seconds = entry.total_seconds

    return dict(sorted(days.items()))


def reconcile(
    source: ReportSource,
    workspace_id: str,
    client_id: str,
    tracked_project_ids: List[str],
    start: dt.datetime,
    end: dt.datetime,
) -> Dict[str, DailyBreakdown]:
    """Fetch the three grouped reports concurrently and merge them.

    The first failing query aborts the reconciliation with its error;
    no partial result is returned.
    """
    project_ids = list(tracked_project_ids)
    logger.debug(
        f"Reconciling client {client_id} from {start.isoformat()} to {end.isoformat()} "
        f"with {len(project_ids)} tracked projects"
    )
    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="reconcile") as pool:
        totals_future = pool.submit(source.daily_totals, workspace_id, client_id, start, end)
        tracked_future = pool.submit(
            source.daily_project_totals, workspace_id, client_id, start, end, project_ids
        )
        everything_future = pool.submit(source.daily_project_totals, workspace_id, client_id, start, end)
        futures = (totals_future, tracked_future, everything_future)
        for future in futures:
            # Wait for all three before raising so no request outlives the call.
            future.exception()
        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

    return merge_reports(
        totals_future.result(),
        tracked_future.result(),
        everything_future.result(),
        project_ids,
    )
