from __future__ import annotations

import datetime as dt
import threading
import warnings

import pytest
from sqlalchemy.exc import SAWarning
from sqlalchemy.orm import Session, sessionmaker

from overtime_tracker import chronicle
from overtime_tracker.cache import UNASSIGNED_PROJECT_ID, AggregateCache
from overtime_tracker.chronicle import TrackedProjects
from overtime_tracker.errors import (
    ConfigIncomplete,
    ExternalSourceError,
    InvalidWeekStart,
    NoProjectsTracked,
    RangeRefreshPartialFailure,
    WeekNotCached,
    WeekNotCommitted,
)
from overtime_tracker.models import TRACKED_PROJECTS, DailyCacheRow, WeeklyCacheRow, WeeklyDiscrepancy
from overtime_tracker.owners import save_owner_settings

from conftest import OWNER, FakeClock, FakeReportSource

HOUR = 3600


def _track(db: Session, *ids: str, start: dt.datetime = dt.datetime(2023, 12, 1, tzinfo=dt.timezone.utc)):
    return chronicle.append_config(db, OWNER, TRACKED_PROJECTS, TrackedProjects(list(ids), list(ids)), start)


def _regular_week(source: FakeReportSource, week_start: dt.date, hours=(8, 8, 8, 8, 8)) -> None:
    for offset, value in enumerate(hours):
        day = (week_start + dt.timedelta(days=offset)).isoformat()
        source.log(day, "p1", "Core", int(value * HOUR))


def _weekly_rows(db: Session, week_start: dt.date):
    return db.query(WeeklyCacheRow).filter(WeeklyCacheRow.owner_id == OWNER, WeeklyCacheRow.week_start == week_start).all()


def test_weekly_summary_is_computed_then_served_from_cache(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start, hours=(10, 8, 8, 8, 8))

    first = cache.get_weekly_summary(session, OWNER, week_start)
    calls_after_first = len(source.calls)
    second = cache.get_weekly_summary(session, OWNER, week_start)

    assert first.from_cache is False
    assert second.from_cache is True
    assert (first.total_seconds, first.overtime_seconds) == (second.total_seconds, second.overtime_seconds)
    assert first.total_seconds == 42 * HOUR
    assert first.overtime_seconds == 2 * HOUR
    assert len(source.calls) == calls_after_first == 3
    assert len(_weekly_rows(session, week_start)) == 1


def test_daily_rows_include_extra_and_unassigned_work(session, owner, cache, source, week_start):
    _track(session, "p1")
    source.log("2024-01-08", "p1", "Core", 6 * HOUR)
    source.log("2024-01-08", "p2", "Support", HOUR)
    source.unassigned["2024-01-08"] = 1800

    assert cache.recompute_daily(session, OWNER, week_start) == 3
    rows = {row.project_id: row for row in cache.fresh_daily_rows(session, OWNER, week_start)}
    assert rows["p1"].is_tracked is True
    assert rows["p2"].is_tracked is False
    assert rows[UNASSIGNED_PROJECT_ID].seconds == 1800

    weekly = cache.recompute_weekly(session, OWNER, week_start)
    assert weekly.total_seconds == 6 * HOUR + HOUR + 1800


def test_recompute_daily_replaces_rows(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.recompute_daily(session, OWNER, week_start)
    cache.recompute_daily(session, OWNER, week_start)

    count = session.query(DailyCacheRow).filter(DailyCacheRow.owner_id == OWNER).count()
    assert count == 5


def test_invalidate_mid_week_recomputes_whole_week(session, owner, cache, source, clock: FakeClock, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    before = cache.get_weekly_summary(session, OWNER, week_start)
    calculated_before = before.row.calculated_at

    clock.advance(hours=1)
    source.log("2024-01-12", "p1", "Core", HOUR)
    cache.invalidate_from(session, OWNER, week_start + dt.timedelta(days=2))
    stale = session.query(DailyCacheRow).filter(DailyCacheRow.invalidated_at.isnot(None)).count()
    assert stale == 3
    assert session.query(WeeklyCacheRow).one().invalidated_at is not None

    after = cache.get_weekly_summary(session, OWNER, week_start)
    assert after.from_cache is False
    assert after.row.calculated_at != calculated_before
    assert after.total_seconds == 41 * HOUR
    assert len(_weekly_rows(session, week_start)) == 1
    assert len(cache.fresh_daily_rows(session, OWNER, week_start)) == 5
    assert session.query(DailyCacheRow).filter(DailyCacheRow.invalidated_at.isnot(None)).count() == 0


def test_weekly_recompute_refetches_partly_stale_days(session, owner, cache, source, clock: FakeClock, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    clock.advance(hours=1)
    source.log("2024-01-12", "p1", "Core", HOUR)
    cache.invalidate_from(session, OWNER, week_start + dt.timedelta(days=2))

    rebuilt = cache.get_weekly_summary(session, OWNER, week_start, force_refresh=True)
    assert rebuilt.total_seconds == 41 * HOUR
    assert cache.recompute_weekly(session, OWNER, week_start).total_seconds == 41 * HOUR


def test_invalidate_before_week_start_also_clears_week(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    cache.invalidate_from(session, OWNER, week_start - dt.timedelta(days=3))
    assert cache.get_weekly_summary(session, OWNER, week_start).from_cache is False


def test_invalidate_is_idempotent(session, owner, cache, source, clock, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    cache.invalidate_from(session, OWNER, week_start)
    first_stamp = session.query(WeeklyCacheRow).one().invalidated_at
    clock.advance(minutes=5)
    cache.invalidate_from(session, OWNER, week_start)
    session.expire_all()
    assert session.query(WeeklyCacheRow).one().invalidated_at == first_stamp


def test_missing_client_is_config_incomplete(session, cache, week_start):
    save_owner_settings(session, OWNER, {"api_key": "k", "workspace_id": "ws"})
    with pytest.raises(ConfigIncomplete):
        cache.get_weekly_summary(session, OWNER, week_start)


def test_missing_config_is_config_incomplete(session, owner, cache, week_start):
    with pytest.raises(ConfigIncomplete):
        cache.recompute_daily(session, OWNER, week_start)


def test_config_after_week_is_not_used(session, owner, cache, week_start):
    _track(session, "p1", start=dt.datetime(2024, 2, 1, tzinfo=dt.timezone.utc))
    with pytest.raises(ConfigIncomplete):
        cache.recompute_daily(session, OWNER, week_start)


def test_empty_project_list_raises(session, owner, cache, week_start):
    _track(session)
    with pytest.raises(NoProjectsTracked):
        cache.recompute_daily(session, OWNER, week_start)


def test_source_failure_keeps_existing_rows(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.recompute_daily(session, OWNER, week_start)

    source.fail_with = ExternalSourceError("Clockify error 502", upstream_status=502)
    with pytest.raises(ExternalSourceError):
        cache.recompute_daily(session, OWNER, week_start)
    assert len(cache.fresh_daily_rows(session, OWNER, week_start)) == 5


def test_week_uses_config_valid_at_end_of_week(session, owner, cache, source, week_start):
    _track(session, "p1")
    _track(session, "p2", start=dt.datetime(2024, 1, 10, tzinfo=dt.timezone.utc))
    source.log("2024-01-08", "p1", "Core", HOUR)
    source.log("2024-01-11", "p2", "New", 2 * HOUR)

    cache.recompute_daily(session, OWNER, week_start)
    rows = {row.project_id: row for row in cache.fresh_daily_rows(session, OWNER, week_start)}
    assert rows["p2"].is_tracked is True
    assert rows["p1"].is_tracked is False
    weekly = cache.recompute_weekly(session, OWNER, week_start)
    current = chronicle.get_current_config(session, OWNER, TRACKED_PROJECTS)
    assert weekly.config_snapshot_id == current.id


def test_current_week_only_expects_elapsed_days(session, owner, cache, source, clock, week_start):
    _track(session, "p1")
    clock.now = dt.datetime(2024, 1, 9, 18, 0, tzinfo=dt.timezone.utc)
    _regular_week(source, week_start, hours=(8, 9))

    summary = cache.get_weekly_summary(session, OWNER, week_start)
    assert summary.overtime_seconds == HOUR


def test_refresh_range_tallies_weeks(session, owner, cache, source, clock):
    _track(session, "p1", start=dt.datetime(2024, 1, 15, tzinfo=dt.timezone.utc))
    _regular_week(source, dt.date(2024, 1, 15))
    _regular_week(source, dt.date(2024, 1, 22))

    result = cache.refresh_range(session, OWNER, dt.date(2024, 1, 10), dt.date(2024, 1, 24))

    assert [outcome.week_start for outcome in result.results] == [
        dt.date(2024, 1, 8),
        dt.date(2024, 1, 15),
        dt.date(2024, 1, 22),
    ]
    assert result.total_weeks == 3
    assert result.success_count == 2
    assert result.error_count == 1
    assert result.results[0].error_code == "CONFIG_INCOMPLETE"
    with pytest.raises(RangeRefreshPartialFailure):
        result.raise_for_errors()
    assert cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 22)).from_cache is True


def test_refresh_range_defaults_to_today(session, owner, cache, source, clock):
    _track(session, "p1")
    clock.now = dt.datetime(2024, 1, 17, 9, 0, tzinfo=dt.timezone.utc)

    result = cache.refresh_range(session, OWNER, dt.date(2024, 1, 8))
    assert result.end_date == dt.date(2024, 1, 17)
    assert result.total_weeks == 2
    result.raise_for_errors()


def test_refresh_range_skips_committed_weeks(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)
    cache.commit_week(session, OWNER, week_start)

    skipped = cache.refresh_range(session, OWNER, week_start, week_start + dt.timedelta(days=6))
    assert skipped.skipped_count == 1
    assert cache.committed_weeks_in_range(session, OWNER, week_start, week_start) == [week_start]

    source.log("2024-01-13", "p1", "Core", 2 * HOUR)
    included = cache.refresh_range(
        session, OWNER, week_start, week_start + dt.timedelta(days=6), include_committed_weeks=True
    )
    assert included.success_count == 1
    assert included.results[0].discrepancy_created is True
    assert cache.week_commit_status(session, OWNER, week_start).status == "committed"


def test_commit_workflow(session, owner, cache, source, week_start):
    with pytest.raises(WeekNotCached):
        cache.commit_week(session, OWNER, week_start)

    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    committed = cache.commit_week(session, OWNER, week_start)
    assert committed.status == "committed"
    assert committed.committed_at is not None
    assert cache.commit_week(session, OWNER, week_start).unchanged is True

    recomputed = cache.get_weekly_summary(session, OWNER, week_start, force_refresh=True)
    assert recomputed.row.status == "committed"

    reopened = cache.uncommit_week(session, OWNER, week_start)
    assert reopened.status == "pending"
    assert cache.uncommit_week(session, OWNER, week_start).unchanged is True


def test_refresh_committed_week_records_discrepancy(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    with pytest.raises(WeekNotCommitted):
        cache.refresh_committed_week(session, OWNER, week_start)

    cache.commit_week(session, OWNER, week_start)
    unchanged = cache.refresh_committed_week(session, OWNER, week_start)
    assert unchanged.discrepancy_created is False

    source.log("2024-01-09", "p1", "Core", HOUR)
    changed = cache.refresh_committed_week(session, OWNER, week_start)
    assert changed.discrepancy_created is True
    assert changed.cumulative_invalidated is True
    assert changed.new_total_seconds - changed.old_total_seconds == HOUR

    pending = cache.list_unresolved_discrepancies(session, OWNER)
    assert len(pending) == 1
    assert pending[0].difference_seconds == HOUR

    resolved = cache.resolve_discrepancy(session, OWNER, pending[0].id, "accepted")
    assert resolved.resolution == "accepted"
    assert cache.list_unresolved_discrepancies(session, OWNER) == []
    assert session.query(WeeklyDiscrepancy).count() == 1


def test_cumulative_overtime_from_cached_weeks(session, owner, cache, source):
    save_owner_settings(session, OWNER, {"cumulative_overtime_start_date": dt.date(2024, 1, 1)})
    _track(session, "p1")
    _regular_week(source, dt.date(2024, 1, 1), hours=(9, 8, 8, 8, 8))
    _regular_week(source, dt.date(2024, 1, 15), hours=(8, 8, 8, 8, 7))
    cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 1))
    cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 15))
    calls = len(source.calls)

    summary = cache.cumulative_overtime(session, OWNER, up_to_week=dt.date(2024, 1, 15))

    assert [week.cumulative_overtime_seconds for week in summary.weeks] == [HOUR, 0]
    assert summary.missing_weeks == [dt.date(2024, 1, 8)]
    assert summary.total_overtime_seconds == 0
    assert len(source.calls) == calls
    session.expire_all()
    stored = {row.week_start: row.cumulative_overtime_seconds for row in session.query(WeeklyCacheRow)}
    assert stored[dt.date(2024, 1, 1)] == HOUR

    cleared = cache.invalidate_cumulative_after(session, OWNER, dt.date(2024, 1, 1))
    assert cleared == 1


def test_concurrent_recomputes_keep_one_weekly_row(engine, owner, source, week_start):
    Factory = sessionmaker(bind=engine, autoflush=False, future=True)
    setup = Factory()
    _track(setup, "p1")
    setup.close()
    _regular_week(source, week_start)
    shared = AggregateCache(source_factory=lambda owner: source)
    errors = []

    def worker():
        db = Factory()
        try:
            shared.get_weekly_summary(db, OWNER, week_start, force_refresh=True)
        except Exception as exc:  # pragma: no cover - surfaced through the assertion below
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    check = Factory()
    assert errors == []
    assert len(_weekly_rows(check, week_start)) == 1
    check.close()


def test_days_outside_the_week_are_not_cached(session, owner, cache, source):
    save_owner_settings(session, OWNER, {"timezone": "Europe/Berlin"})
    _track(session, "p1")
    source.log("2024-01-14", "p1", "Core", 3 * HOUR)

    assert cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 8)).total_seconds == 3 * HOUR
    # The UTC bounds of the next week start on the previous Sunday evening.
    assert cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 15)).total_seconds == 0

    sunday_rows = session.query(DailyCacheRow).filter(DailyCacheRow.date == dt.date(2024, 1, 14)).count()
    assert sunday_rows == 1
    refreshed = cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 8), force_refresh=True)
    assert refreshed.total_seconds == 3 * HOUR


def test_week_start_must_match_owner_convention(session, owner, cache, source):
    _track(session, "p1")
    with pytest.raises(InvalidWeekStart) as excinfo:
        cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 10))
    assert excinfo.value.details["expected_week_start"] == "2024-01-08"
    with pytest.raises(InvalidWeekStart):
        cache.commit_week(session, OWNER, dt.date(2024, 1, 10))
    assert session.query(WeeklyCacheRow).count() == 0
    assert source.calls == []

    save_owner_settings(session, OWNER, {"week_start": "SUNDAY"})
    source.log("2024-01-07", "p1", "Core", HOUR)
    summary = cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 7))
    assert summary.row.week_end == dt.date(2024, 1, 13)
    assert summary.total_seconds == HOUR
    with pytest.raises(InvalidWeekStart):
        cache.get_weekly_summary(session, OWNER, dt.date(2024, 1, 8))


def test_replacing_rows_keeps_session_consistent(session, owner, cache, source, week_start):
    _track(session, "p1")
    _regular_week(source, week_start)
    cache.get_weekly_summary(session, OWNER, week_start)

    with warnings.catch_warnings():
        warnings.simplefilter("error", SAWarning)
        for _ in range(3):
            cache.recompute_daily(session, OWNER, week_start)
            row = cache.recompute_weekly(session, OWNER, week_start)

    assert row.total_seconds == 40 * HOUR
    assert len(_weekly_rows(session, week_start)) == 1
    assert len(cache.fresh_daily_rows(session, OWNER, week_start)) == 5


def test_weekly_overtime_uses_cache_clock(session, owner, cache, source, clock, week_start):
    _track(session, "p1")
    clock.now = dt.datetime(2024, 1, 9, 18, 0, tzinfo=dt.timezone.utc)
    _regular_week(source, week_start, hours=(8, 9))

    result = cache.weekly_overtime(session, OWNER, week_start)

    assert result.daily[dt.date(2024, 1, 9)].is_future is False
    assert result.daily[dt.date(2024, 1, 10)].is_future is True
    assert result.total_overtime_seconds == HOUR
    assert cache.get_weekly_summary(session, OWNER, week_start).overtime_seconds == result.total_overtime_seconds
