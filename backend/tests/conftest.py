from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

_TEST_DIR = tempfile.mkdtemp(prefix="overtime-tests-")
os.environ.setdefault("OT_SQLITE_PATH", str(Path(_TEST_DIR) / "app.db"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from overtime_tracker import models
from overtime_tracker.cache import AggregateCache
from overtime_tracker.clockify import DayProjectTotals, DayTotal, ProjectTotal
from overtime_tracker.database import create_sqlite_engine, get_db
from overtime_tracker.main import app, get_cache, get_client_factory
from overtime_tracker.owners import save_owner_settings
from overtime_tracker.state import ScopeLocks

OWNER = "owner-1"

ProjectEntry = Tuple[str, str, int]


class FakeClock:
    def __init__(self, now: dt.datetime):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class FakeReportSource:
    """In-memory report source keyed by ISO day."""

    def __init__(self) -> None:
        self.entries: Dict[str, List[ProjectEntry]] = {}
        self.unassigned: Dict[str, int] = {}
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None

    def log(self, day: str, project_id: str, name: str, seconds: int) -> None:
        self.entries.setdefault(day, []).append((project_id, name, seconds))

    def _days(self, start: dt.datetime, end: dt.datetime) -> List[str]:
        days = set(self.entries) | set(self.unassigned)
        return sorted(day for day in days if start.date().isoformat() <= day <= end.date().isoformat())

    def daily_totals(self, workspace_id, client_id, start, end) -> List[DayTotal]:
        self.calls.append("totals")
        if self.fail_with is not None:
            raise self.fail_with
        totals = []
        for day in self._days(start, end):
            seconds = sum(entry[2] for entry in self.entries.get(day, [])) + self.unassigned.get(day, 0)
            totals.append(DayTotal(day=f"{day}T00:00:00Z", seconds=seconds))
        return totals

    def daily_project_totals(self, workspace_id, client_id, start, end, project_ids=None) -> List[DayProjectTotals]:
        self.calls.append("projects" if project_ids is None else "tracked")
        allowed = set(project_ids) if project_ids is not None else None
        results = []
        for day in self._days(start, end):
            projects: Dict[str, ProjectTotal] = {}
            for project_id, name, seconds in self.entries.get(day, []):
                if allowed is not None and project_id not in allowed:
                    continue
                current = projects.setdefault(project_id, ProjectTotal(project_id, name, 0))
                current.seconds += seconds
            if projects:
                results.append(
                    DayProjectTotals(
                        day=day,
                        seconds=sum(p.seconds for p in projects.values()),
                        projects=list(projects.values()),
                    )
                )
        return results


class FakeClockifyClient:
    def __init__(self, api_key: str):
        self.api_key = api_key

    def validate_api_key(self) -> bool:
        return self.api_key != "bad-key"

    def get_user(self) -> dict:
        return {"id": "user-42", "activeWorkspace": "ws-default"}


@pytest.fixture(scope="function")
def engine(tmp_path: Path):
    engine = create_sqlite_engine(tmp_path / "test.db")
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = SessionTesting()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2024, 3, 1, 12, 0, tzinfo=dt.timezone.utc))


@pytest.fixture()
def source() -> FakeReportSource:
    return FakeReportSource()


@pytest.fixture()
def cache(source: FakeReportSource, clock: FakeClock) -> AggregateCache:
    return AggregateCache(source_factory=lambda owner: source, locks=ScopeLocks(), clock=clock)


@pytest.fixture()
def owner(session: Session) -> models.OwnerSettings:
    return save_owner_settings(
        session,
        OWNER,
        {
            "api_key": "secret",
            "workspace_id": "ws-1",
            "selected_client_id": "client-1",
            "selected_client_name": "ACME",
            "timezone": "UTC",
            "week_start": "MONDAY",
            "regular_hours_per_week": 40,
            "working_days_per_week": 5,
        },
    )


@pytest.fixture(scope="function")
def client(session: Session, cache: AggregateCache) -> Generator[TestClient, None, None]:
    def override_get_db():
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_client_factory] = lambda: FakeClockifyClient
    with TestClient(app, headers={"X-Owner-Id": OWNER}) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def week_start() -> dt.date:
    return dt.date(2024, 1, 8)
