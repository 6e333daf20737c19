"""HTTP client for the Clockify API and its Reports API."""

from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass, field
from threading import Condition
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urljoin

import requests
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import Settings, settings
from .errors import ExternalSourceError
from .utils import as_utc

RETRY_STATUS_CODES = (408, 413, 429, 500, 502, 503, 504)


class RateLimitGate:
    """Ticket queue releasing callers in arrival order with a minimum spacing.

    Each caller draws a ticket and waits until every earlier ticket has been
    released; it is then held back until ``min_interval`` seconds have passed
    since the previous release.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._condition = Condition()
        self._next_ticket = 0
        self._serving = 0
        self._last_release: Optional[float] = None

    def wait(self) -> float:
        """Block until this caller may issue its request; return the delay slept."""
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._condition.wait()
        # Only the ticket being served gets here, so sleeping outside the
        # condition keeps the order while letting others enqueue.
        try:
            delay = 0.0
            if self._last_release is not None:
                delay = max(0.0, self._last_release + self.min_interval - self._clock())
            if delay > 0:
                logger.debug(f"Rate gate holding ticket {ticket} for {delay:.3f}s")
                self._sleep(delay)
            self._last_release = self._clock()
            return delay
        finally:
            with self._condition:
                self._serving += 1
                self._condition.notify_all()

    @property
    def pending(self) -> int:
        with self._condition:
            return self._next_ticket - self._serving


@dataclass
class DayTotal:
    day: Any
    seconds: int


@dataclass
class ProjectTotal:
    project_id: str
    project_name: str
    seconds: int


@dataclass
class DayProjectTotals:
    day: Any
    seconds: int
    projects: List[ProjectTotal] = field(default_factory=list)


class ReportSource(Protocol):
    """Read-only grouped duration reports of the external time tracker."""

    def daily_totals(
        self,
        workspace_id: str,
        client_id: str,
        start: dt.datetime,
        end: dt.datetime,
    ) -> List[DayTotal]:
        ...

    def daily_project_totals(
        self,
        workspace_id: str,
        client_id: str,
        start: dt.datetime,
        end: dt.datetime,
        project_ids: Optional[Iterable[str]] = None,
    ) -> List[DayProjectTotals]:
        ...


def _format_instant(value: dt.datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.") + f"{as_utc(value).microsecond // 1000:03d}Z"


def _duration(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def build_session(retries: int, backoff_factor: float, backoff_jitter: float) -> requests.Session:
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff_factor,
        backoff_jitter=backoff_jitter,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=frozenset({"GET", "POST"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class ClockifyReportsClient:
    """Wraps HTTP calls to Clockify; every request passes the shared rate gate."""

    def __init__(
        self,
        api_key: str,
        gate: RateLimitGate,
        *,
        api_url: str,
        reports_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        time_zone: Optional[str] = None,
    ) -> None:
        self.api_key = api_key
        self.gate = gate
        self.api_url = api_url.rstrip("/") + "/"
        self.reports_url = reports_url.rstrip("/") + "/"
        self.timeout = timeout
        self.session = session or build_session(2, 0.5, 0.25)
        self.time_zone = time_zone

    @classmethod
    def from_settings(
        cls,
        api_key: str,
        gate: RateLimitGate,
        config: Settings = settings,
        time_zone: Optional[str] = None,
    ) -> "ClockifyReportsClient":
        return cls(
            api_key,
            gate,
            api_url=config.clockify_api_url,
            reports_url=config.clockify_reports_url,
            timeout=config.request_timeout,
            session=build_session(
                config.request_retries,
                config.retry_backoff_factor,
                config.retry_backoff_jitter,
            ),
            time_zone=time_zone,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Api-Key": self.api_key,
        }

    def _request(self, method: str, base: str, path: str, **kwargs) -> Any:
        url = urljoin(base, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.update(self._headers())
        self.gate.wait()
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            logger.warning(f"Clockify request {method} {path} failed: {exc}")
            raise ExternalSourceError(f"Clockify request failed: {exc}") from exc

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"Clockify returned {response.status_code} for {method} {path}: {message}")
            raise ExternalSourceError(message, upstream_status=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalSourceError("Clockify returned a non-JSON response") from exc

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"Clockify error {response.status_code}"

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    def get_user(self) -> Dict[str, Any]:
        return self._request("GET", self.api_url, "user") or {}

    def validate_api_key(self) -> bool:
        try:
            self.get_user()
        except ExternalSourceError as exc:
            if exc.upstream_status in (401, 403):
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def _summary_report(
        self,
        workspace_id: str,
        client_id: str,
        start: dt.datetime,
        end: dt.datetime,
        groups: List[str],
        project_ids: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "dateRangeStart": _format_instant(start),
            "dateRangeEnd": _format_instant(end),
            "summaryFilter": {"groups": groups},
            "clients": {"ids": [client_id], "contains": "CONTAINS", "status": "ALL"},
            "amountShown": "HIDE_AMOUNT",
        }
        if self.time_zone:
            # Days are grouped in this zone, so they line up with the owner's weeks.
            payload["timeZone"] = self.time_zone
        if project_ids is not None:
            payload["projects"] = {"ids": list(project_ids), "contains": "CONTAINS", "status": "ALL"}
        data = self._request(
            "POST",
            self.reports_url,
            f"workspaces/{workspace_id}/reports/summary",
            json=payload,
        ) or {}
        return list(data.get("groupOne") or [])

    def daily_totals(
        self,
        workspace_id: str,
        client_id: str,
        start: dt.datetime,
        end: dt.datetime,
    ) -> List[DayTotal]:
        groups = self._summary_report(workspace_id, client_id, start, end, ["DATE"])
        return [DayTotal(day=group.get("_id") or group.get("name"), seconds=_duration(group.get("duration"))) for group in groups]

    def daily_project_totals(
        self,
        workspace_id: str,
        client_id: str,
        start: dt.datetime,
        end: dt.datetime,
        project_ids: Optional[Iterable[str]] = None,
    ) -> List[DayProjectTotals]:
        groups = self._summary_report(
            workspace_id, client_id, start, end, ["DATE", "PROJECT"], project_ids=project_ids
        )
        results: List[DayProjectTotals] = []
        for group in groups:
            projects = [
                ProjectTotal(
                    project_id=str(child.get("_id")),
                    project_name=str(child.get("name") or child.get("_id")),
                    seconds=_duration(child.get("duration")),
                )
                for child in group.get("children") or []
                if child.get("_id")
            ]
            results.append(
                DayProjectTotals(
                    day=group.get("_id") or group.get("name"),
                    seconds=_duration(group.get("duration")),
                    projects=projects,
                )
            )
        return results


__all__ = [
    "ClockifyReportsClient",
    "DayProjectTotals",
    "DayTotal",
    "ProjectTotal",
    "RateLimitGate",
    "ReportSource",
    "build_session",
]
