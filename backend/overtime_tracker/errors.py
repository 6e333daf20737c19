"""
Exception hierarchy of the overtime tracker.

Every error carries an HTTP status and a machine-readable ``code`` so API
clients can branch on it without parsing messages.
"""
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from loguru import logger


class TrackerError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthorized(TrackerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ConfigIncomplete(TrackerError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFIG_INCOMPLETE"


class NoProjectsTracked(TrackerError):
    status_code = status.HTTP_409_CONFLICT
    code = "NO_PROJECTS_TRACKED"

    def __init__(self, config_id: Optional[str] = None):
        super().__init__(
            "No projects selected for tracking",
            details={"config_id": config_id} if config_id else None,
        )


class ExternalSourceError(TrackerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SOURCE_ERROR"

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(
            message,
            details={"upstream_status": upstream_status} if upstream_status is not None else None,
        )
        self.upstream_status = upstream_status


class InvalidInterval(TrackerError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_INTERVAL"


class InvalidSettings(TrackerError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_SETTINGS"


class InvalidWeekStart(TrackerError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_WEEK_START"

    def __init__(self, week_start: dt.date, expected: dt.date):
        super().__init__(
            f"{week_start} is not the first day of a week; the week containing it starts on {expected}",
            details={"week_start": week_start.isoformat(), "expected_week_start": expected.isoformat()},
        )


class ConfigEntryNotFound(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "CONFIG_ENTRY_NOT_FOUND"

    def __init__(self, config_id: str):
        super().__init__("Configuration entry not found", details={"config_id": config_id})


class WeekNotCached(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "WEEK_NOT_CACHED"

    def __init__(self, week_start: dt.date):
        super().__init__(
            f"No cached data found for week {week_start}. Refresh the data first.",
            details={"week_start": week_start.isoformat()},
        )


class WeekNotCommitted(TrackerError):
    status_code = status.HTTP_409_CONFLICT
    code = "WEEK_NOT_COMMITTED"

    def __init__(self, week_start: dt.date):
        super().__init__(
            f"Week {week_start} is not committed. Use a regular refresh instead.",
            details={"week_start": week_start.isoformat()},
        )


class DiscrepancyNotFound(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "DISCREPANCY_NOT_FOUND"

    def __init__(self, discrepancy_id: int):
        super().__init__("Discrepancy not found", details={"discrepancy_id": discrepancy_id})


class RangeRefreshPartialFailure(TrackerError):
    status_code = status.HTTP_207_MULTI_STATUS
    code = "RANGE_REFRESH_PARTIAL_FAILURE"

    def __init__(self, errors: List[Dict[str, Any]], total_weeks: int):
        super().__init__(
            f"{len(errors)} of {total_weeks} weeks failed to refresh",
            details={"errors": errors, "total_weeks": total_weeks},
        )
        self.errors = errors


async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
