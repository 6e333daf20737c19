from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from typing import Union

from sqlalchemy import Boolean, Column, Date, DateTime, Float, Index, Integer, String
from sqlalchemy.dialects.sqlite import JSON as SQLiteJSON
from sqlalchemy.orm import declarative_base

from .utils import from_db_datetime

Base = declarative_base()

TRACKED_PROJECTS = "tracked_projects"
CONFIG_TYPES = (TRACKED_PROJECTS,)

WEEK_STATUS_PENDING = "pending"
WEEK_STATUS_COMMITTED = "committed"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class OpenValidity:
    """The entry is current until a successor closes it."""

    def contains(self, instant: dt.datetime) -> bool:
        return True


@dataclass(frozen=True)
class ClosedValidity:
    until: dt.datetime

    def contains(self, instant: dt.datetime) -> bool:
        return instant < self.until


Validity = Union[OpenValidity, ClosedValidity]


class ConfigEntry(Base):
    __tablename__ = "config_chronicle"
    __table_args__ = (
        Index("config_chronicle_temporal_idx", "owner_id", "config_type", "valid_from", "valid_until"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False, index=True)
    config_type = Column(String(50), nullable=False, default=TRACKED_PROJECTS)
    value = Column(SQLiteJSON, nullable=False, default=dict)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    @property
    def valid_from_utc(self) -> dt.datetime:
        return from_db_datetime(self.valid_from)

    @property
    def validity(self) -> Validity:
        if self.valid_until is None:
            return OpenValidity()
        return ClosedValidity(from_db_datetime(self.valid_until))

    @property
    def is_open(self) -> bool:
        return isinstance(self.validity, OpenValidity)

    def contains(self, instant: dt.datetime) -> bool:
        return self.valid_from_utc <= instant and self.validity.contains(instant)


class DailyCacheRow(Base):
    __tablename__ = "cached_daily_project_sums"
    __table_args__ = (
        Index("cached_daily_owner_date_idx", "owner_id", "date"),
        Index("cached_daily_owner_project_idx", "owner_id", "project_id", "date"),
        Index("cached_daily_invalidated_idx", "invalidated_at"),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)
    project_id = Column(String(64), nullable=False)
    project_name = Column(String(200), nullable=False)
    client_id = Column(String(64), nullable=False)
    seconds = Column(Integer, nullable=False, default=0)
    is_tracked = Column(Boolean, nullable=False, default=True)
    calculated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    invalidated_at = Column(DateTime(timezone=True), nullable=True)


class WeeklyCacheRow(Base):
    __tablename__ = "cached_weekly_sums"
    __table_args__ = (
        Index("cached_weekly_owner_week_idx", "owner_id", "week_start"),
        Index("cached_weekly_status_idx", "owner_id", "status"),
        Index("cached_weekly_invalidated_idx", "invalidated_at"),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    week_start = Column(Date, nullable=False)
    week_end = Column(Date, nullable=False)
    client_id = Column(String(64), nullable=False)
    total_seconds = Column(Integer, nullable=False, default=0)
    regular_hours_baseline = Column(Float, nullable=False)
    overtime_seconds = Column(Integer, nullable=False, default=0)
    cumulative_overtime_seconds = Column(Integer, nullable=True)
    config_snapshot_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default=WEEK_STATUS_PENDING)
    committed_at = Column(DateTime(timezone=True), nullable=True)
    calculated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    invalidated_at = Column(DateTime(timezone=True), nullable=True)


class WeeklyDiscrepancy(Base):
    __tablename__ = "weekly_discrepancies"
    __table_args__ = (
        Index("discrepancy_owner_week_idx", "owner_id", "week_start"),
        Index("discrepancy_unresolved_idx", "owner_id", "resolved_at"),
    )

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False)
    week_start = Column(Date, nullable=False)
    original_total_seconds = Column(Integer, nullable=False)
    new_total_seconds = Column(Integer, nullable=False)
    difference_seconds = Column(Integer, nullable=False)
    detected_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution = Column(String(20), nullable=True)


class OwnerSettings(Base):
    __tablename__ = "owner_settings"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(64), nullable=False, unique=True, index=True)
    api_key = Column(String(200), nullable=False)
    workspace_id = Column(String(64), nullable=False, index=True)
    external_user_id = Column(String(64), nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    week_start = Column(String(10), nullable=False, default="MONDAY")
    selected_client_id = Column(String(64), nullable=True)
    selected_client_name = Column(String(200), nullable=True)
    regular_hours_per_week = Column(Float, nullable=False, default=40.0)
    working_days_per_week = Column(Integer, nullable=False, default=5)
    cumulative_overtime_start_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.workspace_id and self.selected_client_id)
