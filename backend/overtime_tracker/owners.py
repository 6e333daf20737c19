from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConfigIncomplete, InvalidSettings
from .models import OwnerSettings
from .utils import WEEK_START_OFFSETS

EDITABLE_FIELDS = (
    "api_key",
    "workspace_id",
    "external_user_id",
    "timezone",
    "week_start",
    "selected_client_id",
    "selected_client_name",
    "regular_hours_per_week",
    "working_days_per_week",
    "cumulative_overtime_start_date",
)


def get_owner_settings(db: Session, owner_id: str) -> Optional[OwnerSettings]:
    return db.query(OwnerSettings).filter(OwnerSettings.owner_id == owner_id).first()


def require_owner_settings(db: Session, owner_id: str) -> OwnerSettings:
    """Return settings usable for report queries or raise :class:`ConfigIncomplete`."""
    owner = get_owner_settings(db, owner_id)
    if owner is None or not owner.api_key or not owner.workspace_id:
        raise ConfigIncomplete(
            "Clockify is not set up. Add an API key and a workspace first.",
            details={"missing": "api_key"},
        )
    if not owner.selected_client_id:
        raise ConfigIncomplete(
            "No client selected. Choose the client whose time is tracked.",
            details={"missing": "selected_client_id"},
        )
    return owner


def _validate(updates: Dict[str, Any]) -> None:
    if "timezone" in updates and updates["timezone"]:
        try:
            ZoneInfo(updates["timezone"])
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidSettings(f"Unknown timezone: {updates['timezone']}") from exc
    if "week_start" in updates and updates["week_start"]:
        if str(updates["week_start"]).upper() not in WEEK_START_OFFSETS:
            raise InvalidSettings("week_start must be MONDAY or SUNDAY")
        updates["week_start"] = str(updates["week_start"]).upper()
    hours = updates.get("regular_hours_per_week")
    if hours is not None and not 0 <= float(hours) <= 168:
        raise InvalidSettings("regular_hours_per_week must be between 0 and 168")
    days = updates.get("working_days_per_week")
    if days is not None and not 1 <= int(days) <= 7:
        raise InvalidSettings("working_days_per_week must be between 1 and 7")


def save_owner_settings(db: Session, owner_id: str, updates: Dict[str, Any]) -> OwnerSettings:
    """Create or update the settings row of ``owner_id`` with the given fields."""
    changes = {key: value for key, value in updates.items() if key in EDITABLE_FIELDS}
    _validate(changes)

    owner = get_owner_settings(db, owner_id)
    if owner is None:
        owner = OwnerSettings(
            owner_id=owner_id,
            api_key="",
            workspace_id="",
            timezone=settings.timezone,
            week_start="MONDAY",
            regular_hours_per_week=settings.default_regular_hours_per_week,
            working_days_per_week=settings.default_working_days_per_week,
        )

    for key, value in changes.items():
        if isinstance(value, dt.datetime) and key == "cumulative_overtime_start_date":
            value = value.date()
        setattr(owner, key, value)

    db.add(owner)
    db.commit()
    db.refresh(owner)
    logger.info(f"Saved settings for owner {owner_id}: {sorted(changes)}")
    return owner
