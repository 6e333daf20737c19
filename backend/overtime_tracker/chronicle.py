"""Versioned history of the tracked-project configuration.

Each entry is valid on the half-open interval ``[valid_from, valid_until)``;
an entry without ``valid_until`` is the open, current one. At most one entry
per owner and config type is open.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .errors import ConfigEntryNotFound, InvalidInterval
from .models import CONFIG_TYPES, TRACKED_PROJECTS, ConfigEntry
from .state import ScopeLocks, scope_locks
from .utils import as_utc, now_utc, to_db_datetime

UNSET: Any = object()


@dataclass
class TrackedProjects:
    project_ids: List[str] = field(default_factory=list)
    project_names: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        ids: List[str] = []
        names: List[str] = []
        for index, project_id in enumerate(self.project_ids):
            key = str(project_id)
            if key in ids:
                continue
            ids.append(key)
            names.append(self.project_names[index] if index < len(self.project_names) else key)
        self.project_ids = ids
        self.project_names = names

    @classmethod
    def from_value(cls, value: Optional[Mapping[str, Any]]) -> "TrackedProjects":
        value = value or {}
        return cls(
            project_ids=list(value.get("projectIds") or []),
            project_names=list(value.get("projectNames") or []),
        )

    def to_value(self) -> Dict[str, List[str]]:
        return {"projectIds": list(self.project_ids), "projectNames": list(self.project_names)}

    @property
    def names_by_id(self) -> Dict[str, str]:
        return dict(zip(self.project_ids, self.project_names))

    def __bool__(self) -> bool:
        return bool(self.project_ids)


def tracked_projects(entry: ConfigEntry) -> TrackedProjects:
    return TrackedProjects.from_value(entry.value)


def _check_type(config_type: str) -> None:
    if config_type not in CONFIG_TYPES:
        raise InvalidInterval(f"Unknown configuration type: {config_type}")


def _owner_entries(db: Session, owner_id: str, config_type: str):
    return db.query(ConfigEntry).filter(
        ConfigEntry.owner_id == owner_id,
        ConfigEntry.config_type == config_type,
    )


def _open_entry(db: Session, owner_id: str, config_type: str) -> Optional[ConfigEntry]:
    return (
        _owner_entries(db, owner_id, config_type)
        .filter(ConfigEntry.valid_until.is_(None))
        .order_by(ConfigEntry.valid_from.desc())
        .first()
    )


def _get_entry(db: Session, config_id: str, owner_id: str) -> ConfigEntry:
    entry = db.get(ConfigEntry, config_id)
    if entry is None or entry.owner_id != owner_id:
        raise ConfigEntryNotFound(config_id)
    return entry


def get_config_at(
    db: Session,
    owner_id: str,
    config_type: str,
    instant: dt.datetime,
) -> Optional[ConfigEntry]:
    """Return the entry whose validity interval contains ``instant``."""
    moment = to_db_datetime(instant)
    return (
        _owner_entries(db, owner_id, config_type)
        .filter(
            ConfigEntry.valid_from <= moment,
            or_(ConfigEntry.valid_until.is_(None), ConfigEntry.valid_until > moment),
        )
        .order_by(ConfigEntry.valid_from.desc())
        .first()
    )


def get_current_config(
    db: Session,
    owner_id: str,
    config_type: str = TRACKED_PROJECTS,
    now: Optional[dt.datetime] = None,
) -> Optional[ConfigEntry]:
    return get_config_at(db, owner_id, config_type, now or now_utc())


def list_history(db: Session, owner_id: str, config_type: str = TRACKED_PROJECTS) -> List[ConfigEntry]:
    return _owner_entries(db, owner_id, config_type).order_by(ConfigEntry.valid_from.desc()).all()


def append_config(
    db: Session,
    owner_id: str,
    config_type: str,
    value: TrackedProjects,
    valid_from: Optional[dt.datetime] = None,
    *,
    locks: ScopeLocks = scope_locks,
) -> ConfigEntry:
    """Close the open entry at ``valid_from`` and insert a new open entry."""
    _check_type(config_type)
    start = as_utc(valid_from) if valid_from is not None else now_utc()

    with locks.hold(owner_id, "chronicle", config_type):
        current = _open_entry(db, owner_id, config_type)
        latest = _owner_entries(db, owner_id, config_type).order_by(ConfigEntry.valid_from.desc()).first()
        # The new entry stays open, so it must start after every existing one.
        if latest is not None and start <= latest.valid_from_utc:
            raise InvalidInterval(
                "A configuration must start after the latest configuration",
                details={
                    "valid_from": start.isoformat(),
                    "latest_valid_from": latest.valid_from_utc.isoformat(),
                },
            )

        start_db = to_db_datetime(start)
        try:
            if current is not None:
                current.valid_until = start_db
                db.add(current)

            # Historical entries reaching past the new start are cut off there.
            straddling = (
                _owner_entries(db, owner_id, config_type)
                .filter(
                    ConfigEntry.valid_until.isnot(None),
                    ConfigEntry.valid_from < start_db,
                    ConfigEntry.valid_until > start_db,
                )
                .all()
            )
            for entry in straddling:
                entry.valid_until = start_db
                db.add(entry)

            entry = ConfigEntry(
                owner_id=owner_id,
                config_type=config_type,
                value=value.to_value(),
                valid_from=start_db,
                valid_until=None,
            )
            db.add(entry)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(entry)

    logger.info(
        f"Appended {config_type} config {entry.id} for owner {owner_id} "
        f"valid from {start.isoformat()} ({len(value.project_ids)} projects)"
    )
    return entry


def _siblings(db: Session, entry: ConfigEntry):
    ordered = (
        _owner_entries(db, entry.owner_id, entry.config_type)
        .order_by(ConfigEntry.valid_from.asc(), ConfigEntry.created_at.asc())
        .all()
    )
    index = next(i for i, candidate in enumerate(ordered) if candidate.id == entry.id)
    previous = ordered[index - 1] if index > 0 else None
    following = ordered[index + 1] if index < len(ordered) - 1 else None
    return previous, following


def revise_interval(
    db: Session,
    config_id: str,
    owner_id: str,
    valid_from: Any = UNSET,
    valid_until: Any = UNSET,
    *,
    locks: ScopeLocks = scope_locks,
) -> ConfigEntry:
    """Move the boundaries of one entry.

    ``valid_until=None`` reopens the entry. Violations raise
    :class:`InvalidInterval` and leave the history untouched.
    """
    entry = _get_entry(db, config_id, owner_id)

    with locks.hold(owner_id, "chronicle", entry.config_type):
        new_from = as_utc(valid_from) if valid_from is not UNSET and valid_from is not None else entry.valid_from_utc
        if valid_until is UNSET:
            new_until = None if entry.is_open else as_utc(entry.valid_until)
        elif valid_until is None:
            new_until = None
        else:
            new_until = as_utc(valid_until)

        previous, following = _siblings(db, entry)

        if previous is not None:
            if new_from < previous.valid_from_utc:
                raise InvalidInterval(
                    "Start cannot be before the previous configuration's start",
                    details={"previous_valid_from": previous.valid_from_utc.isoformat()},
                )
            if not previous.is_open and new_from < as_utc(previous.valid_until):
                raise InvalidInterval(
                    "Start overlaps the previous configuration",
                    details={"previous_valid_until": as_utc(previous.valid_until).isoformat()},
                )

        if following is not None:
            if new_from >= following.valid_from_utc:
                raise InvalidInterval(
                    "Start cannot be on or after the next configuration's start",
                    details={"next_valid_from": following.valid_from_utc.isoformat()},
                )
            if new_until is None or new_until > following.valid_from_utc:
                raise InvalidInterval(
                    "End overlaps the next configuration",
                    details={"next_valid_from": following.valid_from_utc.isoformat()},
                )

        if new_until is not None and new_from >= new_until:
            raise InvalidInterval("Start must be before end")

        if new_until is None and not entry.is_open:
            other_open = _open_entry(db, owner_id, entry.config_type)
            if other_open is not None and other_open.id != entry.id:
                raise InvalidInterval(
                    "Another configuration is already open",
                    details={"open_config_id": other_open.id},
                )

        try:
            entry.valid_from = to_db_datetime(new_from)
            entry.valid_until = to_db_datetime(new_until) if new_until is not None else None
            db.add(entry)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(entry)

    logger.info(
        f"Revised config {entry.id} of owner {owner_id}: "
        f"[{new_from.isoformat()}, {new_until.isoformat() if new_until else 'open'})"
    )
    return entry


def delete_entry(
    db: Session,
    config_id: str,
    owner_id: str,
    *,
    locks: ScopeLocks = scope_locks,
) -> None:
    """Remove one historical entry. Neighbouring entries are not re-stitched."""
    entry = _get_entry(db, config_id, owner_id)

    with locks.hold(owner_id, "chronicle", entry.config_type):
        if entry.is_open:
            raise InvalidInterval(
                "The current configuration cannot be deleted; append a new one instead",
                details={"config_id": config_id},
            )
        remaining = _owner_entries(db, owner_id, entry.config_type).count()
        if remaining <= 1:
            raise InvalidInterval(
                "The only configuration entry cannot be deleted",
                details={"config_id": config_id},
            )
        db.delete(entry)
        db.commit()

    logger.info(f"Deleted config {config_id} of owner {owner_id}")


def delete_history(
    db: Session,
    owner_id: str,
    config_type: str = TRACKED_PROJECTS,
    *,
    locks: ScopeLocks = scope_locks,
) -> int:
    """Remove every closed entry; the open entry stays."""
    _check_type(config_type)
    with locks.hold(owner_id, "chronicle", config_type):
        query = _owner_entries(db, owner_id, config_type).filter(ConfigEntry.valid_until.isnot(None))
        if _open_entry(db, owner_id, config_type) is None:
            # Without an open entry the latest closed one is kept as the sole history.
            latest = query.order_by(ConfigEntry.valid_from.desc()).first()
            if latest is not None:
                query = query.filter(ConfigEntry.id != latest.id)
        deleted = query.delete(synchronize_session=False)
        db.commit()

    logger.info(f"Deleted {deleted} historical {config_type} configs of owner {owner_id}")
    return deleted


def open_entry_count(db: Session, owner_id: str, config_type: str = TRACKED_PROJECTS) -> int:
    return (
        _owner_entries(db, owner_id, config_type)
        .filter(ConfigEntry.valid_until.is_(None))
        .count()
    )
