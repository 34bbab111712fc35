"""Skill Registry - Database-backed storage for installed skills.

This module provides:
- SkillRegistry class for install / uninstall / list operations
- Status management (enabled | disabled | unavailable | failed | quarantined)
- Rollback to the descriptor a reinstall replaced
- Error tracking and timestamps (epoch milliseconds)

The registry is an explicit object handed to the host, the capability gate
and the health monitor; there is no module-level instance.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from skillhost.core.errors import InvalidTransitionError, SkillNotFoundError
from skillhost.core.storage import connect, now_ms
from skillhost.skills.manifest import SkillDescriptor

logger = logging.getLogger(__name__)


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS skills (
    skill_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    version TEXT NOT NULL,
    status TEXT NOT NULL,  -- enabled | disabled | unavailable | failed | quarantined
    descriptor_json TEXT NOT NULL,
    previous_descriptor_json TEXT,  -- replaced by the last reinstall
    created_at INTEGER NOT NULL,  -- epoch ms
    updated_at INTEGER NOT NULL,  -- epoch ms
    last_error TEXT
)
"""

CREATE_INDEX_STATUS_SQL = """
CREATE INDEX IF NOT EXISTS idx_skills_status ON skills(status)
"""

# Columns added after the first release, with their definitions
ADDED_COLUMNS = {
    "previous_descriptor_json": "TEXT",
}


class SkillStatus(str, Enum):
    """Availability of an installed skill"""
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"
    QUARANTINED = "quarantined"


@dataclass(frozen=True)
class SkillRecord:
    """Registry row: descriptor plus mutable status."""

    descriptor: SkillDescriptor
    status: SkillStatus
    created_at: int
    updated_at: int
    last_error: Optional[str] = None
    previous: Optional[SkillDescriptor] = None

    @property
    def skill_id(self) -> str:
        return self.descriptor.skill_id


@dataclass(frozen=True)
class InstallResult:
    """Outcome of install_skill()."""

    record: SkillRecord
    capabilities_changed: bool
    replaced: bool


class SkillRegistry:
    """Skill registry with SQLite backend.

    Manages skill lifecycle:
    - Install: register (or replace) a descriptor
    - Status: mark skills unavailable / failed / quarantined / disabled / enabled
    - Rollback: restore the descriptor a reinstall replaced
    - Query: list and fetch skills
    - Uninstall: remove skills from the registry
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        logger.info(f"SkillRegistry initialized at: {self.db_path}")
        self.init_db()

    def init_db(self):
        """Create the skills table and indexes."""
        conn = connect(self.db_path)
        try:
            conn.execute(CREATE_TABLE_SQL)
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(skills)")}
            for column, definition in ADDED_COLUMNS.items():
                if column not in columns:
                    logger.info(f"Adding column skills.{column}")
                    conn.execute(f"ALTER TABLE skills ADD COLUMN {column} {definition}")
            conn.execute(CREATE_INDEX_STATUS_SQL)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize skills table: {e}")
            raise
        finally:
            conn.close()

    def install(self, descriptor: SkillDescriptor) -> InstallResult:
        """Insert or replace a skill descriptor.

        Re-installing keeps ``created_at`` and resets the status to enabled.
        The caller is told whether the capability declaration changed so it
        can drop stale approvals.
        """
        now = now_ms()
        descriptor_json = json.dumps(descriptor.to_dict(), ensure_ascii=False)

        conn = connect(self.db_path)
        try:
            existing = conn.execute(
                "SELECT descriptor_json, created_at FROM skills WHERE skill_id = ?",
                (descriptor.skill_id,),
            ).fetchone()

            capabilities_changed = False
            created_at = now
            previous = None
            previous_json = None
            if existing:
                previous_json = existing["descriptor_json"]
                previous = SkillDescriptor(**json.loads(previous_json))
                capabilities_changed = previous.capabilities != descriptor.capabilities
                created_at = existing["created_at"]

            conn.execute(
                """
                INSERT OR REPLACE INTO skills (
                    skill_id, name, version, status, descriptor_json,
                    previous_descriptor_json, created_at, updated_at, last_error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    descriptor.skill_id,
                    descriptor.name,
                    descriptor.version,
                    SkillStatus.ENABLED.value,
                    descriptor_json,
                    previous_json,
                    created_at,
                    now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        if existing:
            logger.info(
                f"Replaced skill: {descriptor.skill_id} "
                f"(capabilities_changed={capabilities_changed})"
            )
        else:
            logger.info(f"Installed skill: {descriptor.skill_id}")

        record = SkillRecord(
            descriptor=descriptor,
            status=SkillStatus.ENABLED,
            created_at=created_at,
            updated_at=now,
            previous=previous,
        )
        return InstallResult(
            record=record,
            capabilities_changed=capabilities_changed,
            replaced=existing is not None,
        )

    def rollback(self, skill_id: str) -> InstallResult:
        """Reinstall the descriptor the last reinstall replaced.

        The rolled-back-from descriptor becomes the new previous one, so a
        second rollback undoes the first.

        Raises:
            SkillNotFoundError: If the skill is not installed
            InvalidTransitionError: If there is no previous descriptor
        """
        record = self.require(skill_id)
        if record.previous is None:
            raise InvalidTransitionError(
                f"Skill {skill_id} has no previous version to roll back to",
                hint="Rollback is available after a reinstall",
            )
        result = self.install(record.previous)
        logger.info(
            f"Rolled back {skill_id} from {record.descriptor.version} to {record.previous.version}"
        )
        return result

    def uninstall(self, skill_id: str) -> bool:
        """Remove a skill. Returns False if it was not installed."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM skills WHERE skill_id = ?", (skill_id,))
            conn.commit()
            removed = cursor.rowcount > 0
        finally:
            conn.close()

        if removed:
            logger.info(f"Uninstalled skill: {skill_id}")
        return removed

    def get(self, skill_id: str) -> Optional[SkillRecord]:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM skills WHERE skill_id = ?", (skill_id,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def require(self, skill_id: str) -> SkillRecord:
        """Fetch a skill or raise SkillNotFoundError."""
        record = self.get(skill_id)
        if record is None:
            raise SkillNotFoundError(f"Skill not installed: {skill_id}")
        return record

    def list(self, status: Optional[SkillStatus] = None) -> List[SkillRecord]:
        """List skills ordered by id, optionally filtered by status."""
        conn = connect(self.db_path)
        try:
            if status is not None:
                rows = conn.execute(
                    "SELECT * FROM skills WHERE status = ? ORDER BY skill_id",
                    (status.value,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM skills ORDER BY skill_id").fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def set_status(
        self,
        skill_id: str,
        status: SkillStatus,
        last_error: Optional[str] = None,
    ) -> None:
        """Update a skill's status and last error."""
        conn = connect(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE skills SET status = ?, last_error = ?, updated_at = ? WHERE skill_id = ?",
                (status.value, last_error, now_ms(), skill_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise SkillNotFoundError(f"Skill not installed: {skill_id}")
        finally:
            conn.close()

        if status == SkillStatus.ENABLED:
            logger.debug(f"Skill {skill_id} marked enabled")
        else:
            logger.warning(f"Skill {skill_id} marked {status.value}: {last_error}")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SkillRecord:
        return SkillRecord(
            descriptor=SkillDescriptor(**json.loads(row["descriptor_json"])),
            status=SkillStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
            previous=(
                SkillDescriptor(**json.loads(row["previous_descriptor_json"]))
                if row["previous_descriptor_json"]
                else None
            ),
        )
