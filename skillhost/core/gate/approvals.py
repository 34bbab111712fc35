"""
Approval Store - persisted capability decisions

One row per (skill_id, capability). Rows are written by the capability
gate after a prompt and deleted by revoke or when a skill's capability
declaration changes.
"""

import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Union

from skillhost.core.gate.models import ApprovalDecision, ApprovalRecord
from skillhost.core.storage import connect, now_ms
from skillhost.skills.manifest import Capability

logger = logging.getLogger(__name__)


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS approvals (
    skill_id TEXT NOT NULL,
    capability TEXT NOT NULL,
    decision TEXT NOT NULL,  -- granted | denied | ask_each_time
    expires_at INTEGER,  -- epoch ms, NULL = never
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (skill_id, capability)
)
"""


class ApprovalStore:
    """SQLite-backed approval records."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self.init_db()

    def init_db(self):
        conn = connect(self.db_path)
        try:
            conn.execute(CREATE_TABLE_SQL)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize approvals table: {e}")
            raise
        finally:
            conn.close()

    def get(self, skill_id: str, capability: Capability) -> Optional[ApprovalRecord]:
        conn = connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM approvals WHERE skill_id = ? AND capability = ?",
                (skill_id, capability.value),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def set(
        self,
        skill_id: str,
        capability: Capability,
        decision: ApprovalDecision,
        expires_at: Optional[int] = None,
    ) -> ApprovalRecord:
        """Insert or replace the decision for a pair."""
        now = now_ms()
        conn = connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO approvals (skill_id, capability, decision, expires_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(skill_id, capability) DO UPDATE SET
                    decision = excluded.decision,
                    expires_at = excluded.expires_at,
                    updated_at = excluded.updated_at
                """,
                (skill_id, capability.value, decision.value, expires_at, now, now),
            )
            conn.commit()
        finally:
            conn.close()

        logger.debug(f"Approval stored: {skill_id}/{capability.value} = {decision.value}")
        return ApprovalRecord(skill_id, capability, decision, expires_at, now)

    def list(self, skill_id: Optional[str] = None) -> List[ApprovalRecord]:
        conn = connect(self.db_path)
        try:
            if skill_id is not None:
                rows = conn.execute(
                    "SELECT * FROM approvals WHERE skill_id = ? ORDER BY capability",
                    (skill_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM approvals ORDER BY skill_id, capability"
                ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def revoke(self, skill_id: str, capability: Optional[Capability] = None) -> int:
        """Delete records for a skill (one capability or all). Returns the row count."""
        conn = connect(self.db_path)
        try:
            if capability is not None:
                cursor = conn.execute(
                    "DELETE FROM approvals WHERE skill_id = ? AND capability = ?",
                    (skill_id, capability.value),
                )
            else:
                cursor = conn.execute("DELETE FROM approvals WHERE skill_id = ?", (skill_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ApprovalRecord:
        return ApprovalRecord(
            skill_id=row["skill_id"],
            capability=Capability(row["capability"]),
            decision=ApprovalDecision(row["decision"]),
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
        )
