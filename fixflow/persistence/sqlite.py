"""SQLite implementation of the session store."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..constants import SCHEMA_VERSION
from ..contracts import WorkflowSession
from .repository import SessionStore

logger = logging.getLogger(__name__)


class SQLiteSessionStore(SessionStore):
    """Persist sessions as JSON documents in a single SQLite table.

    Each save is a single upsert committed in its own transaction, so an
    interrupted write leaves the previous version of the record in place.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    schema_version INTEGER NOT NULL,
                    subject_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._conn:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _decode(self, row: sqlite3.Row) -> WorkflowSession | None:
        if row["schema_version"] > SCHEMA_VERSION:
            logger.warning(
                f"Skipping session {row['id']}: schema version {row['schema_version']} "
                f"is newer than supported version {SCHEMA_VERSION}"
            )
            return None
        try:
            return WorkflowSession.model_validate_json(row["data"])
        except ValidationError as e:
            logger.error(f"Failed to load session {row['id']}: {e}")
            return None

    # ------------------------------------------------------------------
    # Store API
    async def save(self, session: WorkflowSession) -> None:
        async with self._lock:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO sessions (id, schema_version, subject_id, status, updated_at, data)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    schema_version = excluded.schema_version,
                    subject_id = excluded.subject_id,
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    data = excluded.data
                """,
                session.id,
                session.schema_version,
                session.subject_id,
                session.status.value,
                session.updated_at.isoformat(),
                session.model_dump_json(),
            )

    async def get(self, session_id: str) -> WorkflowSession | None:
        async with self._lock:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT id, schema_version, data FROM sessions WHERE id = ?",
                session_id,
            )
        if not row:
            return None
        return self._decode(row)

    async def load_all(self) -> list[WorkflowSession]:
        async with self._lock:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT id, schema_version, data FROM sessions ORDER BY updated_at",
            )
        sessions: list[WorkflowSession] = []
        for row in rows:
            session = self._decode(row)
            if session is not None:
                sessions.append(session)
        return sessions

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(
                self._execute, "DELETE FROM sessions WHERE id = ?", session_id
            )

    def close(self) -> None:
        self._conn.close()
