"""In-memory implementation of the session store."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowSession
from .repository import SessionStore


class InMemorySessionStore(SessionStore):
    """Store sessions in local memory.

    Useful for tests or when ``memory://`` is configured. Records are kept in
    serialized form so callers never share objects with the store. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: Dict[str, str] = {}

    async def save(self, session: WorkflowSession) -> None:
        self._records[session.id] = session.model_dump_json()

    async def get(self, session_id: str) -> WorkflowSession | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        return WorkflowSession.model_validate_json(record)

    async def load_all(self) -> list[WorkflowSession]:
        return [WorkflowSession.model_validate_json(r) for r in self._records.values()]

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)
