"""Store abstraction for workflow session persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowSession


class SessionStore(Protocol):
    """Protocol for session persistence backends."""

    async def save(self, session: WorkflowSession) -> None:
        """Persist the full session record, replacing any previous version."""

    async def get(self, session_id: str) -> WorkflowSession | None:
        """Retrieve a session by id."""

    async def load_all(self) -> list[WorkflowSession]:
        """Return all persisted sessions."""

    async def delete(self, session_id: str) -> None:
        """Remove a session. Missing ids are ignored."""
