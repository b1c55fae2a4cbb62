"""Persistence layer for fixflow sessions."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from ..config import FixflowConfig, load_config
from .inmemory import InMemorySessionStore
from .repository import SessionStore
from .sqlite import SQLiteSessionStore

_store_instance: SessionStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[FixflowConfig] = None
) -> SessionStore:
    """Factory function to obtain a session store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FIXFLOW_DATABASE_URL``, or from
    loaded configuration. ``sqlite://`` paths that are relative resolve against
    the configured workspace root. ``memory://`` selects an in-memory store.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FIXFLOW_DATABASE_URL")
        or config.storage.database_url
    )

    if not database_url or database_url.startswith("memory://"):
        _store_instance = InMemorySessionStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = Path(database_url.replace("sqlite://", "", 1)).expanduser()
        if not path.is_absolute():
            path = config.resolve_workspace() / path
        _store_instance = SQLiteSessionStore(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "SQLiteSessionStore",
    "get_store",
]
