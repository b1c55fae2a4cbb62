"""Shared constants for fixflow."""

from __future__ import annotations

# Prompts longer than this are written to a scratch file instead of being
# passed on the command line.
DEFAULT_OFFLOAD_THRESHOLD = 6000

DEFAULT_TOOL_BINARY = "claude"
DEFAULT_SCRATCH_DIR = ".fixflow/temp"
DEFAULT_DATABASE_URL = "sqlite://.fixflow/sessions.db"

DEFAULT_TIMEOUT_SECONDS = 120.0
VERSION_PROBE_TIMEOUT_SECONDS = 10.0
KILL_GRACE_SECONDS = 2.0

# Bumped whenever the persisted WorkflowSession layout changes.
SCHEMA_VERSION = 1

OFFLOAD_PROMPT_TEMPLATE = "Please read and follow the instructions in @{path}"
CANCELLED_ERROR_MESSAGE = "Cancelled by caller"

WORKFLOW_PRESETS: dict[str, list[str]] = {
    "full": ["scan", "fix", "test", "document"],
    "fix-only": ["fix"],
    "scan-fix": ["scan", "fix"],
    "fix-test": ["fix", "test"],
    "fix-doc": ["fix", "document"],
}
