from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_DATABASE_URL,
    DEFAULT_OFFLOAD_THRESHOLD,
    DEFAULT_SCRATCH_DIR,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOOL_BINARY,
    KILL_GRACE_SECONDS,
    VERSION_PROBE_TIMEOUT_SECONDS,
)
from .contracts import OutputMode, StepName


class ExecutorConfig(BaseModel):
    """Settings for invoking the external analysis tool."""

    binary: str = DEFAULT_TOOL_BINARY
    scratch_dir: str = DEFAULT_SCRATCH_DIR
    offload_threshold: int = DEFAULT_OFFLOAD_THRESHOLD
    default_timeout: float = DEFAULT_TIMEOUT_SECONDS
    version_timeout: float = VERSION_PROBE_TIMEOUT_SECONDS
    kill_grace_period: float = KILL_GRACE_SECONDS
    max_concurrent_processes: Optional[int] = None


class StepProfile(BaseModel):
    """Per-step capability and budget settings."""

    allowed_tools: List[str] = Field(default_factory=list)
    max_turns: Optional[int] = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    output_mode: OutputMode = OutputMode.JSON


# Exploratory steps get larger budgets than the ones that follow them.
DEFAULT_STEP_PROFILES: Dict[str, Dict[str, Any]] = {
    StepName.SCAN.value: {
        "allowed_tools": ["Read", "Glob", "Grep"],
        "max_turns": 15,
        "timeout": 300.0,
    },
    StepName.FIX.value: {
        "allowed_tools": ["Read", "Edit", "Glob", "Grep"],
        "max_turns": 10,
        "timeout": 180.0,
    },
    StepName.TEST.value: {
        "allowed_tools": ["Read", "Edit", "Glob"],
        "max_turns": 10,
        "timeout": 180.0,
    },
    StepName.DOCUMENT.value: {
        "allowed_tools": ["Read"],
        "max_turns": 5,
        "timeout": 120.0,
    },
}


class StorageConfig(BaseModel):
    """Session store settings."""

    database_url: Optional[str] = DEFAULT_DATABASE_URL


class FixflowConfig(BaseModel):
    """Top-level configuration model."""

    workspace_root: Optional[str] = None
    system_prompt: Optional[str] = None
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    steps: Dict[StepName, StepProfile] = Field(default_factory=dict, validate_default=True)

    @field_validator("steps", mode="before")
    @classmethod
    def _merge_step_defaults(cls, value: Any) -> Dict[str, Any]:
        merged = {name: dict(profile) for name, profile in DEFAULT_STEP_PROFILES.items()}
        for name, overrides in (value or {}).items():
            key = name.value if isinstance(name, StepName) else str(name)
            if isinstance(overrides, StepProfile):
                overrides = overrides.model_dump()
            merged.setdefault(key, {}).update(overrides or {})
        return merged

    def profile_for(self, step: StepName | str) -> StepProfile:
        return self.steps[StepName(step)]

    def resolve_workspace(self) -> Path:
        return Path(self.workspace_root or os.getcwd()).expanduser().resolve()


def load_config(path: Optional[str] = None) -> FixflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FIXFLOW_CONFIG env
            variable or 'fixflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("FIXFLOW_CONFIG", "fixflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FixflowConfig(**data)
    else:
        config = FixflowConfig()

    env_db_url = os.getenv("FIXFLOW_DATABASE_URL")
    if env_db_url:
        config.storage.database_url = env_db_url
    env_binary = os.getenv("FIXFLOW_TOOL_BINARY")
    if env_binary:
        config.executor.binary = env_binary
    return config
