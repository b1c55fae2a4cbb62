"""Core data contracts for fixflow workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .constants import SCHEMA_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepName(str, Enum):
    SCAN = "scan"
    FIX = "fix"
    TEST = "test"
    DOCUMENT = "document"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutputMode(str, Enum):
    TEXT = "text"
    JSON = "json"


class FailureKind(str, Enum):
    NOT_INSTALLED = "not_installed"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    PARSE_ERROR = "parse_error"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    STARTED = "started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Subject(BaseModel):
    """Issue record handed over by the bug tracker. Read-only for fixflow."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    title: str
    description: str = ""
    severity: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None
    affected_lines: Optional[Tuple[int, int]] = None
    evidence: Optional[str] = None
    recommendation: Optional[str] = None
    impact: Optional[str] = None
    target_url: Optional[str] = None
    cwe_id: Optional[str] = None
    solution_prompt: Optional[str] = None
    tags: Optional[str] = None


class WorkflowStep(BaseModel):
    """One stage of a workflow pipeline."""

    name: StepName
    status: StepStatus = StepStatus.PENDING
    external_session_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)


def new_session_id() -> str:
    return f"ws-{uuid.uuid4().hex}"


class WorkflowSession(BaseModel):
    """A single execution of a step pipeline against one subject."""

    id: str = Field(default_factory=new_session_id)
    subject_id: str
    subject_title: str
    steps: List[WorkflowStep] = Field(default_factory=list)
    current_step_index: int = 0
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    external_session_id: Optional[str] = None
    schema_version: int = SCHEMA_VERSION

    def step(self, index: int) -> Optional[WorkflowStep]:
        """Return the step at ``index`` or ``None`` when out of range."""
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def find_step(self, name: StepName | str) -> Optional[WorkflowStep]:
        """Return the first step with the given name."""
        name = StepName(name)
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def all_steps_done(self) -> bool:
        return all(step.is_done for step in self.steps)

    def has_failed_step(self) -> bool:
        return any(step.status == StepStatus.FAILED for step in self.steps)

    def touch(self) -> None:
        self.updated_at = utcnow()


class ExecutionRequest(BaseModel):
    """Everything needed for a single invocation of the analysis tool."""

    prompt: str
    working_dir: Optional[str] = None
    output_mode: OutputMode = OutputMode.TEXT
    allowed_tools: List[str] = Field(default_factory=list)
    append_system_prompt: Optional[str] = None
    external_session_id: Optional[str] = None
    resume: bool = False
    timeout: Optional[float] = Field(default=None, description="Seconds")
    max_turns: Optional[int] = None


class ExecutionResult(BaseModel):
    """Outcome of an analysis tool invocation."""

    success: bool
    output: Any = None
    raw_output: str = ""
    external_session_id: Optional[str] = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    exit_code: Optional[int] = None
    cost: Optional[float] = None
    duration: float = 0.0

    @classmethod
    def succeeded(cls, output: Any, raw_output: str, **kwargs: Any) -> "ExecutionResult":
        return cls(success=True, output=output, raw_output=raw_output, **kwargs)

    @classmethod
    def failed(
        cls, failure: FailureKind, error: str, raw_output: str = "", **kwargs: Any
    ) -> "ExecutionResult":
        return cls(
            success=False,
            output=None,
            raw_output=raw_output,
            error=error,
            failure=failure,
            **kwargs,
        )


class StateChangeEvent(BaseModel):
    """Published whenever a session or one of its steps changes state."""

    session: WorkflowSession
    step: Optional[WorkflowStep] = None
    type: EventType
