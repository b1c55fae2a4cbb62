"""fixflow: AI-assisted remediation workflows driven by an external analysis CLI."""

from .config import FixflowConfig, load_config
from .context import WorkflowContext, build_context
from .contracts import (
    ExecutionRequest,
    ExecutionResult,
    SessionStatus,
    StateChangeEvent,
    StepName,
    StepStatus,
    Subject,
    WorkflowSession,
    WorkflowStep,
)
from .errors import WorkflowCancelled, WorkflowFailure
from .events import EventChannel
from .executor import AnalysisExecutor
from .persistence import get_store
from .prompts import DefaultPromptBuilder
from .session import SessionManager

__version__ = "0.1.0"
__all__ = [
    "AnalysisExecutor",
    "DefaultPromptBuilder",
    "EventChannel",
    "ExecutionRequest",
    "ExecutionResult",
    "FixflowConfig",
    "SessionManager",
    "SessionStatus",
    "StateChangeEvent",
    "StepName",
    "StepStatus",
    "Subject",
    "WorkflowCancelled",
    "WorkflowContext",
    "WorkflowFailure",
    "WorkflowSession",
    "WorkflowStep",
    "build_context",
    "get_store",
    "load_config",
]
