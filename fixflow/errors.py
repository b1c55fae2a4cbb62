"""Exception hierarchy for fixflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .contracts import FailureKind

if TYPE_CHECKING:
    from .contracts import WorkflowSession


class FixflowError(Exception):
    """Base class for all fixflow errors."""


class ConfigurationError(FixflowError):
    """Invalid configuration or input file."""


class ExecutionError(FixflowError):
    """A single analysis tool invocation did not succeed.

    The executor raises these internally and converts them into a failed
    ``ExecutionResult``; they never escape ``AnalysisExecutor.run``.
    """

    kind: FailureKind = FailureKind.PROCESS_FAILURE

    def __init__(self, message: str, raw_output: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.raw_output = raw_output


class ToolNotInstalled(ExecutionError):
    kind = FailureKind.NOT_INSTALLED


class ExecutionTimeout(ExecutionError):
    kind = FailureKind.TIMEOUT


class ExecutionCancelled(ExecutionError):
    kind = FailureKind.CANCELLED


class ProcessFailure(ExecutionError):
    kind = FailureKind.PROCESS_FAILURE

    def __init__(
        self, message: str, raw_output: str = "", exit_code: Optional[int] = None
    ) -> None:
        super().__init__(message, raw_output)
        self.exit_code = exit_code


class OutputParseError(ExecutionError):
    kind = FailureKind.PARSE_ERROR


class SessionNotFound(FixflowError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class StepNotFound(FixflowError):
    def __init__(self, session_id: str, step_index: int) -> None:
        super().__init__(f"Step {step_index} not found in session {session_id}")
        self.session_id = session_id
        self.step_index = step_index


class StepFailure(FixflowError):
    """A failure recorded against a specific workflow step."""

    def __init__(
        self,
        session_id: str,
        step_index: int,
        step_name: str,
        message: str,
        kind: Optional[FailureKind] = None,
    ) -> None:
        super().__init__(f"Step {step_name} failed: {message}")
        self.session_id = session_id
        self.step_index = step_index
        self.step_name = step_name
        self.message = message
        self.kind = kind


class WorkflowFailure(FixflowError):
    """Raised to the caller of ``execute_workflow`` once a failure is persisted."""

    def __init__(
        self, session: "WorkflowSession", step_failure: Optional[StepFailure] = None
    ) -> None:
        if step_failure is not None:
            message = f"Workflow {session.id} failed: {step_failure}"
        else:
            message = f"Workflow {session.id} failed"
        super().__init__(message)
        self.session = session
        self.step_failure = step_failure


class WorkflowCancelled(WorkflowFailure):
    def __init__(
        self, session: "WorkflowSession", step_failure: Optional[StepFailure] = None
    ) -> None:
        super().__init__(session, step_failure)
        self.args = (f"Workflow {session.id} was cancelled",)
