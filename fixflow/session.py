"""Workflow session lifecycle and orchestration."""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .context import WorkflowContext
from .contracts import (
    EventType,
    ExecutionRequest,
    FailureKind,
    SessionStatus,
    StateChangeEvent,
    StepName,
    StepStatus,
    Subject,
    WorkflowSession,
    WorkflowStep,
    utcnow,
)
from .errors import (
    SessionNotFound,
    StepFailure,
    StepNotFound,
    WorkflowCancelled,
    WorkflowFailure,
)
from .events import EventChannel, StateChangeListener
from .prompts import STEP_DEPENDENCIES

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns workflow sessions and drives them through their steps.

    The manager is the only writer of session state. Every transition is
    persisted through the store before the matching event is published, and
    callers only ever see copies of the live sessions.
    """

    def __init__(self, context: WorkflowContext) -> None:
        self._context = context
        self._sessions: Dict[str, WorkflowSession] = {}
        self._cancel_tokens: Dict[str, asyncio.Event] = {}

    @property
    def events(self) -> EventChannel:
        return self._context.events

    def on_state_change(self, listener: StateChangeListener) -> Callable[[], None]:
        """Subscribe ``listener`` to state change events."""
        return self._context.events.subscribe(listener)

    async def load(self) -> int:
        """Load every stored session into the in-memory index."""
        sessions = await self._context.store.load_all()
        for session in sessions:
            self._sessions[session.id] = session
        logger.info(f"Loaded {len(sessions)} workflow sessions")
        return len(sessions)

    # ------------------------------------------------------------------
    # Internal helpers
    def _require(self, session_id: str) -> WorkflowSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _require_step(self, session: WorkflowSession, index: int) -> WorkflowStep:
        step = session.step(index)
        if step is None:
            raise StepNotFound(session.id, index)
        return step

    def _snapshot(self, session_id: str) -> WorkflowSession:
        return self._require(session_id).model_copy(deep=True)

    def _emit(
        self,
        session: WorkflowSession,
        event_type: EventType,
        step: Optional[WorkflowStep] = None,
    ) -> None:
        self._context.events.publish(
            StateChangeEvent(
                session=session.model_copy(deep=True),
                step=step.model_copy(deep=True) if step is not None else None,
                type=event_type,
            )
        )

    async def _commit(
        self,
        session: WorkflowSession,
        event_type: Optional[EventType] = None,
        step: Optional[WorkflowStep] = None,
    ) -> None:
        session.touch()
        await self._context.store.save(session)
        if event_type is not None:
            self._emit(session, event_type, step)

    async def _adopt_stored_cancel(self, session: WorkflowSession) -> bool:
        """Pick up a cancellation another manager wrote to the shared store."""
        if session.status == SessionStatus.CANCELLED:
            return False
        stored = await self._context.store.get(session.id)
        if stored is None or stored.status != SessionStatus.CANCELLED:
            return False
        session.status = SessionStatus.CANCELLED
        token = self._cancel_tokens.get(session.id)
        if token is not None:
            token.set()
        logger.info(f"Session {session.id} was cancelled through the store")
        return True

    def _refresh_completion(self, session: WorkflowSession) -> bool:
        """Mark ``session`` completed when every step is done. Returns True if so."""
        if session.status == SessionStatus.CANCELLED or not session.all_steps_done():
            return False
        session.status = SessionStatus.COMPLETED
        return True

    # ------------------------------------------------------------------
    # Lifecycle operations
    async def create_session(
        self, subject: Subject, step_names: Iterable[StepName | str]
    ) -> WorkflowSession:
        steps = [WorkflowStep(name=StepName(name)) for name in step_names]
        session = WorkflowSession(
            subject_id=subject.id, subject_title=subject.title, steps=steps
        )
        self._sessions[session.id] = session
        await self._commit(session)
        logger.info(
            f"Created session {session.id} for subject {subject.id} "
            f"with steps: {', '.join(s.name.value for s in steps) or '(none)'}"
        )
        return session.model_copy(deep=True)

    async def start_session(self, session_id: str) -> WorkflowSession:
        session = self._require(session_id)
        session.status = SessionStatus.IN_PROGRESS
        await self._commit(session, EventType.STARTED)
        logger.info(f"Started session {session_id}")
        return session.model_copy(deep=True)

    async def start_step(self, session_id: str, step_index: int) -> WorkflowSession:
        session = self._require(session_id)
        step = self._require_step(session, step_index)
        step.status = StepStatus.IN_PROGRESS
        step.started_at = utcnow()
        session.current_step_index = step_index
        await self._commit(session, EventType.STEP_STARTED, step)
        logger.info(f"Session {session_id}: step {step.name.value} started")
        return session.model_copy(deep=True)

    async def complete_step(
        self,
        session_id: str,
        step_index: int,
        result: Any,
        external_session_id: Optional[str] = None,
    ) -> WorkflowSession:
        session = self._require(session_id)
        step = self._require_step(session, step_index)
        await self._adopt_stored_cancel(session)
        step.status = StepStatus.COMPLETED
        step.result = result
        step.error = None
        step.completed_at = utcnow()
        if external_session_id:
            step.external_session_id = external_session_id
            session.external_session_id = external_session_id

        finished = self._refresh_completion(session)
        await self._commit(
            session, EventType.COMPLETED if finished else EventType.STEP_COMPLETED, step
        )
        logger.info(f"Session {session_id}: step {step.name.value} completed")
        if finished:
            logger.info(f"Session {session_id} completed")
        return session.model_copy(deep=True)

    async def fail_step(
        self, session_id: str, step_index: int, error: str
    ) -> WorkflowSession:
        session = self._require(session_id)
        step = self._require_step(session, step_index)
        await self._adopt_stored_cancel(session)
        step.status = StepStatus.FAILED
        step.result = None
        step.error = error
        step.completed_at = utcnow()
        if session.status != SessionStatus.CANCELLED:
            session.status = SessionStatus.FAILED

        await self._commit(session, EventType.STEP_FAILED, step)
        logger.error(f"Session {session_id}: step {step.name.value} failed: {error}")
        if session.status == SessionStatus.FAILED:
            self._emit(session, EventType.FAILED)
        return session.model_copy(deep=True)

    async def skip_step(self, session_id: str, step_index: int) -> WorkflowSession:
        session = self._require(session_id)
        step = self._require_step(session, step_index)
        await self._adopt_stored_cancel(session)
        step.status = StepStatus.SKIPPED
        finished = self._refresh_completion(session)
        await self._commit(session, EventType.COMPLETED if finished else None, step)
        logger.info(f"Session {session_id}: step {step.name.value} skipped")
        return session.model_copy(deep=True)

    async def cancel_session(self, session_id: str) -> WorkflowSession:
        """Cancel a session and stop its in-flight tool process, if any.

        Sessions that already completed or failed keep their final status.
        """
        session = self._require(session_id)
        if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            logger.warning(
                f"Session {session_id} is already {session.status.value}; not cancelling"
            )
            return session.model_copy(deep=True)

        session.status = SessionStatus.CANCELLED
        await self._commit(session, EventType.CANCELLED)
        token = self._cancel_tokens.get(session_id)
        if token is not None:
            token.set()
        logger.info(f"Cancelled session {session_id}")
        return session.model_copy(deep=True)

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._cancel_tokens.pop(session_id, None)
        await self._context.store.delete(session_id)
        logger.info(f"Deleted session {session_id}")

    # ------------------------------------------------------------------
    # Queries
    def get_session(self, session_id: str) -> Optional[WorkflowSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def list_sessions(self) -> List[WorkflowSession]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    def get_sessions_for_subject(self, subject_id: str) -> List[WorkflowSession]:
        """Sessions for ``subject_id``, newest first."""
        matches = [s for s in self._sessions.values() if s.subject_id == subject_id]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy(deep=True) for s in matches]

    def get_active_sessions(self) -> List[WorkflowSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.status == SessionStatus.IN_PROGRESS
        ]

    def get_step_result(self, session_id: str, step_name: StepName | str) -> Any:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        step = session.find_step(step_name)
        return copy.deepcopy(step.result) if step is not None else None

    def get_external_session_id(self, session_id: str) -> Optional[str]:
        session = self._sessions.get(session_id)
        return session.external_session_id if session is not None else None

    # ------------------------------------------------------------------
    # Orchestration
    def _build_request(
        self,
        session: WorkflowSession,
        step_index: int,
        subject: Subject,
        external_session_id: Optional[str],
    ) -> ExecutionRequest:
        step = session.steps[step_index]
        profile = self._context.config.profile_for(step.name)

        prior_result = None
        dependency = STEP_DEPENDENCIES.get(step.name)
        if dependency is not None:
            prior = session.find_step(dependency)
            prior_result = prior.result if prior is not None else None

        prompt = self._context.prompts.build(step.name, subject, prior_result)
        return ExecutionRequest(
            prompt=prompt,
            working_dir=str(self._context.workspace_root),
            output_mode=profile.output_mode,
            allowed_tools=list(profile.allowed_tools),
            append_system_prompt=self._context.system_prompt,
            external_session_id=external_session_id,
            resume=external_session_id is not None,
            timeout=profile.timeout,
            max_turns=profile.max_turns,
        )

    async def execute_workflow(
        self, subject: Subject, step_names: Iterable[StepName | str]
    ) -> WorkflowSession:
        """Run ``step_names`` against ``subject`` in order.

        Each step resumes the external analysis session opened by the steps
        before it. The first failing step stops the run.

        Returns:
            The final session snapshot.

        Raises:
            WorkflowFailure: A step failed; the failure is already persisted.
            WorkflowCancelled: The session was cancelled before or during a step.
        """
        created = await self.create_session(subject, step_names)
        session_id = created.id
        token = asyncio.Event()
        self._cancel_tokens[session_id] = token

        try:
            await self.start_session(session_id)
            external_session_id: Optional[str] = None

            for index in range(len(created.steps)):
                session = self._require(session_id)
                await self._adopt_stored_cancel(session)
                if session.status == SessionStatus.CANCELLED:
                    logger.info(f"Session {session_id} cancelled; stopping before step {index}")
                    raise WorkflowCancelled(self._snapshot(session_id))

                await self.start_step(session_id, index)
                step_name = session.steps[index].name

                try:
                    request = self._build_request(session, index, subject, external_session_id)
                    result = await self._context.executor.run(request, cancel_event=token)
                except Exception as e:
                    failure = StepFailure(session_id, index, step_name.value, str(e))
                    await self.fail_step(session_id, index, failure.message)
                    raise WorkflowFailure(self._snapshot(session_id), failure) from e

                if not result.success:
                    failure = StepFailure(
                        session_id,
                        index,
                        step_name.value,
                        result.error or "Unknown error",
                        result.failure,
                    )
                    await self.fail_step(session_id, index, failure.message)
                    if result.failure == FailureKind.CANCELLED:
                        raise WorkflowCancelled(self._snapshot(session_id), failure) from failure
                    raise WorkflowFailure(self._snapshot(session_id), failure) from failure

                if result.external_session_id:
                    external_session_id = result.external_session_id
                await self.complete_step(session_id, index, result.output, external_session_id)

            session = self._require(session_id)
            if session.status == SessionStatus.CANCELLED:
                raise WorkflowCancelled(self._snapshot(session_id))
            if not session.steps and self._refresh_completion(session):
                await self._commit(session, EventType.COMPLETED)
                logger.info(f"Session {session_id} completed (no steps)")
        finally:
            self._cancel_tokens.pop(session_id, None)

        return self._snapshot(session_id)
