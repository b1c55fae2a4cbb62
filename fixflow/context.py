"""Explicit wiring of the collaborators a session manager needs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import FixflowConfig, load_config
from .events import EventChannel
from .executor import AnalysisExecutor, OutputSink, ToolRunner
from .persistence import SessionStore, get_store
from .prompts import SECURITY_SYSTEM_PROMPT, DefaultPromptBuilder, PromptBuilder


@dataclass
class WorkflowContext:
    """Everything a ``SessionManager`` talks to, passed in rather than looked up."""

    config: FixflowConfig
    store: SessionStore
    executor: ToolRunner
    events: EventChannel = field(default_factory=EventChannel)
    prompts: PromptBuilder = field(default_factory=DefaultPromptBuilder)

    @property
    def workspace_root(self) -> Path:
        return self.config.resolve_workspace()

    @property
    def system_prompt(self) -> str:
        return self.config.system_prompt or SECURITY_SYSTEM_PROMPT


def build_context(
    config: Optional[FixflowConfig] = None,
    store: Optional[SessionStore] = None,
    executor: Optional[ToolRunner] = None,
    log_sink: Optional[OutputSink] = None,
) -> WorkflowContext:
    """Assemble a context from configuration, filling in default collaborators."""

    config = config or load_config()
    if store is None:
        store = get_store(config=config)
    if executor is None:
        executor = AnalysisExecutor(
            config.executor, workspace_root=config.resolve_workspace(), log_sink=log_sink
        )
    return WorkflowContext(config=config, store=store, executor=executor)
