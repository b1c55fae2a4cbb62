from __future__ import annotations

import asyncio
import stat
import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from fixflow.config import ExecutorConfig, FixflowConfig
from fixflow.context import WorkflowContext
from fixflow.contracts import ExecutionRequest, ExecutionResult, FailureKind, Subject
from fixflow.events import EventChannel
from fixflow.persistence import InMemorySessionStore

FAKE_TOOL = Path(__file__).parent / "fixtures" / "fake_tool.py"


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    """Executable wrapper that runs ``fixtures/fake_tool.py`` with this interpreter."""
    wrapper = tmp_path / "fake-tool"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_TOOL}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def executor_config(fake_tool: Path) -> ExecutorConfig:
    return ExecutorConfig(binary=str(fake_tool), kill_grace_period=0.5)


@pytest.fixture
def subject() -> Subject:
    return Subject(
        id="VULN-42",
        title="SQL injection in user lookup",
        description="User id is concatenated into a SQL query.",
        severity="high",
        type="SQL Injection",
        location="app/users.py",
        affected_lines=(10, 14),
        cwe_id="CWE-89",
    )


class ScriptedRunner:
    """Runner that replays queued results and records every request."""

    def __init__(self, results: Optional[List[ExecutionResult]] = None) -> None:
        self.results = list(results or [])
        self.requests: List[ExecutionRequest] = []
        self.hook: Optional[Callable[[ExecutionRequest], None]] = None

    async def run(
        self, request: ExecutionRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        self.requests.append(request)
        if self.hook is not None:
            self.hook(request)
        if self.results:
            return self.results.pop(0)
        return ExecutionResult.succeeded({"success": True}, '{"success": true}')


class BlockingRunner:
    """Runner that waits until cancelled through ``cancel_event``."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def run(
        self, request: ExecutionRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        self.started.set()
        assert cancel_event is not None
        await cancel_event.wait()
        return ExecutionResult.failed(FailureKind.CANCELLED, "Cancelled by caller")


def make_context(runner, tmp_path: Path, store=None) -> WorkflowContext:
    return WorkflowContext(
        config=FixflowConfig(workspace_root=str(tmp_path)),
        store=store if store is not None else InMemorySessionStore(),
        executor=runner,
        events=EventChannel(),
    )


@pytest.fixture
def scripted_runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def context_factory(tmp_path: Path) -> Callable[..., WorkflowContext]:
    def factory(runner, store=None) -> WorkflowContext:
        return make_context(runner, tmp_path, store=store)

    return factory


@pytest.fixture
def blocking_runner() -> BlockingRunner:
    return BlockingRunner()
