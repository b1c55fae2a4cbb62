"""Executor tests against a fake analysis tool."""

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from fixflow.config import ExecutorConfig
from fixflow.contracts import ExecutionRequest, FailureKind, OutputMode
from fixflow.executor import AnalysisExecutor


async def _wait_for_process(executor: AnalysisExecutor, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while executor.running_processes == 0:
        if time.monotonic() > deadline:
            raise AssertionError("tool process never started")
        await asyncio.sleep(0.02)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat_file = Path(f"/proc/{pid}/stat")
    try:
        state = stat_file.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    # Killed children wait as zombies until something reaps them.
    return state != "Z"


@pytest.mark.asyncio
async def test_version_check_and_installed(executor_config, workspace):
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    assert await executor.get_version() == "1.0.0 (fake)"
    assert await executor.is_installed() is True


@pytest.mark.asyncio
async def test_missing_binary_reports_not_installed(tmp_path, workspace):
    config = ExecutorConfig(binary=str(tmp_path / "no-such-tool"))
    executor = AnalysisExecutor(config, workspace_root=workspace)

    assert await executor.is_installed() is False
    result = await executor.run(ExecutionRequest(prompt="hello"))

    assert result.success is False
    assert result.failure == FailureKind.NOT_INSTALLED
    assert "not installed" in result.error


@pytest.mark.asyncio
async def test_text_mode_returns_stdout_and_streams_it(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "text")
    chunks = []
    executor = AnalysisExecutor(executor_config, workspace_root=workspace, log_sink=chunks.append)

    result = await executor.run(ExecutionRequest(prompt="explain the bug"))

    assert result.success is True
    assert result.output == "plain text output\n"
    assert result.raw_output == "plain text output\n"
    assert result.exit_code == 0
    assert "".join(chunks) == "plain text output\n"


@pytest.mark.asyncio
async def test_json_mode_parses_result_envelope(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "json")
    monkeypatch.setenv("FAKE_TOOL_SESSION", "S1")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(
        ExecutionRequest(prompt="fix it", output_mode=OutputMode.JSON)
    )

    assert result.success is True
    assert result.output == {"success": True, "prompt_length": len("fix it")}
    assert result.external_session_id == "S1"
    assert result.cost == 0.25


@pytest.mark.asyncio
async def test_json_mode_ignores_narrative_braces(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "narrative")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="fix", output_mode=OutputMode.JSON))

    assert result.success is True
    assert result.output == {"success": True, "fix": {"file_path": "app.py"}}


@pytest.mark.asyncio
async def test_unparseable_json_output_is_parse_error(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "not-json")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="fix", output_mode=OutputMode.JSON))

    assert result.success is False
    assert result.failure == FailureKind.PARSE_ERROR
    assert "nothing structured here" in result.raw_output


@pytest.mark.asyncio
async def test_error_envelope_is_process_failure(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "error-envelope")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="fix", output_mode=OutputMode.JSON))

    assert result.success is False
    assert result.failure == FailureKind.PROCESS_FAILURE
    assert "max turns reached" in result.error


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "fail")
    chunks = []
    executor = AnalysisExecutor(executor_config, workspace_root=workspace, log_sink=chunks.append)

    result = await executor.run(ExecutionRequest(prompt="fix"))

    assert result.success is False
    assert result.failure == FailureKind.PROCESS_FAILURE
    assert result.error == "boom: analysis failed"
    assert result.exit_code == 3
    assert any(chunk.startswith("[stderr] ") for chunk in chunks)


@pytest.mark.asyncio
async def test_nonzero_exit_without_stderr_reports_code(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "fail-silent")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="fix"))

    assert result.success is False
    assert result.error == "Process exited with code 4"
    assert result.exit_code == 4


@pytest.mark.asyncio
async def test_timeout_kills_process(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
    monkeypatch.setenv("FAKE_TOOL_SLEEP", "5")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    started = time.monotonic()
    result = await executor.run(ExecutionRequest(prompt="fix", timeout=0.1))

    assert result.success is False
    assert result.failure == FailureKind.TIMEOUT
    assert "timed out" in result.error
    assert time.monotonic() - started < 5
    assert executor.running_processes == 0


@pytest.mark.asyncio
async def test_large_prompt_is_offloaded_to_scratch_file(
    executor_config, workspace, tmp_path, monkeypatch
):
    record = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_TOOL_MODE", "text")
    monkeypatch.setenv("FAKE_TOOL_RECORD", str(record))
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)
    prompt = "x" * 7000

    result = await executor.run(ExecutionRequest(prompt=prompt))

    assert result.success is True
    calls = [json.loads(line) for line in record.read_text().splitlines()]
    assert len(calls) == 1
    call = calls[0]
    assert call["argv"][-1].startswith("Please read and follow the instructions in @")
    assert call["prompt_file_exists"] is True
    assert call["prompt_file_length"] == 7000
    assert call["prompt_file"].startswith(str(executor.scratch_dir))
    assert list(executor.scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_scratch_file_removed_after_failure(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "fail")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="y" * 6001))

    assert result.success is False
    assert list(executor.scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_short_prompt_is_passed_inline(executor_config, workspace, tmp_path, monkeypatch):
    record = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_TOOL_MODE", "text")
    monkeypatch.setenv("FAKE_TOOL_RECORD", str(record))
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    await executor.run(ExecutionRequest(prompt="short prompt", allowed_tools=["Read"]))

    call = json.loads(record.read_text().splitlines()[0])
    assert call["argv"] == [
        "-p",
        "--output-format",
        "text",
        "--allowedTools",
        "Read",
        "short prompt",
    ]
    assert Path(call["cwd"]).resolve() == workspace.resolve()
    assert not executor.scratch_dir.exists()


@pytest.mark.asyncio
async def test_cancel_event_kills_running_process(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
    monkeypatch.setenv("FAKE_TOOL_SLEEP", "30")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)
    cancel_event = asyncio.Event()

    task = asyncio.ensure_future(
        executor.run(ExecutionRequest(prompt="fix", timeout=60), cancel_event=cancel_event)
    )
    await _wait_for_process(executor)
    cancel_event.set()
    result = await task

    assert result.success is False
    assert result.failure == FailureKind.CANCELLED
    assert result.error == "Cancelled by caller"
    assert executor.running_processes == 0


@pytest.mark.asyncio
async def test_task_cancellation_kills_child(executor_config, workspace, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
    monkeypatch.setenv("FAKE_TOOL_SLEEP", "30")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    task = asyncio.ensure_future(executor.run(ExecutionRequest(prompt="fix", timeout=60)))
    await _wait_for_process(executor)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert executor.running_processes == 0


@pytest.mark.asyncio
async def test_concurrency_limit_serialises_processes(workspace, fake_tool, monkeypatch):
    monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
    monkeypatch.setenv("FAKE_TOOL_SLEEP", "0.3")
    config = ExecutorConfig(binary=str(fake_tool), max_concurrent_processes=1)
    executor = AnalysisExecutor(config, workspace_root=workspace)
    peak = 0

    async def sample() -> None:
        nonlocal peak
        while True:
            peak = max(peak, executor.running_processes)
            await asyncio.sleep(0.01)

    sampler = asyncio.ensure_future(sample())
    try:
        results = await asyncio.gather(
            executor.run(ExecutionRequest(prompt="one", timeout=30)),
            executor.run(ExecutionRequest(prompt="two", timeout=30)),
        )
    finally:
        sampler.cancel()
        await asyncio.gather(sampler, return_exceptions=True)

    assert all(r.success for r in results)
    assert peak == 1


@pytest.mark.asyncio
async def test_missing_working_directory_is_process_failure(
    executor_config, workspace, monkeypatch
):
    monkeypatch.setenv("FAKE_TOOL_MODE", "text")
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(
        ExecutionRequest(prompt="fix", working_dir=str(workspace / "missing"))
    )

    assert result.success is False
    assert result.failure == FailureKind.PROCESS_FAILURE
    assert "Working directory does not exist" in result.error


@pytest.mark.asyncio
async def test_cancel_kills_processes_forked_by_the_tool(
    executor_config, workspace, tmp_path, monkeypatch
):
    pid_file = tmp_path / "child.pid"
    monkeypatch.setenv("FAKE_TOOL_MODE", "fork")
    monkeypatch.setenv("FAKE_TOOL_CHILD_PID", str(pid_file))
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)
    cancel_event = asyncio.Event()

    task = asyncio.ensure_future(
        executor.run(ExecutionRequest(prompt="fix", timeout=60), cancel_event=cancel_event)
    )
    deadline = time.monotonic() + 10
    while not (pid_file.exists() and pid_file.read_text().strip()):
        assert time.monotonic() < deadline, "forked child never started"
        await asyncio.sleep(0.02)
    child_pid = int(pid_file.read_text())
    assert _pid_alive(child_pid)

    cancel_event.set()
    result = await task

    assert result.failure == FailureKind.CANCELLED
    deadline = time.monotonic() + 5
    while _pid_alive(child_pid):
        assert time.monotonic() < deadline, f"forked child {child_pid} is still running"
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_timeout_kills_processes_forked_by_the_tool(
    executor_config, workspace, tmp_path, monkeypatch
):
    pid_file = tmp_path / "child.pid"
    monkeypatch.setenv("FAKE_TOOL_MODE", "fork")
    monkeypatch.setenv("FAKE_TOOL_CHILD_PID", str(pid_file))
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.run(ExecutionRequest(prompt="fix", timeout=3))

    assert result.failure == FailureKind.TIMEOUT
    if not pid_file.exists() or not pid_file.read_text().strip():
        pytest.skip("tool did not fork before the timeout")
    child_pid = int(pid_file.read_text())
    deadline = time.monotonic() + 5
    while _pid_alive(child_pid):
        assert time.monotonic() < deadline, f"forked child {child_pid} is still running"
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_resume_session_passes_resume_flag(
    executor_config, workspace, tmp_path, monkeypatch
):
    record = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_TOOL_MODE", "json")
    monkeypatch.setenv("FAKE_TOOL_SESSION", "S-prev")
    monkeypatch.setenv("FAKE_TOOL_RECORD", str(record))
    executor = AnalysisExecutor(executor_config, workspace_root=workspace)

    result = await executor.resume_session(
        "S-prev",
        "now write the tests",
        output_mode=OutputMode.JSON,
        resume=False,
        external_session_id="ignored",
    )

    assert result.success is True
    assert result.external_session_id == "S-prev"
    argv = json.loads(record.read_text().splitlines()[0])["argv"]
    assert argv[argv.index("--resume") + 1] == "S-prev"
    assert "ignored" not in argv
    assert argv[-1] == "now write the tests"
