"""Execution of the external analysis tool as a subprocess."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Set

from .config import ExecutorConfig
from .constants import CANCELLED_ERROR_MESSAGE, OFFLOAD_PROMPT_TEMPLATE
from .contracts import ExecutionRequest, ExecutionResult, FailureKind, OutputMode
from .errors import (
    ExecutionCancelled,
    ExecutionError,
    ExecutionTimeout,
    ProcessFailure,
    ToolNotInstalled,
)
from .parsing import parse_structured_output

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("fixflow.executor.output")

OutputSink = Callable[[str], None]

_READ_CHUNK_SIZE = 4096


def _log_output(text: str) -> None:
    output_logger.info(text.rstrip("\n"))


class ToolRunner(Protocol):
    """Anything that can turn an ``ExecutionRequest`` into a result."""

    async def run(
        self, request: ExecutionRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        ...


class AnalysisExecutor:
    """Runs the external analysis CLI in non-interactive mode.

    Tool-level failures (missing binary, timeout, nonzero exit, unparseable
    structured output, cancellation) are reported through a failed
    ``ExecutionResult``; ``run`` does not raise for them.
    """

    def __init__(
        self,
        config: Optional[ExecutorConfig] = None,
        workspace_root: str | Path | None = None,
        log_sink: Optional[OutputSink] = None,
    ) -> None:
        self.config = config or ExecutorConfig()
        self.workspace_root = Path(workspace_root or os.getcwd())
        self._sink = log_sink or _log_output
        self._installed = False
        self._processes: Set[asyncio.subprocess.Process] = set()
        limit = self.config.max_concurrent_processes
        self._slots = asyncio.Semaphore(limit) if limit else None

    @property
    def binary(self) -> str:
        return self.config.binary

    @property
    def scratch_dir(self) -> Path:
        path = Path(self.config.scratch_dir).expanduser()
        return path if path.is_absolute() else self.workspace_root / path

    @property
    def running_processes(self) -> int:
        """Number of tool processes that have been spawned and not yet reaped."""
        return sum(1 for process in self._processes if process.returncode is None)

    # ------------------------------------------------------------------
    # Availability
    async def get_version(self) -> Optional[str]:
        """Return the tool's ``--version`` output, or ``None`` if it cannot run."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Version check for {self.binary} failed: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.config.version_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Version check for {self.binary} timed out")
            _signal(process, kill=True)
            await process.wait()
            return None

        if process.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip()

    async def is_installed(self) -> bool:
        """Check whether the tool is invocable. A positive answer is cached."""
        if not self._installed:
            self._installed = await self.get_version() is not None
        return self._installed

    # ------------------------------------------------------------------
    # Command construction
    def build_args(self, request: ExecutionRequest) -> List[str]:
        """Build the flag list for ``request``. The prompt is appended later."""
        args: List[str] = ["-p", "--output-format", request.output_mode.value]

        if request.allowed_tools:
            args.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.append_system_prompt:
            args.extend(["--append-system-prompt", request.append_system_prompt])
        if request.resume and request.external_session_id:
            args.extend(["--resume", request.external_session_id])
        if request.max_turns:
            args.extend(["--max-turns", str(request.max_turns)])

        return args

    # ------------------------------------------------------------------
    # Execution
    async def run(
        self, request: ExecutionRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> ExecutionResult:
        """Execute ``request`` and return its result.

        Args:
            request: Prompt, output mode and budgets for this invocation.
            cancel_event: When set while the tool is running, the process is
                killed and a ``cancelled`` failure is returned.
        """
        started = time.monotonic()

        if not await self.is_installed():
            return ExecutionResult.failed(
                FailureKind.NOT_INSTALLED,
                f"{self.binary} CLI is not installed or not on PATH",
            )

        args = self.build_args(request)
        working_dir = request.working_dir or str(self.workspace_root)
        timeout = request.timeout or self.config.default_timeout

        logger.info(
            f"Executing {self.binary} in {working_dir} "
            f"(prompt length: {len(request.prompt)} chars, timeout: {timeout:g}s)"
        )
        logger.debug(f"Command: {self.binary} {' '.join(args)}")

        try:
            stdout = await self._execute_with_prompt(
                args, request.prompt, working_dir, timeout, cancel_event
            )
            if request.output_mode == OutputMode.JSON:
                output, session_id, cost = parse_structured_output(stdout)
            else:
                output, session_id, cost = stdout, None, None
        except ExecutionError as e:
            logger.error(f"Execution failed ({e.kind.value}): {e.message}")
            return ExecutionResult.failed(
                e.kind,
                e.message,
                raw_output=e.raw_output,
                exit_code=getattr(e, "exit_code", None),
                duration=time.monotonic() - started,
            )

        return ExecutionResult.succeeded(
            output,
            stdout,
            external_session_id=session_id,
            cost=cost,
            exit_code=0,
            duration=time.monotonic() - started,
        )

    async def resume_session(
        self, external_session_id: str, prompt: str, **overrides
    ) -> ExecutionResult:
        """Continue an existing external analysis session with a new prompt.

        ``overrides`` supplies any other request field. The prompt and the
        session being resumed always come from the explicit arguments.
        """
        fields = {
            **overrides,
            "prompt": prompt,
            "external_session_id": external_session_id,
            "resume": True,
        }
        request = ExecutionRequest(**fields)
        return await self.run(request)

    async def _execute_with_prompt(
        self,
        args: List[str],
        prompt: str,
        working_dir: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        if len(prompt) > self.config.offload_threshold:
            return await self._execute_with_prompt_file(
                args, prompt, working_dir, timeout, cancel_event
            )
        return await self._execute_directly(
            [*args, prompt], working_dir, timeout, cancel_event
        )

    async def _execute_with_prompt_file(
        self,
        args: List[str],
        prompt: str,
        working_dir: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        prompt_file = await asyncio.to_thread(self._write_prompt_file, prompt)
        logger.info(f"Large prompt written to: {prompt_file}")
        try:
            wrapper = OFFLOAD_PROMPT_TEMPLATE.format(path=prompt_file)
            return await self._execute_directly(
                [*args, wrapper], working_dir, timeout, cancel_event
            )
        finally:
            await asyncio.to_thread(self._remove_prompt_file, prompt_file)

    def _write_prompt_file(self, prompt: str) -> Path:
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        name = f"prompt-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.md"
        path = self.scratch_dir / name
        path.write_text(prompt, encoding="utf-8")
        return path

    def _remove_prompt_file(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove prompt file {path}: {e}")

    async def _execute_directly(
        self,
        argv: List[str],
        working_dir: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        if self._slots is None:
            return await self._spawn(argv, working_dir, timeout, cancel_event)
        async with self._slots:
            return await self._spawn(argv, working_dir, timeout, cancel_event)

    async def _spawn(
        self,
        argv: List[str],
        working_dir: str,
        timeout: float,
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        if not Path(working_dir).is_dir():
            raise ProcessFailure(f"Working directory does not exist: {working_dir}")

        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *argv,
                cwd=working_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
                start_new_session=True,
            )
        except FileNotFoundError as e:
            self._installed = False
            raise ToolNotInstalled(f"{self.binary} could not be started: {e}") from e
        except OSError as e:
            raise ProcessFailure(f"Failed to start {self.binary}: {e}") from e

        self._processes.add(process)
        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        pump = asyncio.ensure_future(
            asyncio.gather(
                self._pump(process.stdout, stdout_chunks, ""),
                self._pump(process.stderr, stderr_chunks, "[stderr] "),
                process.wait(),
            )
        )
        waiters = {pump}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if pump not in done:
                await self._terminate(process, pump)
                stdout = "".join(stdout_chunks)
                if cancel_waiter is not None and cancel_waiter in done:
                    raise ExecutionCancelled(CANCELLED_ERROR_MESSAGE, raw_output=stdout)
                raise ExecutionTimeout(
                    f"Execution timed out after {timeout:g} seconds", raw_output=stdout
                )
            pump.result()
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if process.returncode is None:
                await self._terminate(process, pump)
            self._processes.discard(process)

        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        code = process.returncode
        logger.info(f"Process exited with code: {code}")

        if code != 0:
            raise ProcessFailure(
                stderr.strip() or f"Process exited with code {code}",
                raw_output=stdout,
                exit_code=code,
            )
        return stdout

    async def _pump(
        self, stream: asyncio.StreamReader, chunks: List[str], prefix: str
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                chunks.append(text)
                self._emit(prefix + text)
        tail = decoder.decode(b"", final=True)
        if tail:
            chunks.append(tail)
            self._emit(prefix + tail)

    def _emit(self, text: str) -> None:
        try:
            self._sink(text)
        except Exception:
            logger.exception("Output sink failed")

    async def _terminate(
        self, process: asyncio.subprocess.Process, pump: asyncio.Future
    ) -> None:
        """Stop the process group of ``process`` and reap the leader.

        The tool runs in its own session, so anything it forked shares its
        process group. The group gets SIGTERM, then SIGKILL after the grace
        period, and a final SIGKILL clears children that outlived the leader.
        """
        if process.returncode is None:
            _signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.kill_grace_period)
            except asyncio.TimeoutError:
                logger.warning(f"Process {process.pid} ignored SIGTERM; killing")
                _signal_group(process, signal.SIGKILL)
                await process.wait()
        _signal_group(process, signal.SIGKILL)
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)


def _signal(process: asyncio.subprocess.Process, kill: bool) -> None:
    try:
        if kill:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    # The leader pid doubles as the group id while any member is alive.
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
