"""Copilot CLI runner: one child process per run, streamed and normalized."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from nodepilot.agent.spec import RunRequest, RunResult
from nodepilot.discovery.cli_check import CliChecker
from nodepilot.observability.metrics import MetricsRegistry, get_metrics_registry
from nodepilot.observability.tracing import current_traceparent, trace_span
from nodepilot.runners.command import CommandOptions, build_command
from nodepilot.runners.process import (
    AsyncioProcessSpawner,
    ExitStatus,
    HostEnvironment,
    ProcessHandle,
    ProcessSpawner,
    SystemEnvironment,
)
from nodepilot.runners.session import extract_session_id
from nodepilot.runners.stats import StatsParser
from nodepilot.settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

# Largest delay a 32-bit millisecond timer can represent.
MAX_TIMEOUT_MS = 2_147_483_647

# Seconds to wait for output pipes to drain after the process has exited.
DRAIN_TIMEOUT_SEC = 5.0

OutputCallback = Callable[[str], None]
ProcessCallback = Callable[[ProcessHandle], None]

INSTRUCTIONS_GUIDELINES = (
    "- Focus only on the task described above\n"
    "- Make minimal, targeted changes\n"
    "- Follow existing code patterns and conventions in the repository\n"
    "- Commit your changes when complete\n"
)


class CliAvailability(Protocol):
    def is_available(self) -> bool: ...


@dataclass(slots=True)
class _RunState:
    session_id: Optional[str] = None
    saw_completion: bool = False
    timed_out: bool = False
    stats: StatsParser = field(default_factory=StatsParser)


def instructions_file_path(cwd: Path, job_id: Optional[str] = None) -> Path:
    suffix = f"-{job_id[:8]}" if job_id else ""
    return cwd / ".github" / "instructions" / f"orchestrator-job{suffix}.instructions.md"


def render_instructions(cwd: Path, task: str, instructions: Optional[str] = None) -> str:
    """Render the scoped instructions document handed to the agent."""
    scope = f"{cwd.parent.as_posix()}/{cwd.name}/**"
    parts = [
        "---",
        f"applyTo: '{scope}'",
        "---",
        "",
        "# Current Task",
        "",
        task,
        "",
    ]
    if instructions:
        parts.extend(["## Additional Context", "", instructions, ""])
    parts.extend(["## Guidelines", "", INSTRUCTIONS_GUIDELINES])
    return "\n".join(parts)


class CopilotCLIRunner:
    """Execute the Copilot CLI for a single task and normalize the outcome."""

    name = "copilot-cli"

    def __init__(
        self,
        *,
        settings: AgentSettings | None = None,
        spawner: ProcessSpawner | None = None,
        environment: HostEnvironment | None = None,
        cli: CliAvailability | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.settings = settings or get_agent_settings()
        self.spawner = spawner or AsyncioProcessSpawner()
        self.environment = environment or SystemEnvironment()
        self.cli = cli or CliChecker(spawner=self.spawner, settings=self.settings)
        self._metrics = metrics

    def _registry(self) -> MetricsRegistry:
        return self._metrics or get_metrics_registry()

    async def run(
        self,
        request: RunRequest,
        *,
        on_output: OutputCallback | None = None,
        on_process: ProcessCallback | None = None,
    ) -> RunResult:
        """Run the agent once. Always returns exactly one :class:`RunResult`."""
        attributes = {
            "nodepilot.label": request.label,
            "nodepilot.job_id": request.job_id,
            "nodepilot.model": request.model,
        }
        with trace_span("nodepilot.agent.run", attributes) as span:
            result = await self._run(request, on_output, on_process)
            span.set_attribute("nodepilot.success", result.success)
            if result.exit_code is not None:
                span.set_attribute("nodepilot.exit_code", result.exit_code)
        self._registry().record(result)
        return result

    async def _run(
        self,
        request: RunRequest,
        on_output: OutputCallback | None,
        on_process: ProcessCallback | None,
    ) -> RunResult:
        label = request.label
        if not self.cli.is_available():
            logger.warning("[%s] Agent CLI is not available; leaving the task for manual completion", label)
            return RunResult(success=True)

        if not request.cwd.is_dir():
            logger.error("[%s] Working directory does not exist: %s", label, request.cwd)
            return RunResult(success=False, error=f"Working directory does not exist: {request.cwd}")

        task = request.task
        instructions_file: Optional[Path] = None
        if not request.skip_instructions_file:
            instructions_file = self.write_instructions_file(
                request.cwd, request.task, request.instructions, request.job_id, label=label
            )
            if instructions_file is not None:
                task = f"Complete the task described in the instructions file at {instructions_file}."

        try:
            return await self._execute(request, task, on_output, on_process)
        finally:
            if instructions_file is not None:
                self.cleanup_instructions_file(instructions_file, label=label)

    def write_instructions_file(
        self,
        cwd: Path,
        task: str,
        instructions: Optional[str] = None,
        job_id: Optional[str] = None,
        *,
        label: str = "agent",
    ) -> Optional[Path]:
        """Write the per-job instructions file; ``None`` when it could not be written."""
        path = instructions_file_path(cwd, job_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render_instructions(cwd, task, instructions), encoding="utf-8")
        except OSError as exc:
            logger.warning("[%s] Failed to write instructions file %s: %s", label, path, exc)
            return None
        logger.debug("[%s] Wrote instructions file %s", label, path)
        return path

    def cleanup_instructions_file(self, path: Path, *, label: str = "agent") -> None:
        try:
            path.unlink(missing_ok=True)
            parent = path.parent
            if parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
        except OSError as exc:
            logger.warning("[%s] Failed to clean up instructions file %s: %s", label, path, exc)

    def _child_env(self) -> dict[str, str]:
        env = dict(self.environment.env)
        stripped = [name for name in self.settings.stripped_env_vars if env.pop(name, None) is not None]
        if stripped:
            logger.debug("Removed host runtime variables from child env: %s", ", ".join(stripped))
        traceparent = current_traceparent()
        if traceparent is not None:
            env["TRACEPARENT"] = traceparent
        return env

    def _effective_timeout_ms(self, request: RunRequest) -> int:
        timeout = request.timeout_ms if request.timeout_ms is not None else self.settings.RUN_TIMEOUT_MS
        if timeout <= 0:
            return 0
        return min(timeout, MAX_TIMEOUT_MS)

    async def _execute(
        self,
        request: RunRequest,
        task: str,
        on_output: OutputCallback | None,
        on_process: ProcessCallback | None,
    ) -> RunResult:
        label = request.label
        options = CommandOptions(
            task=task,
            cwd=str(request.cwd),
            model=request.model,
            log_dir=str(request.log_dir) if request.log_dir else None,
            share_path=str(request.share_path) if request.share_path else None,
            session_id=request.session_id,
            config_dir=str(request.config_dir) if request.config_dir else None,
            max_turns=request.max_turns,
            allowed_folders=request.allowed_folders,
            allowed_urls=request.allowed_urls,
        )
        command = build_command(
            options,
            binary=self.settings.AGENT_BINARY,
            platform=self.environment.platform,
            fallback_cwd=self.environment.cwd(),
        )
        logger.info("[%s] Spawning agent CLI in %s", label, request.cwd)

        try:
            handle = await self.spawner.spawn(command, cwd=str(request.cwd), env=self._child_env())
        except OSError as exc:
            logger.error("[%s] Failed to start agent CLI: %s", label, exc)
            return RunResult(success=False, error=str(exc))

        logger.info("[%s] Agent CLI started (PID %s)", label, handle.pid)
        if on_process is not None:
            on_process(handle)

        state = _RunState()
        timeout_ms = self._effective_timeout_ms(request)
        readers = [
            asyncio.create_task(self._pump(handle.stdout, state, on_output, label, is_stdout=True)),
            asyncio.create_task(self._pump(handle.stderr, state, on_output, label, is_stdout=False)),
        ]
        watchdog = (
            asyncio.create_task(self._watchdog(handle, timeout_ms, state, label)) if timeout_ms else None
        )

        try:
            status = await self._wait(handle, readers)
        except BaseException:
            handle.kill()
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watchdog
            for reader in readers:
                if not reader.done():
                    reader.cancel()

        return self._finish(status, state, handle, timeout_ms, request)

    async def _wait(self, handle: ProcessHandle, readers: list[asyncio.Task[None]]) -> ExitStatus:
        # Reader failures (e.g. a raising output callback) surface immediately.
        waiter = asyncio.create_task(handle.wait())
        pending: set[asyncio.Task] = {waiter, *readers}
        while not waiter.done():
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not waiter and task.exception() is not None:
                    waiter.cancel()
                    raise task.exception()
        status = waiter.result()

        remaining = [reader for reader in readers if not reader.done()]
        if remaining:
            await asyncio.wait(remaining, timeout=DRAIN_TIMEOUT_SEC)
        for reader in readers:
            if reader.done() and not reader.cancelled() and reader.exception() is not None:
                raise reader.exception()
        return status

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        state: _RunState,
        on_output: OutputCallback | None,
        label: str,
        *,
        is_stdout: bool,
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            self._observe(line, state, label, is_stdout=is_stdout)
            if on_output is not None:
                on_output(line)

    def _observe(self, line: str, state: _RunState, label: str, *, is_stdout: bool) -> None:
        if state.session_id is None:
            session_id = extract_session_id(line)
            if session_id:
                state.session_id = session_id
                logger.info("[%s] Captured session ID %s", label, session_id)
        if is_stdout and self.settings.COMPLETION_MARKER in line:
            state.saw_completion = True
        state.stats.feed(line)

    async def _watchdog(
        self, handle: ProcessHandle, timeout_ms: int, state: _RunState, label: str
    ) -> None:
        await asyncio.sleep(timeout_ms / 1000)
        state.timed_out = True
        logger.error("[%s] Agent CLI timed out after %sms; terminating PID %s", label, timeout_ms, handle.pid)
        await self.terminate(handle)

    async def terminate(self, handle: ProcessHandle) -> None:
        """Forcefully stop a running agent process and its children."""
        if self.environment.platform == "win32":
            try:
                killer = await self.spawner.spawn(f"taskkill /pid {handle.pid} /f /t")
                await killer.wait()
            except OSError as exc:
                logger.warning("taskkill failed for PID %s: %s", handle.pid, exc)
                handle.kill()
            return
        handle.terminate()
        await asyncio.sleep(self.settings.KILL_GRACE_SEC)
        handle.kill()

    def _finish(
        self,
        status: ExitStatus,
        state: _RunState,
        handle: ProcessHandle,
        timeout_ms: int,
        request: RunRequest,
    ) -> RunResult:
        label = request.label
        code = status.code
        if code is None and status.signal is None and state.saw_completion:
            logger.info("[%s] No exit status reported but completion marker seen; treating as success", label)
            code = 0

        error: Optional[str] = None
        if state.timed_out:
            error = f"Agent CLI timed out after {timeout_ms}ms and was killed (PID {handle.pid})"
        elif status.signal is not None:
            error = f"Agent CLI was killed by signal {status.signal} (PID {handle.pid})"
        elif code is None:
            error = f"Agent CLI exited without reporting an exit status (PID {handle.pid})"
        elif code != 0:
            error = f"Agent CLI exited with code {code}"

        metrics = state.stats.get_metrics()
        if metrics is not None:
            metrics.ensure_token_usage()

        session_id = state.session_id or request.session_id
        if error is None:
            logger.info("[%s] Agent CLI completed successfully", label)
        else:
            logger.error("[%s] %s", label, error)
        return RunResult(
            success=error is None,
            session_id=session_id,
            error=error,
            exit_code=code,
            metrics=metrics,
            timed_out=state.timed_out,
        )


__all__ = [
    "CliAvailability",
    "CopilotCLIRunner",
    "MAX_TIMEOUT_MS",
    "instructions_file_path",
    "render_instructions",
]
