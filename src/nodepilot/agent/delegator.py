"""Delegate a job's task to the agent inside its worktree."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from nodepilot.agent.spec import RunRequest, RunResult
from nodepilot.runners.command import quote_arg
from nodepilot.runners.copilot_cli import CopilotCLIRunner
from nodepilot.runners.process import (
    AsyncioProcessSpawner,
    CommandOutput,
    ProcessHandle,
    ProcessSpawner,
    capture_command,
)
from nodepilot.runners.session import (
    resolve_session_id,
    session_id_from_log_dir,
    session_id_from_share_file,
)

logger = logging.getLogger(__name__)

TASK_FILE_NAME = ".copilot-task.md"
WORK_DIR_NAME = ".copilot-orchestrator"


class GitOperations(Protocol):
    async def stage(self, cwd: Path, path: str) -> None: ...

    async def commit(self, cwd: Path, message: str, *, allow_empty: bool = False) -> bool: ...


class GitError(RuntimeError):
    """Raised when a git command exits unsuccessfully."""


class SubprocessGit:
    """Minimal git client backed by the ``git`` executable."""

    def __init__(self, spawner: ProcessSpawner | None = None, *, timeout: float = 60.0) -> None:
        self.spawner = spawner or AsyncioProcessSpawner()
        self.timeout = timeout

    async def _git(self, cwd: Path, *args: str) -> CommandOutput:
        command = " ".join(["git", *(quote_arg(arg) for arg in args)])
        return await capture_command(self.spawner, command, timeout=self.timeout, cwd=str(cwd))

    async def stage(self, cwd: Path, path: str) -> None:
        output = await self._git(cwd, "add", path)
        if not output.ok:
            raise GitError(output.stderr.strip() or f"git add exited with code {output.exit_code}")

    async def commit(self, cwd: Path, message: str, *, allow_empty: bool = False) -> bool:
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        output = await self._git(cwd, *args)
        if not output.ok:
            logger.debug("git commit failed: %s", output.stderr.strip())
        return output.ok


@dataclass(slots=True)
class DelegateRequest:
    job_id: str
    task_description: str
    label: str
    worktree_path: Path
    base_branch: str
    target_branch: str
    instructions: Optional[str] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    allowed_folders: tuple[str, ...] = ()
    allowed_urls: tuple[str, ...] = ()
    timeout_ms: Optional[int] = None


@dataclass(slots=True)
class DelegatorCallbacks:
    on_process_spawned: Optional[Callable[[Optional[int]], None]] = None
    on_process_exited: Optional[Callable[[Optional[int]], None]] = None
    on_session_captured: Optional[Callable[[str], None]] = None
    on_output: Optional[Callable[[str], None]] = None


def render_task_file(request: DelegateRequest) -> str:
    if request.session_id:
        session_block = (
            f"Session ID: {request.session_id}\n\n"
            "This job has an active agent session. Context will be maintained across delegations."
        )
    else:
        session_block = "No active session yet. A session will be created on first agent interaction."
    return (
        "# AI Agent Task\n\n"
        f"## Job ID\n{request.job_id}\n\n"
        f"## Task Description\n{request.task_description}\n\n"
        f"## Instructions\n{request.instructions or 'No additional instructions provided.'}\n\n"
        "## Context\n"
        f"- Working directory: {request.worktree_path}\n"
        f"- Base branch: {request.base_branch}\n"
        f"- Target branch: {request.target_branch}\n\n"
        "## Next Steps\n"
        "1. Read and understand this task description\n"
        "2. Make the necessary code changes in this worktree\n"
        "3. Commit the changes with a descriptive message\n\n"
        f"## Agent Session\n{session_block}\n"
    )


@dataclass(slots=True)
class AgentDelegator:
    """Compose task file, agent run, session reconciliation and marker commit."""

    runner: CopilotCLIRunner
    git: GitOperations = field(default_factory=SubprocessGit)
    callbacks: DelegatorCallbacks = field(default_factory=DelegatorCallbacks)

    def write_task_file(self, request: DelegateRequest) -> Path:
        path = Path(request.worktree_path) / TASK_FILE_NAME
        path.write_text(render_task_file(request), encoding="utf-8")
        return path

    async def delegate(self, request: DelegateRequest) -> RunResult:
        label = request.label
        worktree = Path(request.worktree_path)
        logger.info("[%s] Delegating task: %s", label, request.task_description)

        task_file = self.write_task_file(request)
        logger.info("[%s] Created task file %s", label, task_file)

        result = RunResult(success=True)
        if self.runner.cli.is_available():
            result = await self._run_agent(request)
        else:
            logger.warning("[%s] Agent CLI unavailable; task file left for manual completion", label)

        await self.create_marker_commit(worktree, request.job_id, request.task_description, label)
        return result

    async def _run_agent(self, request: DelegateRequest) -> RunResult:
        label = request.label
        worktree = Path(request.worktree_path)
        work_dir = worktree / WORK_DIR_NAME
        log_dir = work_dir / "logs"
        share_path = work_dir / f"session-{label}.md"
        log_dir.mkdir(parents=True, exist_ok=True)

        pids: list[Optional[int]] = []

        def _on_process(handle: ProcessHandle) -> None:
            pids.append(handle.pid)
            if self.callbacks.on_process_spawned is not None:
                self.callbacks.on_process_spawned(handle.pid)

        run_request = RunRequest(
            cwd=worktree,
            task=request.task_description,
            instructions=request.instructions,
            label=label,
            job_id=request.job_id,
            session_id=request.session_id,
            model=request.model,
            log_dir=log_dir,
            share_path=share_path,
            allowed_folders=request.allowed_folders,
            allowed_urls=request.allowed_urls,
            timeout_ms=request.timeout_ms,
        )
        result = await self.runner.run(
            run_request, on_output=self.callbacks.on_output, on_process=_on_process
        )
        if pids and self.callbacks.on_process_exited is not None:
            self.callbacks.on_process_exited(pids[-1])

        observed = result.session_id if result.session_id != request.session_id else None
        session_id = resolve_session_id(
            [
                lambda: observed,
                lambda: session_id_from_share_file(share_path),
                lambda: session_id_from_log_dir(log_dir),
            ]
        ) or request.session_id
        if session_id and session_id != request.session_id:
            logger.info("[%s] Session ID: %s", label, session_id)
            if self.callbacks.on_session_captured is not None:
                self.callbacks.on_session_captured(session_id)
        result.session_id = session_id

        if result.metrics is not None:
            result.metrics.ensure_token_usage()
        return result

    async def create_marker_commit(
        self, worktree: Path, job_id: str, task_description: str, label: str
    ) -> bool:
        """Record the delegation in git history; failures are logged, never raised."""
        message = f"orchestrator({job_id}): AI agent task created\n\n{task_description}"
        try:
            await self.git.stage(worktree, TASK_FILE_NAME)
            committed = await self.git.commit(worktree, message, allow_empty=True)
        except (GitError, OSError) as exc:
            logger.warning("[%s] Could not create marker commit: %s", label, exc)
            return False
        if committed:
            logger.info("[%s] Created marker commit for agent delegation", label)
        return committed


__all__ = [
    "AgentDelegator",
    "DelegateRequest",
    "DelegatorCallbacks",
    "GitError",
    "GitOperations",
    "SubprocessGit",
    "TASK_FILE_NAME",
    "render_task_file",
]
