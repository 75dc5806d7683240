"""Process spawning primitives and host environment access.

The runner, discovery helpers and delegator never touch ``os.environ`` or
``asyncio.create_subprocess_*`` directly; they go through a
:class:`ProcessSpawner` and a :class:`HostEnvironment` so tests can substitute
fakes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

# Per-line buffer limit for child output streams.
STREAM_LIMIT = 1024 * 1024


@dataclass(slots=True)
class ExitStatus:
    """Exit information of a finished process.

    ``code`` is ``None`` when the process was terminated by a signal or when the
    platform reported no status at all.
    """

    code: Optional[int]
    signal: Optional[str] = None


class ProcessHandle(Protocol):
    pid: Optional[int]
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> ExitStatus: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessSpawner(Protocol):
    async def spawn(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessHandle: ...


class HostEnvironment(Protocol):
    env: Mapping[str, str]
    platform: str

    def cwd(self) -> str: ...


@dataclass(slots=True)
class SystemEnvironment:
    """Snapshot of the real process environment."""

    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    platform: str = sys.platform

    def cwd(self) -> str:
        return os.getcwd()


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"SIG{number}"


class AsyncioProcessHandle:
    """Wrap :class:`asyncio.subprocess.Process` with group-aware termination."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: Optional[int] = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr

    async def wait(self) -> ExitStatus:
        returncode = await self._process.wait()
        if returncode < 0:
            return ExitStatus(code=None, signal=_signal_name(-returncode))
        return ExitStatus(code=returncode)

    def _signal_group(self, signum: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            if os.name == "posix" and self.pid is not None:
                # Each child runs in its own session so the shell and its children die together.
                os.killpg(self.pid, signum)
            else:
                self._process.send_signal(signum)
        except ProcessLookupError:
            logger.debug("Process %s already exited", self.pid)

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        if os.name == "posix":
            self._signal_group(signal.SIGKILL)
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            logger.debug("Process %s already exited", self.pid)


class AsyncioProcessSpawner:
    """Spawn shell commands through asyncio with piped output."""

    async def spawn(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> AsyncioProcessHandle:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=None if env is None else dict(env),
            limit=STREAM_LIMIT,
            start_new_session=os.name == "posix",
        )
        return AsyncioProcessHandle(process)


@dataclass(slots=True)
class CommandOutput:
    """Captured result of a short-lived helper command."""

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


async def capture_command(
    spawner: ProcessSpawner,
    command: str,
    *,
    timeout: float,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> CommandOutput:
    """Run ``command`` to completion and collect its output.

    Spawn failures and timeouts are reported in the returned value rather than
    raised; callers treat them as "command did not succeed".
    """
    try:
        handle = await spawner.spawn(command, cwd=cwd, env=env)
    except OSError as exc:
        logger.debug("Failed to spawn %r: %s", command, exc)
        return CommandOutput(exit_code=None, stderr=str(exc))

    async def _read(stream: Optional[asyncio.StreamReader]) -> str:
        if stream is None:
            return ""
        data = await stream.read()
        return data.decode("utf-8", errors="replace")

    async def _collect() -> tuple[ExitStatus, str, str]:
        stdout, stderr = await asyncio.gather(_read(handle.stdout), _read(handle.stderr))
        status = await handle.wait()
        return status, stdout, stderr

    try:
        status, stdout, stderr = await asyncio.wait_for(_collect(), timeout=timeout or None)
    except asyncio.TimeoutError:
        logger.debug("Command %r timed out after %ss", command, timeout)
        handle.kill()
        with contextlib.suppress(ProcessLookupError):
            await handle.wait()
        return CommandOutput(exit_code=None, timed_out=True)
    return CommandOutput(exit_code=status.code, stdout=stdout, stderr=stderr)


__all__ = [
    "AsyncioProcessHandle",
    "AsyncioProcessSpawner",
    "CommandOutput",
    "ExitStatus",
    "HostEnvironment",
    "ProcessHandle",
    "ProcessSpawner",
    "STREAM_LIMIT",
    "SystemEnvironment",
    "capture_command",
]
