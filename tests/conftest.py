"""Pytest configuration helpers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterator, Mapping, Optional

import pytest

from nodepilot.runners.process import ExitStatus


@pytest.fixture(autouse=True)
def reset_agent_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Clear settings caches and isolate tests from a developer's NODEPILOT_* env."""
    import os

    from nodepilot import settings

    for key in list(os.environ):
        if key.startswith("NODEPILOT_"):
            monkeypatch.delenv(key, raising=False)
    settings.get_agent_settings.cache_clear()
    try:
        yield
    finally:
        settings.get_agent_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_observability_metrics() -> Iterator[None]:
    from nodepilot.observability.metrics import reset_metrics

    reset_metrics()
    try:
        yield
    finally:
        reset_metrics()


@dataclass
class FakeScript:
    """Canned behaviour for one spawned command."""

    stdout: str = ""
    stderr: str = ""
    status: ExitStatus = field(default_factory=lambda: ExitStatus(code=0))
    hang: bool = False
    error: Optional[OSError] = None


class FakeHandle:
    """Process handle whose output and exit status are scripted."""

    def __init__(self, script: FakeScript, pid: int) -> None:
        self.pid: Optional[int] = pid
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._status = script.status
        self._exited = asyncio.Event()
        self.terminated = False
        self.killed = False
        self.waits = 0
        if script.stdout:
            self.stdout.feed_data(script.stdout.encode("utf-8"))
        if script.stderr:
            self.stderr.feed_data(script.stderr.encode("utf-8"))
        if not script.hang:
            self._finish(self._status)

    def _finish(self, status: ExitStatus) -> None:
        if self._exited.is_set():
            return
        self._status = status
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        self.waits += 1
        return self._status

    def terminate(self) -> None:
        self.terminated = True
        self._finish(ExitStatus(code=None, signal="SIGTERM"))

    def kill(self) -> None:
        self.killed = True
        self._finish(ExitStatus(code=None, signal="SIGKILL"))


@dataclass
class SpawnCall:
    command: str
    cwd: Optional[str]
    env: Optional[Mapping[str, str]]


class FakeSpawner:
    """Spawner that matches commands exactly, then by prefix, then falls back."""

    def __init__(self, default: Optional[FakeScript] = None) -> None:
        self.default = default or FakeScript(status=ExitStatus(code=1))
        self.scripts: dict[str, FakeScript] = {}
        self.calls: list[SpawnCall] = []
        self.handles: list[FakeHandle] = []

    def script(self, command: str, **kwargs: object) -> FakeScript:
        script = FakeScript(**kwargs)  # type: ignore[arg-type]
        self.scripts[command] = script
        return script

    @property
    def commands(self) -> list[str]:
        return [call.command for call in self.calls]

    def _lookup(self, command: str) -> FakeScript:
        if command in self.scripts:
            return self.scripts[command]
        for prefix, script in self.scripts.items():
            if command.startswith(prefix):
                return script
        return self.default

    async def spawn(
        self,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> FakeHandle:
        self.calls.append(SpawnCall(command=command, cwd=cwd, env=env))
        script = self._lookup(command)
        if script.error is not None:
            raise script.error
        handle = FakeHandle(script, pid=4000 + len(self.calls))
        self.handles.append(handle)
        return handle


class StaticCli:
    def __init__(self, available: bool = True) -> None:
        self.available = available

    def is_available(self) -> bool:
        return self.available


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def make_script() -> type[FakeScript]:
    return FakeScript


@pytest.fixture
def static_cli() -> type[StaticCli]:
    return StaticCli
