"""Agent CLI presence and authentication probes with a resettable cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from nodepilot.agent.spec import AuthMethod, AuthStatus
from nodepilot.runners.process import (
    AsyncioProcessSpawner,
    CommandOutput,
    ProcessSpawner,
    capture_command,
)
from nodepilot.settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

Probe = tuple[str, Callable[[CommandOutput], bool]]


class CliChecker:
    """Cache whether the agent CLI is installed.

    ``is_available()`` never blocks: before the first check completes it answers
    optimistically and schedules the real check on the running event loop.
    """

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        self.spawner = spawner or AsyncioProcessSpawner()
        self.settings = settings or get_agent_settings()
        self._available: Optional[bool] = None
        self._pending: Optional[asyncio.Task[bool]] = None

    def _probes(self) -> list[Probe]:
        wrapper = self.settings.WRAPPER_BINARY
        agent = self.settings.AGENT_BINARY
        return [
            (f"{wrapper} copilot --help", lambda out: out.ok),
            (
                f"{wrapper} extension list",
                lambda out: out.ok and "copilot" in out.stdout.lower(),
            ),
            (f"{agent} --help", lambda out: out.ok),
        ]

    async def _run(self, command: str) -> CommandOutput:
        return await capture_command(
            self.spawner, command, timeout=self.settings.CLI_CHECK_TIMEOUT_SEC
        )

    async def check(self) -> bool:
        """Probe every known install variant and cache the answer."""
        available = False
        for command, accept in self._probes():
            output = await self._run(command)
            if accept(output):
                logger.debug("Agent CLI detected via %r", command)
                available = True
                break
        if not available:
            logger.warning("Agent CLI not found (tried gh extension and standalone binary)")
        self._available = available
        return available

    def is_available(self) -> bool:
        if self._available is not None:
            return self._available
        self._schedule_check()
        return True

    def _schedule_check(self) -> None:
        if self._pending is not None and not self._pending.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._pending = loop.create_task(self.check())

    def is_populated(self) -> bool:
        return self._available is not None

    def reset(self) -> None:
        self._available = None
        self._pending = None

    async def check_auth(self) -> AuthStatus:
        """Report whether the CLI is installed and signed in."""
        wrapper = self.settings.WRAPPER_BINARY
        agent = self.settings.AGENT_BINARY
        probes: list[tuple[str, bool, AuthMethod]] = [
            (f"{wrapper} auth status", True, "gh"),
            (f"{agent} auth status", True, "standalone"),
            (f"{wrapper} --version", False, "gh"),
            (f"{agent} --version", False, "standalone"),
        ]
        for command, authenticated, method in probes:
            output = await self._run(command)
            if output.ok:
                return AuthStatus(authenticated=authenticated, method=method)
        return AuthStatus(authenticated=False, method="unknown")


__all__ = ["CliChecker"]
