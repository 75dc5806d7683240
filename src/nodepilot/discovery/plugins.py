"""Installed plugin and custom agent discovery."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping, Optional

from nodepilot.agent.spec import AgentAvailability, CustomAgent, InstalledPlugin, PluginInstallResult
from nodepilot.frontmatter import read_frontmatter
from nodepilot.runners.command import quote_arg
from nodepilot.runners.process import (
    AsyncioProcessSpawner,
    HostEnvironment,
    ProcessSpawner,
    SystemEnvironment,
    capture_command,
)
from nodepilot.settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

_PLUGIN_LINE_RE = re.compile(r"^([^\s(]+)\s*(?:\(source:\s*(.+?)\))?")
_AGENT_SUFFIXES = (".agent.md", ".md")


def parse_plugin_list_output(output: str) -> list[InstalledPlugin]:
    plugins: list[InstalledPlugin] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("No plugins") or line.startswith("Use "):
            continue
        match = _PLUGIN_LINE_RE.match(line)
        if match:
            plugins.append(InstalledPlugin(name=match.group(1), source=match.group(2)))
    return plugins


def _agent_name(path: Path) -> str:
    meta = read_frontmatter(path)
    name = meta.get("name")
    if isinstance(name, str) and name.strip():
        return name.strip()
    for suffix in _AGENT_SUFFIXES:
        if path.name.endswith(suffix):
            return path.name[: -len(suffix)]
    return path.stem


def _scan_agents_dir(directory: Path) -> list[CustomAgent]:
    if not directory.is_dir():
        return []
    agents: list[CustomAgent] = []
    try:
        for path in sorted(directory.iterdir()):
            if path.is_file() and path.name.endswith(_AGENT_SUFFIXES):
                agents.append(CustomAgent(name=_agent_name(path), path=path))
    except OSError as exc:
        logger.warning("Failed to scan agents directory %s: %s", directory, exc)
    return agents


def discover_custom_agents(
    repo_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> list[CustomAgent]:
    """Find agents defined in the user's home config and in the repository."""
    env = env if env is not None else SystemEnvironment().env
    agents: list[CustomAgent] = []
    home = env.get("HOME") or env.get("USERPROFILE")
    if home:
        agents.extend(_scan_agents_dir(Path(home) / ".copilot" / "agents"))
    if repo_path is not None:
        agents.extend(_scan_agents_dir(Path(repo_path) / ".github" / "agents"))
    return agents


class PluginManager:
    """List and install agent CLI plugins."""

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        settings: AgentSettings | None = None,
        environment: HostEnvironment | None = None,
    ) -> None:
        self.spawner = spawner or AsyncioProcessSpawner()
        self.settings = settings or get_agent_settings()
        self.environment = environment or SystemEnvironment()

    async def list_installed_plugins(self) -> list[InstalledPlugin]:
        output = await capture_command(
            self.spawner,
            f"{self.settings.AGENT_BINARY} plugin list",
            timeout=self.settings.PLUGIN_LIST_TIMEOUT_SEC,
        )
        if not output.ok:
            logger.debug("Plugin listing failed (exit %s)", output.exit_code)
            return []
        return parse_plugin_list_output(output.stdout)

    async def install_plugin(self, source: str) -> PluginInstallResult:
        command = (
            f"{self.settings.AGENT_BINARY} plugin install "
            f"{quote_arg(source, self.environment.platform)}"
        )
        output = await capture_command(
            self.spawner, command, timeout=self.settings.PLUGIN_INSTALL_TIMEOUT_SEC
        )
        if output.ok:
            logger.info("Installed plugin from %s", source)
            return PluginInstallResult(success=True)
        if output.timed_out:
            error = f"Plugin install timed out after {self.settings.PLUGIN_INSTALL_TIMEOUT_SEC}s"
        else:
            error = output.stderr.strip() or f"Plugin install exited with code {output.exit_code}"
        logger.warning("Plugin install from %s failed: %s", source, error)
        return PluginInstallResult(success=False, error=error)

    async def is_agent_available(
        self, name: str, repo_path: Optional[Path] = None
    ) -> AgentAvailability:
        """Resolve ``name`` against installed plugins first, then custom agents."""
        wanted = name.lower()
        for plugin in await self.list_installed_plugins():
            if plugin.name.lower() == wanted:
                return AgentAvailability(available=True, source="plugin", install_source=plugin.source)
        for agent in discover_custom_agents(repo_path, env=self.environment.env):
            if agent.name.lower() == wanted:
                return AgentAvailability(available=True, source="custom-agent")
        return AgentAvailability(available=False)


__all__ = ["PluginManager", "discover_custom_agents", "parse_plugin_list_output"]
