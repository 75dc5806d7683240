from __future__ import annotations

import asyncio
import json
import logging
import pathlib
from typing import Any, Optional, cast

import typer

from nodepilot.agent.spec import AugmentableNode, ModelTier, RunRequest
from nodepilot.augment.instructions import InstructionAugmenter
from nodepilot.discovery.cli_check import CliChecker
from nodepilot.discovery.models import ModelDiscovery
from nodepilot.discovery.plugins import PluginManager, discover_custom_agents
from nodepilot.runners.copilot_cli import CopilotCLIRunner
from nodepilot.settings import get_agent_settings

app = typer.Typer(no_args_is_help=True, help="Run and inspect the Copilot agent CLI")
plugins_app = typer.Typer(help="Agent CLI plugin commands")
app.add_typer(plugins_app, name="plugins")


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("run")
def run_agent(
    task: str = typer.Argument(..., help="Task text for the agent"),
    cwd: pathlib.Path = typer.Option(pathlib.Path("."), "--cwd", help="Working directory"),
    model: Optional[str] = typer.Option(None, "--model", help="Model identifier"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Session ID to resume"),
    allow_dir: list[str] = typer.Option([], "--allow-dir", help="Extra absolute directory"),
    allow_url: list[str] = typer.Option([], "--allow-url", help="URL or domain to allow"),
    max_turns: Optional[int] = typer.Option(None, "--max-turns", min=1),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", min=0),
    instructions: Optional[str] = typer.Option(None, "--instructions", help="Additional context"),
    no_instructions_file: bool = typer.Option(False, "--no-instructions-file"),
) -> None:
    """Run the agent once and print the result as JSON."""
    request = RunRequest(
        cwd=cwd.resolve(),
        task=task,
        instructions=instructions,
        label="cli",
        session_id=resume,
        model=model,
        allowed_folders=tuple(allow_dir),
        allowed_urls=tuple(allow_url),
        max_turns=max_turns,
        timeout_ms=timeout_ms,
        skip_instructions_file=no_instructions_file,
    )

    async def _run() -> Any:
        checker = CliChecker()
        await checker.check()
        runner = CopilotCLIRunner(cli=checker)
        return await runner.run(request, on_output=typer.echo)

    result = asyncio.run(_run())
    _echo_json(result.as_dict())
    if not result.success:
        raise typer.Exit(1)


@app.command("check")
def check_cli() -> None:
    """Report whether the agent CLI is installed and authenticated."""

    async def _check() -> dict[str, Any]:
        checker = CliChecker()
        available = await checker.check()
        auth = await checker.check_auth()
        return {"available": available, "authenticated": auth.authenticated, "method": auth.method}

    payload = asyncio.run(_check())
    _echo_json(payload)
    if not payload["available"]:
        raise typer.Exit(1)


@app.command("models")
def list_models(
    refresh: bool = typer.Option(False, "--refresh", help="Bypass the discovery cache"),
    tier: Optional[str] = typer.Option(None, "--suggest", help="Suggest a model for fast|standard|premium"),
) -> None:
    """List models advertised by the agent CLI."""
    if tier is not None and tier not in ("fast", "standard", "premium"):
        typer.echo(f"Error: unknown tier '{tier}'", err=True)
        raise typer.Exit(1)

    async def _discover() -> dict[str, Any]:
        discovery = ModelDiscovery()
        result = await (discovery.refresh() if refresh else discovery.get_cached_models())
        payload: dict[str, Any] = {
            "cli_version": result.cli_version,
            "models": [
                {"id": m.id, "vendor": m.vendor, "family": m.family, "tier": m.tier}
                for m in result.models
            ],
        }
        if tier is not None:
            suggestion = await discovery.suggest_model(cast(ModelTier, tier))
            payload["suggested"] = suggestion.id if suggestion else None
        return payload

    payload = asyncio.run(_discover())
    if not payload["models"]:
        typer.echo("Error: no models discovered", err=True)
        raise typer.Exit(1)
    _echo_json(payload)


@plugins_app.command("ls")
def plugins_list() -> None:
    plugins = asyncio.run(PluginManager().list_installed_plugins())
    if not plugins:
        typer.echo("No plugins installed.")
        return
    for plugin in plugins:
        suffix = f" (source: {plugin.source})" if plugin.source else ""
        typer.echo(f"{plugin.name}{suffix}")


@plugins_app.command("install")
def plugins_install(source: str = typer.Argument(..., help="Plugin source")) -> None:
    result = asyncio.run(PluginManager().install_plugin(source))
    if not result.success:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Installed {source}")


@app.command("agents")
def list_agents(
    repo: pathlib.Path = typer.Option(pathlib.Path("."), "--repo", help="Repository root"),
    name: Optional[str] = typer.Option(None, "--name", help="Check one agent by name"),
) -> None:
    """List custom agents, or check whether a named agent is available."""
    if name is not None:
        availability = asyncio.run(PluginManager().is_agent_available(name, repo.resolve()))
        _echo_json(
            {
                "available": availability.available,
                "source": availability.source,
                "install_source": availability.install_source,
            }
        )
        if not availability.available:
            raise typer.Exit(1)
        return
    for agent in discover_custom_agents(repo.resolve()):
        typer.echo(f"{agent.name}\t{agent.path}")


@app.command("augment")
def augment_nodes(
    nodes_file: pathlib.Path = typer.Argument(..., help="JSON file with [{id, instructions}]"),
    repo: pathlib.Path = typer.Option(pathlib.Path("."), "--repo", help="Repository root"),
) -> None:
    """Enrich node instructions with project skills and print the updated nodes."""
    try:
        raw = json.loads(nodes_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)
    if not isinstance(raw, list):
        typer.echo("Error: nodes file must contain a JSON array", err=True)
        raise typer.Exit(1)

    nodes = [
        AugmentableNode(
            id=str(item["id"]),
            instructions=str(item["instructions"]),
            augment_instructions=bool(item.get("augment_instructions", True)),
        )
        for item in raw
        if isinstance(item, dict) and "id" in item and "instructions" in item
    ]
    augmenter = InstructionAugmenter(CopilotCLIRunner())
    asyncio.run(augmenter.augment(nodes, repo.resolve()))
    _echo_json(
        [
            {
                "id": node.id,
                "instructions": node.instructions,
                "original_instructions": node.original_instructions,
            }
            for node in nodes
        ]
    )


@app.command("settings")
def show_settings() -> None:
    """Print the effective configuration."""
    _echo_json(get_agent_settings().model_dump())


if __name__ == "__main__":
    app()
