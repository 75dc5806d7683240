from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any

import pytest

from nodepilot.agent.spec import RunRequest
from nodepilot.observability.metrics import get_metrics_registry
from nodepilot.runners.copilot_cli import (
    MAX_TIMEOUT_MS,
    CopilotCLIRunner,
    instructions_file_path,
    render_instructions,
)
from nodepilot.runners.process import ExitStatus, SystemEnvironment
from nodepilot.settings import AgentSettings

SESSION_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"
RESUMED_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


def _runner(spawner: Any, cli: Any, **settings: Any) -> CopilotCLIRunner:
    env = SystemEnvironment(
        env={"PATH": "/usr/bin", "NODE_OPTIONS": "--inspect", "PYTHONPATH": "/x", "KEEP": "1"},
        platform="linux",
    )
    return CopilotCLIRunner(
        settings=AgentSettings(**settings),
        spawner=spawner,
        environment=env,
        cli=cli,
    )


@pytest.mark.asyncio
async def test_successful_run_collects_output_session_and_metrics(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script(
        "copilot -p",
        stdout=(
            f"Starting session: {SESSION_ID}\n"
            "Working...\n"
            f"session {RESUMED_ID}\n"
            "Total usage est: 2 Premium requests\n"
            "Breakdown by AI model:\n"
            "gpt-5 10k in, 2k out\n"
        ),
        stderr="warning: something\n",
    )
    runner = _runner(fake_spawner, static_cli(True))
    lines: list[str] = []

    result = await runner.run(
        RunRequest(cwd=tmp_path, task="echo hello", job_id="abcdef1234567890"),
        on_output=lines.append,
    )

    assert result.success is True
    assert result.exit_code == 0
    assert result.error is None
    assert result.session_id == SESSION_ID
    assert result.metrics is not None
    assert result.metrics.premium_requests == 2
    assert result.metrics.token_usage is not None
    assert result.metrics.token_usage.total_tokens == 12_000
    assert "Working..." in lines
    assert "warning: something" in lines

    call = fake_spawner.calls[0]
    assert call.cwd == str(tmp_path)
    assert call.env is not None
    assert "NODE_OPTIONS" not in call.env
    assert "PYTHONPATH" not in call.env
    assert call.env["KEEP"] == "1"

    argv = shlex.split(call.command)
    assert argv[2].startswith("Complete the task described in the instructions file at ")
    assert "orchestrator-job-abcdef12.instructions.md" in argv[2]
    assert not (tmp_path / ".github" / "instructions").exists()
    assert get_metrics_registry().snapshot().runs_total == 1


@pytest.mark.asyncio
async def test_instructions_file_exists_during_run(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    runner = _runner(fake_spawner, static_cli(True))
    seen: dict[str, str] = {}
    fake_spawner.script("copilot -p", stdout="ok\n")

    def on_process(handle: Any) -> None:
        path = instructions_file_path(tmp_path, None)
        seen["content"] = path.read_text(encoding="utf-8")

    await runner.run(
        RunRequest(cwd=tmp_path, task="Refactor parser", instructions="Keep the API stable"),
        on_process=on_process,
    )

    assert "# Current Task" in seen["content"]
    assert "Refactor parser" in seen["content"]
    assert "## Additional Context" in seen["content"]
    assert "Keep the API stable" in seen["content"]
    assert not instructions_file_path(tmp_path, None).exists()


def test_render_instructions_scopes_to_working_directory(tmp_path: Path) -> None:
    content = render_instructions(tmp_path, "Do it")
    assert content.startswith("---\napplyTo: '")
    assert f"{tmp_path.as_posix()}/**" in content
    assert "## Additional Context" not in content
    assert "## Guidelines" in content


@pytest.mark.asyncio
async def test_skip_instructions_file_passes_task_verbatim(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", stdout="done\n")
    runner = _runner(fake_spawner, static_cli(True))

    await runner.run(RunRequest(cwd=tmp_path, task="Summarize", skip_instructions_file=True))

    assert shlex.split(fake_spawner.commands[0])[2] == "Summarize"
    assert not (tmp_path / ".github").exists()


@pytest.mark.asyncio
async def test_unavailable_cli_is_soft_success(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    runner = _runner(fake_spawner, static_cli(False))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is True
    assert result.session_id is None
    assert result.metrics is None
    assert fake_spawner.calls == []


@pytest.mark.asyncio
async def test_missing_working_directory_fails_without_writing(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    runner = _runner(fake_spawner, static_cli(True))
    missing = tmp_path / "missing"

    result = await runner.run(RunRequest(cwd=missing, task="anything"))

    assert result.success is False
    assert "does not exist" in (result.error or "")
    assert not missing.exists()


@pytest.mark.asyncio
async def test_spawn_failure_reports_os_error(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", error=FileNotFoundError(2, "No such file or directory"))
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is False
    assert "No such file or directory" in (result.error or "")
    assert not instructions_file_path(tmp_path).exists()


@pytest.mark.asyncio
async def test_non_zero_exit_is_failure(tmp_path: Path, fake_spawner: Any, static_cli: Any) -> None:
    fake_spawner.script("copilot -p", status=ExitStatus(code=3))
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is False
    assert result.exit_code == 3
    assert result.error == "Agent CLI exited with code 3"
    assert get_metrics_registry().snapshot().runs_failed == 1


@pytest.mark.asyncio
async def test_malformed_usage_line_does_not_abort_run(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script(
        "copilot -p",
        stdout="Breakdown by AI model:\ngpt-5 ..k in, 2k out\nclaude-haiku-4.5 1k in, 1k out\nTask complete\n",
    )
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is True
    assert result.exit_code == 0
    assert result.metrics is None
    assert fake_spawner.handles[0].killed is False


@pytest.mark.asyncio
async def test_signal_exit_is_reported(tmp_path: Path, fake_spawner: Any, static_cli: Any) -> None:
    fake_spawner.script("copilot -p", status=ExitStatus(code=None, signal="SIGKILL"))
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is False
    assert "killed by signal SIGKILL" in (result.error or "")
    assert result.timed_out is False


@pytest.mark.asyncio
async def test_missing_exit_status_with_completion_marker_is_success(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script(
        "copilot -p", stdout="Task complete\n", status=ExitStatus(code=None, signal=None)
    )
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is True
    assert result.exit_code == 0


@pytest.mark.asyncio
async def test_missing_exit_status_without_marker_is_failure(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", stdout="bye\n", status=ExitStatus(code=None, signal=None))
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything"))

    assert result.success is False
    assert result.exit_code is None


@pytest.mark.asyncio
async def test_timeout_terminates_process(tmp_path: Path, fake_spawner: Any, static_cli: Any) -> None:
    fake_spawner.script("copilot -p", hang=True)
    runner = _runner(fake_spawner, static_cli(True), KILL_GRACE_SEC=0.05)

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything", timeout_ms=50))

    assert result.success is False
    assert result.timed_out is True
    assert "timed out after 50ms" in (result.error or "")
    assert fake_spawner.handles[0].terminated is True
    assert not instructions_file_path(tmp_path).exists()
    assert get_metrics_registry().snapshot().runs_timed_out == 1


@pytest.mark.asyncio
async def test_timeout_uses_taskkill_on_windows(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    handle_holder: dict[str, Any] = {}
    fake_spawner.script("copilot -p", hang=True)
    fake_spawner.script("taskkill", stdout="")
    runner = _runner(fake_spawner, static_cli(True))
    runner.environment = SystemEnvironment(env={}, platform="win32")

    original_spawn = fake_spawner.spawn

    async def spawn(command: str, **kwargs: Any) -> Any:
        handle = await original_spawn(command, **kwargs)
        if command.startswith("taskkill"):
            handle_holder["agent"].kill()
        else:
            handle_holder["agent"] = handle
        return handle

    fake_spawner.spawn = spawn

    result = await runner.run(RunRequest(cwd=tmp_path, task="anything", timeout_ms=20))

    assert result.timed_out is True
    pid = handle_holder["agent"].pid
    assert f"taskkill /pid {pid} /f /t" in fake_spawner.commands


@pytest.mark.asyncio
async def test_resume_session_is_default_until_new_one_observed(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", stdout="no id here\n")
    runner = _runner(fake_spawner, static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="continue", session_id=RESUMED_ID))

    assert result.session_id == RESUMED_ID
    argv = shlex.split(fake_spawner.commands[0])
    assert argv[argv.index("--resume") + 1] == RESUMED_ID


@pytest.mark.asyncio
async def test_failing_output_callback_propagates_and_cleans_up(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", stdout="boom\n", hang=True)
    runner = _runner(fake_spawner, static_cli(True))

    def explode(line: str) -> None:
        raise RuntimeError(f"callback failed on {line}")

    with pytest.raises(RuntimeError, match="callback failed"):
        await runner.run(RunRequest(cwd=tmp_path, task="anything"), on_output=explode)

    assert fake_spawner.handles[0].killed is True
    assert not instructions_file_path(tmp_path).exists()


def test_effective_timeout_is_clamped(tmp_path: Path, fake_spawner: Any, static_cli: Any) -> None:
    runner = _runner(fake_spawner, static_cli(True), RUN_TIMEOUT_MS=1000)

    assert runner._effective_timeout_ms(RunRequest(cwd=tmp_path, task="t")) == 1000
    assert runner._effective_timeout_ms(RunRequest(cwd=tmp_path, task="t", timeout_ms=0)) == 0
    huge = RunRequest(cwd=tmp_path, task="t", timeout_ms=MAX_TIMEOUT_MS * 10)
    assert runner._effective_timeout_ms(huge) == MAX_TIMEOUT_MS


def test_run_request_validation(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        RunRequest(cwd=tmp_path, task="t", timeout_ms=-1)
    with pytest.raises(ValueError):
        RunRequest(cwd=tmp_path, task="t", max_turns=0)


def _agent_script(tmp_path: Path, body: str) -> str:
    script = tmp_path / "fake_agent.py"
    script.write_text(body, encoding="utf-8")
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell quoting")
@pytest.mark.asyncio
async def test_end_to_end_with_real_process(tmp_path: Path, static_cli: Any) -> None:
    workdir = tmp_path / "work"
    workdir.mkdir()
    binary = _agent_script(
        tmp_path,
        "import sys\n"
        f"print('Session ID: {SESSION_ID}')\n"
        "print('hello', file=sys.stderr)\n"
        "print('Total code changes: +3 -1')\n",
    )
    runner = CopilotCLIRunner(settings=AgentSettings(AGENT_BINARY=binary), cli=static_cli(True))
    lines: list[str] = []

    result = await runner.run(RunRequest(cwd=workdir, task="echo hello"), on_output=lines.append)

    assert result.success is True
    assert result.exit_code == 0
    assert result.session_id == SESSION_ID
    assert result.metrics is not None and result.metrics.code_changes is not None
    assert "hello" in lines
    assert not (workdir / ".github" / "instructions").exists()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
@pytest.mark.asyncio
async def test_real_process_timeout_kills_process_group(tmp_path: Path, static_cli: Any) -> None:
    binary = _agent_script(tmp_path, "import time\ntime.sleep(30)\n")
    runner = CopilotCLIRunner(
        settings=AgentSettings(AGENT_BINARY=binary, KILL_GRACE_SEC=1), cli=static_cli(True)
    )

    result = await runner.run(RunRequest(cwd=tmp_path, task="sleep", timeout_ms=300))

    assert result.success is False
    assert result.timed_out is True


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell quoting")
@pytest.mark.asyncio
async def test_zero_timeout_never_terminates(tmp_path: Path, static_cli: Any) -> None:
    binary = _agent_script(tmp_path, "import time\ntime.sleep(0.5)\nprint('done')\n")
    runner = CopilotCLIRunner(settings=AgentSettings(AGENT_BINARY=binary), cli=static_cli(True))

    result = await runner.run(RunRequest(cwd=tmp_path, task="wait", timeout_ms=0))

    assert result.success is True
    assert result.timed_out is False


@pytest.mark.asyncio
async def test_child_env_carries_traceparent_when_tracing(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    from nodepilot.observability.tracing import (
        ObservabilityConfig,
        ObservabilityManager,
        initialize_observability,
        shutdown_observability,
    )

    ObservabilityManager._instance = None
    initialize_observability(ObservabilityConfig(enable_tracing=True, service_name="test"))
    try:
        fake_spawner.script("copilot -p", stdout="done\n")
        await _runner(fake_spawner, static_cli(True)).run(RunRequest(cwd=tmp_path, task="trace me"))
    finally:
        shutdown_observability()
        ObservabilityManager._instance = None

    env = fake_spawner.calls[0].env
    assert env is not None
    version, trace_id, span_id, flags = env["TRACEPARENT"].split("-")
    assert (version, flags) == ("00", "01")
    assert len(trace_id) == 32 and len(span_id) == 16


@pytest.mark.asyncio
async def test_child_env_has_no_traceparent_without_tracing(
    tmp_path: Path, fake_spawner: Any, static_cli: Any
) -> None:
    fake_spawner.script("copilot -p", stdout="done\n")

    await _runner(fake_spawner, static_cli(True)).run(RunRequest(cwd=tmp_path, task="anything"))

    env = fake_spawner.calls[0].env
    assert env is not None and "TRACEPARENT" not in env
