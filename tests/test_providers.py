from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from vault_gardener.project import GardenerConfig
from vault_gardener.providers import (
    ExecutionResult,
    FakeProviderRunner,
    ProviderNotFoundError,
    ProviderRunError,
    ProviderRunner,
    TIMEOUT_EXIT_CODE,
    build_command,
    describe_exit,
    filter_environment,
)


def make_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
        except (OSError, IndexError):
            return False
    return True


def test_runner_captures_merged_output(tmp_path: Path) -> None:
    script = make_script(tmp_path / "agent", 'echo "out $1"\necho "err" >&2\n')
    output_path = tmp_path / "logs" / "last-run-output.txt"

    result = asyncio.run(ProviderRunner(script).run(["hello"], cwd=tmp_path, timeout=10, output_path=output_path))

    assert result.ok
    assert result.reason == "Success"
    assert "out hello" in result.output
    assert "err" in result.output
    assert output_path.read_text(encoding="utf-8") == result.output


def test_runner_maps_exit_codes(tmp_path: Path) -> None:
    script = make_script(tmp_path / "agent", "exit 3\n")

    result = asyncio.run(ProviderRunner(script).run([], cwd=tmp_path, timeout=10))

    assert result.returncode == 3
    assert result.reason == "Exit code: 3"


def test_runner_reports_signal_deaths(tmp_path: Path) -> None:
    script = make_script(tmp_path / "agent", "kill -9 $$\n")

    result = asyncio.run(ProviderRunner(script).run([], cwd=tmp_path, timeout=10))

    assert result.returncode == 137
    assert result.reason == "Signal: SIGKILL"


def test_timeout_kills_whole_process_group(tmp_path: Path) -> None:
    child_pid_file = tmp_path / "child.pid"
    script = make_script(
        tmp_path / "agent",
        f"trap '' TERM\nsleep 30 &\necho $! > {child_pid_file}\necho started\nwait\nsleep 30\n",
    )

    started = time.monotonic()
    result = asyncio.run(
        ProviderRunner(script).run([], cwd=tmp_path, timeout=1, kill_grace_seconds=0.5)
    )
    elapsed = time.monotonic() - started

    assert result.returncode == TIMEOUT_EXIT_CODE
    assert result.timed_out
    assert result.reason == "Timeout after 1s"
    assert "started" in result.output
    assert elapsed < 15

    child = int(child_pid_file.read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 5
    while process_running(child) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not process_running(child)


def test_runner_filters_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
    monkeypatch.setenv("MY_SERVICE_PASSWORD", "hunter2")
    monkeypatch.setenv("GARDENER_HARMLESS", "visible")
    script = make_script(
        tmp_path / "agent",
        'echo "token=${GITHUB_TOKEN:-unset} pw=${MY_SERVICE_PASSWORD:-unset} '
        'ok=${GARDENER_HARMLESS} key=${ANTHROPIC_API_KEY:-unset}"\n',
    )

    result = asyncio.run(
        ProviderRunner(script).run([], cwd=tmp_path, timeout=10, extra_env={"ANTHROPIC_API_KEY": "sk-test"})
    )

    assert result.output == "token=unset pw=unset ok=visible key=sk-test"


def test_filter_environment_rules() -> None:
    env = filter_environment(
        {"OPENAI_API_KEY": "granted"},
        source={
            "PATH": "/bin",
            "PYTHONPATH": "/src",
            "AWS_SECRET_ACCESS_KEY": "x",
            "DEPLOY_PRIVATE_KEY": "x",
            "OPENAI_API_KEY": "x",
            "GARDENER_WEBHOOK_URL": "https://hooks.example.com",
        },
    )
    assert env == {"PATH": "/bin", "OPENAI_API_KEY": "granted"}


def test_describe_exit() -> None:
    assert describe_exit(0) == "Success"
    assert describe_exit(124) == "Timeout"
    assert describe_exit(137) == "Killed (OOM or SIGKILL)"
    assert describe_exit(42) == "Exit code: 42"
    assert describe_exit(None) == "Unknown"
    assert describe_exit(143, "SIGTERM") == "Signal: SIGTERM"


def test_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(ProviderNotFoundError):
        ProviderRunner(tmp_path / "missing")
    with pytest.raises(ProviderNotFoundError):
        ProviderRunner("definitely-not-a-gardener-cli")


def test_fake_runner_records_invocations(tmp_path: Path) -> None:
    fake = FakeProviderRunner(
        [ExecutionResult(args=("x",), returncode=2, output="nope", duration_seconds=1, reason="Exit code: 2")]
    )

    first = asyncio.run(fake.run(["--model", "opus"], cwd=tmp_path, timeout=5))
    second = asyncio.run(fake.run(["-p", "again"], cwd=tmp_path, timeout=5))

    assert first.returncode == 2
    assert second.ok
    assert fake.invocations == [("--model", "opus"), ("-p", "again")]


def config_for(provider: str) -> GardenerConfig:
    return GardenerConfig.model_validate({"provider": provider, "tier": "power"})


def test_claude_command(tmp_path: Path) -> None:
    command = build_command(config_for("claude"), "seed", tmp_path, environ={"ANTHROPIC_API_KEY": "sk-ant"})

    assert command.executable == "claude"
    assert command.args[:3] == ("--dangerously-skip-permissions", "--model", "opus")
    assert ("--max-turns", "50") == command.args[3:5]
    assert command.args[-2] == "-p"
    assert str(tmp_path / "prompts" / "seed.md") in command.args[-1]
    assert command.env == {"ANTHROPIC_API_KEY": "sk-ant"}
    assert command.timeout == 600


def test_codex_command_uses_fast_model(tmp_path: Path) -> None:
    config = GardenerConfig.model_validate({"provider": "codex", "tier": "fast"})

    command = build_command(config, "all", tmp_path, environ={})

    assert command.model == "gpt-5.3-codex-spark"
    assert command.args[:4] == ("--model", "gpt-5.3-codex-spark", "--approval-mode", "full-auto")
    assert command.prompt_file == tmp_path / "prompts" / "garden.md"
    assert command.env == {}


def test_gemini_command_reads_context(tmp_path: Path) -> None:
    config = config_for("gemini")
    with pytest.raises(ProviderRunError):
        build_command(config, "tend", tmp_path, environ={})

    (tmp_path / "context.md").write_text("Vault rules", encoding="utf-8")
    command = build_command(config, "tend", tmp_path, environ={})

    assert command.env == {"GEMINI_SYSTEM_MD": "Vault rules"}
    assert command.args[:2] == ("-m", "gemini-3.1-pro-preview")


def test_invalid_phase_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        build_command(GardenerConfig(), "prune", tmp_path)
