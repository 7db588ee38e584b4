import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from flowpilot.cli import cli
from flowpilot.config import load_config, save_config
from flowpilot.errors import ProcessLaunchError
from flowpilot.process import ProcessResult


class FakeRunner:
    """Answers by subcommand name; missing entries fail like a missing binary."""

    def __init__(self, responses: dict[str, ProcessResult | BaseException]) -> None:
        self.responses = responses
        self.calls: list[list[str]] = []

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        on_stdout: Any = None,
        on_stderr: Any = None,
        **kwargs: Any,
    ) -> ProcessResult:
        _ = kwargs, on_stderr
        self.calls.append([program, *args])
        outcome = self.responses.get(args[0] if args else "")
        if outcome is None:
            raise ProcessLaunchError(f"Failed to launch {program}", program=program)
        if isinstance(outcome, BaseException):
            raise outcome
        if on_stdout is not None and outcome.stdout:
            on_stdout(outcome.stdout)
        return outcome


def _ok(stdout: str = "") -> ProcessResult:
    return ProcessResult(stdout=stdout, stderr="", exit_code=0)


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _install_runner(monkeypatch: pytest.MonkeyPatch, runner: FakeRunner) -> None:
    monkeypatch.setattr("flowpilot.cli.ProcessRunner", lambda: runner)


def test_init_writes_config(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["init", "--binary", "/opt/opusflow"])

    assert result.exit_code == 0
    assert "Config:" in result.output
    config = load_config(workspace / "flowpilot.toml")
    assert config.tool.binary == "/opt/opusflow"


def test_plan_prints_decoded_json(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = FakeRunner({"plan": _ok("✅ Created plan: opusflow-planning/plans/auth.md\n")})
    _install_runner(monkeypatch, runner)

    result = CliRunner().invoke(cli, ["plan", "Add auth"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload == {"full_path": "opusflow-planning/plans/auth.md", "filename": "auth.md"}
    assert runner.calls == [["opusflow", "plan", "Add auth"]]


def test_failed_command_reports_exit_code_and_stderr(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    runner = FakeRunner(
        {"decompose": ProcessResult(stdout="", stderr="plan not found", exit_code=2)}
    )
    _install_runner(monkeypatch, runner)

    result = CliRunner().invoke(cli, ["decompose", "missing.md"])

    assert result.exit_code == 1
    assert "failed with exit code 2" in result.output
    assert "plan not found" in result.output


def test_missing_binary_is_reported(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_runner(monkeypatch, FakeRunner({}))

    result = CliRunner().invoke(cli, ["installed"])

    assert result.exit_code == 1
    assert "opusflow is not installed" in result.output


def test_tasks_list_prints_rows(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stdout = "# Task Queue: auth.md\n\n## ✅ task-1: Models\n## ⬜ task-2: Handlers\n"
    _install_runner(monkeypatch, FakeRunner({"tasks": _ok(stdout)}))

    result = CliRunner().invoke(cli, ["tasks", "list", "auth.md"])

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0].split() == ["task-1", "done", "Models"]
    assert lines[1].split() == ["task-2", "pending", "Handlers"]


def test_workflow_status_json(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stdout = "# Workflow Status: wf-1\n\n**Name**: auth\n**Current Phase**: execution\n"
    _install_runner(monkeypatch, FakeRunner({"workflow": _ok(stdout)}))

    result = CliRunner().invoke(cli, ["workflow", "status"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["id"] == "wf-1"
    assert payload["current_phase"] == "execution"
    assert payload["plan_path"] is None


def test_agents_lists_availability(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    stdout = "- **claude-cli**: ✅ Available\n- **cursor-agent**: ❌ Not installed\n"
    _install_runner(monkeypatch, FakeRunner({"agents": _ok(stdout)}))

    result = CliRunner().invoke(cli, ["agents"])

    assert result.exit_code == 0
    assert "claude-cli: available" in result.output
    assert "cursor-agent: not installed" in result.output


def test_run_executes_all_phases(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = workspace / "flowpilot.toml"
    assert CliRunner().invoke(cli, ["init"]).exit_code == 0
    config = load_config(config_path)
    config.pipeline.step_delay_seconds = 0.0
    save_config(config_path, config)

    plans_dir = workspace / "opusflow-planning" / "plans"
    plans_dir.mkdir(parents=True)
    (plans_dir / "auth.md").write_text("# Auth\n", encoding="utf-8")
    runner = FakeRunner(
        {
            "prompt": _ok("# Prompt for auth\n"),
            "verify": _ok("Report saved: opusflow-planning/verify/auth-verify.md\n"),
        }
    )
    _install_runner(monkeypatch, runner)

    result = CliRunner().invoke(cli, ["run", "auth.md"])

    assert result.exit_code == 0, result.output
    assert "Progress: 100%" in result.output
    assert "Workflow completed: auth.md" in result.output
    assert ["opusflow", "prompt", "plan", "auth.md"] in runner.calls


def test_run_with_missing_plan_fails(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_runner(monkeypatch, FakeRunner({}))

    result = CliRunner().invoke(cli, ["run", "missing.md"])

    assert result.exit_code == 1
    assert "Plan file not found" in result.output


def test_run_with_non_utf8_plan_fails_cleanly(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    plans_dir = workspace / "opusflow-planning" / "plans"
    plans_dir.mkdir(parents=True)
    (plans_dir / "auth.md").write_bytes(b"\xff\xfe# Auth\n")
    _install_runner(monkeypatch, FakeRunner({}))

    result = CliRunner().invoke(cli, ["run", "auth.md"])

    assert result.exit_code == 1
    assert "not valid UTF-8" in result.output
    assert not isinstance(result.exception, UnicodeDecodeError)


def test_login_without_agent_binary_prints_manual_hint(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _install_runner(monkeypatch, FakeRunner({}))

    result = CliRunner().invoke(cli, ["login", "--timeout", "1"])

    assert result.exit_code == 2
    assert "manual login required" in result.output
    assert "API key" in result.output


def test_login_with_existing_session(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_runner(monkeypatch, FakeRunner({"status": _ok("Logged in as dev@example.com")}))

    result = CliRunner().invoke(cli, ["login"])

    assert result.exit_code == 0
    assert "Already authenticated with cursor-agent." in result.output


def test_invalid_config_is_reported(workspace: Path) -> None:
    (workspace / "flowpilot.toml").write_text("[tool]\nbogus = 1\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["agents"])

    assert result.exit_code == 1
    assert "Invalid [tool] section" in result.output
