import asyncio
from pathlib import Path
from typing import Any

import pytest

from flowpilot.client import OpusFlowClient
from flowpilot.errors import (
    TOOL_NOT_FOUND_MESSAGE,
    CLIError,
    DecodeError,
    ProcessLaunchError,
    TaskExecutionError,
)
from flowpilot.process import ProcessResult


class FakeRunner:
    def __init__(self, *outcomes: ProcessResult | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        on_stdout: Any = None,
        on_stderr: Any = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        _ = env
        self.calls.append({"program": program, "args": list(args), "cwd": cwd})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if on_stdout is not None and outcome.stdout:
            on_stdout(outcome.stdout)
        if on_stderr is not None and outcome.stderr:
            on_stderr(outcome.stderr)
        return outcome


def _ok(stdout: str = "") -> ProcessResult:
    return ProcessResult(stdout=stdout, stderr="", exit_code=0)


def test_plan_passes_title_as_single_argument() -> None:
    runner = FakeRunner(_ok("✅ Created plan: plans/add-auth.md\n"))
    client = OpusFlowClient(runner, binary="opusflow")

    result = asyncio.run(client.plan("Add auth; rm -rf /"))

    assert runner.calls[0]["program"] == "opusflow"
    assert runner.calls[0]["args"] == ["plan", "Add auth; rm -rf /"]
    assert result.filename == "add-auth.md"


def test_optional_flags_are_only_added_when_given() -> None:
    runner = FakeRunner(
        _ok("📄 File: specs/a.md\n"),
        _ok("📄 File: specs/b.md\n📝 Title: B\n"),
        _ok("prompt"),
        _ok("prompt"),
        _ok(),
        _ok(),
    )
    client = OpusFlowClient(runner)

    async def _run() -> None:
        await client.spec("build login")
        await client.spec("build login", "Login")
        await client.verify_prompt("plan.md")
        await client.verify_prompt("plan.md", "spec.md")
        await client.workflow_transition("planning")
        await client.workflow_transition("planning", "spec approved")

    asyncio.run(_run())

    assert [call["args"] for call in runner.calls] == [
        ["spec", "build login"],
        ["spec", "build login", "--title", "Login"],
        ["verify", "plan.md", "--prompt"],
        ["verify", "plan.md", "--prompt", "--spec", "spec.md"],
        ["workflow", "transition", "planning"],
        ["workflow", "transition", "planning", "--reason", "spec approved"],
    ]


def test_task_commands_argument_shapes() -> None:
    runner = FakeRunner(
        _ok("🎉 All tasks completed!"),
        _ok("# Task Queue: plan.md\n"),
        _ok(),
        _ok(),
        _ok("done"),
        _ok("Files: 1 | Symbols: 2 | Languages: go\n"),
    )
    client = OpusFlowClient(runner)

    async def _run() -> None:
        await client.tasks_next("plan.md")
        await client.tasks_list("plan.md")
        await client.tasks_start("plan.md", "task-1")
        await client.tasks_complete("plan.md", "task-1")
        await client.exec("next", "plan.md", "claude-cli")
        await client.map("json")

    asyncio.run(_run())

    assert [call["args"] for call in runner.calls] == [
        ["tasks", "next", "plan.md", "--prompt"],
        ["tasks", "list", "plan.md"],
        ["tasks", "start", "plan.md", "task-1"],
        ["tasks", "complete", "plan.md", "task-1"],
        ["exec", "next", "plan.md", "--agent", "claude-cli"],
        ["map", "--format", "json"],
    ]


def test_nonzero_exit_becomes_cli_error_with_stderr() -> None:
    runner = FakeRunner(ProcessResult(stdout="", stderr="plan exists\n", exit_code=2))
    client = OpusFlowClient(runner)

    with pytest.raises(CLIError) as excinfo:
        asyncio.run(client.plan("Add auth"))

    error = excinfo.value
    assert error.exit_code == 2
    assert error.stderr == "plan exists\n"
    assert error.command == ["opusflow", "plan", "Add auth"]
    assert "failed with exit code 2" in str(error)


def test_missing_binary_reports_not_found() -> None:
    runner = FakeRunner(ProcessLaunchError("no such file", program="opusflow"))
    client = OpusFlowClient(runner)

    with pytest.raises(CLIError) as excinfo:
        asyncio.run(client.agents())

    assert str(excinfo.value) == TOOL_NOT_FOUND_MESSAGE
    assert excinfo.value.exit_code is None


def test_undecodable_output_is_a_cli_error() -> None:
    runner = FakeRunner(_ok("unexpected"))
    client = OpusFlowClient(runner)

    with pytest.raises(CLIError) as excinfo:
        asyncio.run(client.workflow_status())

    assert isinstance(excinfo.value, DecodeError)
    assert excinfo.value.raw_text == "unexpected"


def test_is_installed_never_raises() -> None:
    assert asyncio.run(OpusFlowClient(FakeRunner(_ok("usage"))).is_installed()) is True
    assert (
        asyncio.run(
            OpusFlowClient(
                FakeRunner(ProcessLaunchError("missing", program="opusflow"))
            ).is_installed()
        )
        is False
    )
    assert (
        asyncio.run(
            OpusFlowClient(
                FakeRunner(ProcessResult(stdout="", stderr="bad", exit_code=1))
            ).is_installed()
        )
        is False
    )


def test_working_directory_is_default_cwd(tmp_path: Path) -> None:
    runner = FakeRunner(_ok("Current phase: idle\n"), _ok("Current phase: idle\n"))
    client = OpusFlowClient(runner, working_directory=tmp_path)
    override = tmp_path / "other"

    async def _run() -> None:
        await client.workflow_next()
        await client.workflow_next(cwd=override)

    asyncio.run(_run())

    assert runner.calls[0]["cwd"] == tmp_path
    assert runner.calls[1]["cwd"] == override


def test_exec_streams_output_and_emits_events() -> None:
    events: list[dict[str, Any]] = []
    chunks: list[str] = []
    runner = FakeRunner(ProcessResult(stdout="working\n", stderr="warn\n", exit_code=0))
    client = OpusFlowClient(runner, event_hook=events.append)

    output = asyncio.run(client.exec("task-1", "plan.md", on_output=chunks.append))

    assert output == "working\n"
    assert chunks == ["working\n", "warn\n"]
    assert [event["event"] for event in events] == ["cli_command_start", "cli_command_exit"]


@pytest.mark.parametrize(
    ("stdout", "reported"),
    [
        (
            "# Executing: Models\n**Task ID**: task-1\n\n❌ Task failed!\nError: agent crashed\n",
            "❌ Task failed!",
        ),
        (
            "# Executing: Models\n❌ Agent 'codex' is not installed.\n",
            "❌ Agent 'codex' is not installed.",
        ),
    ],
)
def test_exec_failure_printed_on_clean_exit_raises(stdout: str, reported: str) -> None:
    events: list[dict[str, Any]] = []
    runner = FakeRunner(_ok(stdout))
    client = OpusFlowClient(runner, event_hook=events.append)

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(client.exec("task-1", "plan.md", "codex"))

    assert isinstance(excinfo.value, CLIError)
    assert reported in str(excinfo.value)
    assert excinfo.value.task_id == "task-1"
    assert excinfo.value.output == stdout
    assert excinfo.value.command == ["opusflow", "exec", "task-1", "plan.md", "--agent", "codex"]
    assert events[-1] == {"event": "cli_exec_failed", "task": "task-1", "agent": "codex"}


def test_exec_success_output_is_returned() -> None:
    stdout = "# Executing: Models\n✅ Task completed successfully!\n"
    client = OpusFlowClient(FakeRunner(_ok(stdout)))

    assert asyncio.run(client.exec("task-1", "plan.md", "claude-cli")) == stdout
