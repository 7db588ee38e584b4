from __future__ import annotations

import logging
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import Any

from flowpilot.errors import (
    TOOL_NOT_FOUND_MESSAGE,
    CLIError,
    FlowpilotError,
    ProcessLaunchError,
    TaskExecutionError,
)
from flowpilot.process import ChunkSink, ProcessResult, ProcessRunner
from flowpilot.protocol import decoder
from flowpilot.protocol.models import (
    AgentStatus,
    DecomposeResult,
    MapFormat,
    MapResult,
    PlanResult,
    PromptAction,
    SpecResult,
    TaskResult,
    VerifyResult,
    WorkflowGuidance,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

ClientEventHook = Callable[[dict[str, Any]], None]


class OpusFlowClient:
    """One typed coroutine per OpusFlow subcommand.

    Every call runs the CLI exactly once: no retries. Launch failures,
    non-zero exits and undecodable output all surface as ``CLIError``.
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        *,
        binary: str = "opusflow",
        working_directory: Path | None = None,
        event_hook: ClientEventHook | None = None,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def command_line(self, args: list[str]) -> str:
        return shlex.join([self.binary, *args])

    async def _run(
        self,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> ProcessResult:
        command = [self.binary, *args]
        resolved_cwd = cwd if cwd is not None else self.working_directory
        self._emit({"event": "cli_command_start", "args": list(args)})
        try:
            result = await self.runner.run(
                self.binary,
                args,
                cwd=resolved_cwd,
                on_stdout=on_output,
                on_stderr=on_output,
            )
        except ProcessLaunchError as exc:
            self._emit({"event": "cli_not_found", "binary": self.binary})
            logger.warning("OpusFlow binary %r could not be launched: %s", self.binary, exc)
            raise CLIError(TOOL_NOT_FOUND_MESSAGE, command=command) from exc

        if result.exit_code != 0:
            self._emit(
                {
                    "event": "cli_command_failed",
                    "args": list(args),
                    "exit_code": result.exit_code,
                    "stderr": result.stderr[:400],
                }
            )
            raise CLIError(
                f'Command "{self.command_line(args)}" failed with exit code {result.exit_code}',
                stderr=result.stderr,
                exit_code=result.exit_code,
                command=command,
            )
        self._emit({"event": "cli_command_exit", "args": list(args), "exit_code": 0})
        return result

    async def is_installed(self) -> bool:
        try:
            result = await self.runner.run(self.binary, ["--help"])
        except (FlowpilotError, OSError):
            return False
        return result.exit_code == 0

    async def plan(
        self,
        title: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> PlanResult:
        result = await self._run(["plan", title], cwd=cwd, on_output=on_output)
        return decoder.decode_plan(result.stdout)

    async def verify(
        self,
        plan_file: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> VerifyResult:
        result = await self._run(["verify", plan_file], cwd=cwd, on_output=on_output)
        return decoder.decode_verify(result.stdout)

    async def verify_prompt(
        self,
        plan_file: str,
        spec_file: str | None = None,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> str:
        args = ["verify", plan_file, "--prompt"]
        if spec_file:
            args.extend(["--spec", spec_file])
        result = await self._run(args, cwd=cwd, on_output=on_output)
        return result.stdout

    async def prompt(
        self,
        action: PromptAction,
        file: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> str:
        result = await self._run(["prompt", action, file], cwd=cwd, on_output=on_output)
        return decoder.decode_prompt(result.stdout)

    async def map(
        self,
        fmt: MapFormat = "summary",
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> MapResult:
        result = await self._run(["map", "--format", fmt], cwd=cwd, on_output=on_output)
        return decoder.decode_map(result.stdout)

    async def spec(
        self,
        description: str,
        title: str | None = None,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> SpecResult:
        args = ["spec", description]
        if title:
            args.extend(["--title", title])
        result = await self._run(args, cwd=cwd, on_output=on_output)
        return decoder.decode_spec(result.stdout)

    async def decompose(
        self,
        plan_file: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> DecomposeResult:
        result = await self._run(["decompose", plan_file], cwd=cwd, on_output=on_output)
        return decoder.decode_task_list(result.stdout)

    async def tasks_next(
        self,
        plan_ref: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> TaskResult:
        result = await self._run(
            ["tasks", "next", plan_ref, "--prompt"], cwd=cwd, on_output=on_output
        )
        return decoder.decode_task_next(result.stdout)

    async def tasks_list(
        self,
        plan_ref: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> DecomposeResult:
        result = await self._run(["tasks", "list", plan_ref], cwd=cwd, on_output=on_output)
        return decoder.decode_task_list(result.stdout)

    async def tasks_complete(
        self,
        plan_ref: str,
        task_id: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> None:
        await self._run(["tasks", "complete", plan_ref, task_id], cwd=cwd, on_output=on_output)

    async def tasks_start(
        self,
        plan_ref: str,
        task_id: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> None:
        await self._run(["tasks", "start", plan_ref, task_id], cwd=cwd, on_output=on_output)

    async def exec(
        self,
        task_spec: str,
        plan_ref: str,
        agent: str = "prompt",
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> str:
        args = ["exec", task_spec, plan_ref, "--agent", agent]
        result = await self._run(args, cwd=cwd, on_output=on_output)
        failure = decoder.decode_exec_failure(result.stdout)
        if failure is not None:
            self._emit({"event": "cli_exec_failed", "task": task_spec, "agent": agent})
            raise TaskExecutionError(
                f'Command "{self.command_line(args)}" reported: {failure}',
                task_id=task_spec,
                output=result.stdout,
                command=[self.binary, *args],
            )
        return result.stdout

    async def workflow_status(
        self, *, cwd: Path | str | None = None, on_output: ChunkSink | None = None
    ) -> WorkflowStatus:
        result = await self._run(["workflow", "status"], cwd=cwd, on_output=on_output)
        return decoder.decode_workflow_status(result.stdout)

    async def workflow_start(
        self,
        name: str,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> None:
        await self._run(["workflow", "start", name], cwd=cwd, on_output=on_output)

    async def workflow_next(
        self, *, cwd: Path | str | None = None, on_output: ChunkSink | None = None
    ) -> WorkflowGuidance:
        result = await self._run(["workflow", "next"], cwd=cwd, on_output=on_output)
        return decoder.decode_workflow_guidance(result.stdout)

    async def workflow_transition(
        self,
        phase: str,
        reason: str | None = None,
        *,
        cwd: Path | str | None = None,
        on_output: ChunkSink | None = None,
    ) -> None:
        args = ["workflow", "transition", phase]
        if reason:
            args.extend(["--reason", reason])
        await self._run(args, cwd=cwd, on_output=on_output)

    async def agents(
        self, *, cwd: Path | str | None = None, on_output: ChunkSink | None = None
    ) -> AgentStatus:
        result = await self._run(["agents"], cwd=cwd, on_output=on_output)
        return decoder.decode_agents(result.stdout)
