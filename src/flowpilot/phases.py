from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowpilot.client import OpusFlowClient
from flowpilot.errors import TaskExecutionError
from flowpilot.events import EventBus, LogLevel, RunEvent
from flowpilot.protocol.models import TaskInfo


@dataclass(slots=True)
class PhaseContext:
    """What a phase action may read and produce during one run."""

    plan_reference: str
    agent: str
    workspace: Path
    client: OpusFlowClient
    events: EventBus
    artifacts: dict[str, Any] = field(default_factory=dict)
    phase_id: str | None = None

    def log(self, message: str, level: LogLevel = "info") -> None:
        self.events.log(message, level, phase_id=self.phase_id)

    def log_chunk(self, chunk: str) -> None:
        text = chunk.strip()
        if text:
            self.log(text)

    def store(self, key: str, value: Any) -> None:
        self.artifacts[key] = value
        self.events.publish(
            RunEvent(kind="artifact", phase_id=self.phase_id, data={"key": key})
        )


class PhaseAction(ABC):
    phase_id: str = "phase"
    title: str = "Phase"
    description: str = ""

    @abstractmethod
    async def run(self, context: PhaseContext) -> Any:
        """Perform the phase; raising marks the phase and the run failed."""


class LoadPlanAction(PhaseAction):
    phase_id = "load-plan"
    title = "Load Plan"
    description = "Load and parse the plan file"

    def __init__(
        self, plans_dir: str = "opusflow-planning/plans", settle_seconds: float = 0.0
    ) -> None:
        self.plans_dir = plans_dir
        self.settle_seconds = settle_seconds

    def resolve(self, workspace: Path, plan_reference: str) -> Path:
        candidate = Path(plan_reference)
        if candidate.is_absolute():
            return candidate
        return workspace / self.plans_dir / plan_reference

    async def run(self, context: PhaseContext) -> Path:
        context.log("Loading plan file...")
        full_path = self.resolve(context.workspace, context.plan_reference)
        if not full_path.is_file():
            raise FileNotFoundError(f"Plan file not found: {full_path}")
        try:
            content = full_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError(f"Plan file is not valid UTF-8: {full_path}") from exc
        context.store("plan_path", str(full_path))
        context.store("plan_content", content)
        context.log(f"Loaded plan: {full_path.name}")
        if self.settle_seconds > 0:
            await asyncio.sleep(self.settle_seconds)
        return full_path


class GeneratePromptAction(PhaseAction):
    phase_id = "generate-prompt"
    title = "Generate Prompt"
    description = "Generate execution prompt for AI agent"

    def __init__(self, settle_seconds: float = 0.0) -> None:
        self.settle_seconds = settle_seconds

    async def run(self, context: PhaseContext) -> str:
        context.log("Generating execution prompt...")
        prompt = await context.client.prompt("plan", context.plan_reference, cwd=context.workspace)
        context.store("prompt", prompt)
        context.log("Prompt generated", "success")
        context.log("You can now paste this into your AI agent")
        if self.settle_seconds > 0:
            await asyncio.sleep(self.settle_seconds)
        return prompt


class SimulatedAgentAction(PhaseAction):
    """Stand-in for agent work: logs each step and waits.

    Swap in ``AgentExecAction`` to drive a real agent through the CLI.
    """

    steps: tuple[str, ...] = ()
    step_weight: float = 1.0
    intro: str = "Executing phase..."

    def __init__(self, step_seconds: float = 1.0) -> None:
        self.step_seconds = step_seconds

    async def run(self, context: PhaseContext) -> list[str]:
        context.log(self.intro)
        context.log(
            "This is a simulated phase; no agent process is started for it.", "warning"
        )
        for step in self.steps:
            context.log(f"  • {step}...")
            await asyncio.sleep(self.step_seconds * self.step_weight)
        context.log(f"{self.title} completed", "success")
        return list(self.steps)


class ResearchAction(SimulatedAgentAction):
    phase_id = "execute-research"
    title = "Research Phase"
    description = "AI agent researches and plans implementation"
    steps = ("Analyzing requirements", "Researching solutions", "Planning implementation")
    intro = "Executing research phase..."


class ImplementationAction(SimulatedAgentAction):
    phase_id = "execute-implementation"
    title = "Implementation Phase"
    description = "AI agent implements the planned changes"
    steps = ("Creating files", "Writing code", "Running tests", "Fixing issues")
    step_weight = 1.5
    intro = "Executing implementation phase..."


class AgentExecAction(PhaseAction):
    """Runs ``opusflow exec <task-id> <plan> --agent <agent>`` per pending task.

    Each task is executed at most once. A task that ``tasks next`` still
    reports after its exec fails the phase instead of being run again.
    """

    phase_id = "execute-implementation"
    title = "Implementation Phase"
    description = "AI agent implements the planned changes"

    def __init__(self, max_tasks: int = 50) -> None:
        self.max_tasks = max_tasks

    async def _next_task(self, context: PhaseContext) -> TaskInfo | None:
        upcoming = await context.client.tasks_next(context.plan_reference, cwd=context.workspace)
        return None if upcoming.all_completed else upcoming.task

    async def run(self, context: PhaseContext) -> list[str]:
        outputs: dict[str, str] = {}
        task = await self._next_task(context)
        while task is not None:
            if task.id in outputs:
                raise TaskExecutionError(
                    f"{task.id} is still pending after exec with {context.agent}",
                    task_id=task.id,
                    output=outputs[task.id],
                )
            if len(outputs) >= self.max_tasks:
                raise RuntimeError(
                    f"Task queue for {context.plan_reference} did not drain "
                    f"after {self.max_tasks} tasks"
                )
            context.log(f"Executing {task.id}: {task.title}")
            outputs[task.id] = await context.client.exec(
                task.id,
                context.plan_reference,
                context.agent,
                cwd=context.workspace,
                on_output=context.log_chunk,
            )
            task = await self._next_task(context)
        executed = list(outputs.values())
        context.store("exec_outputs", executed)
        context.log(f"Executed {len(executed)} task(s) with {context.agent}", "success")
        return executed


class VerifyAction(PhaseAction):
    phase_id = "verify-implementation"
    title = "Verification"
    description = "Verify implementation against plan"

    async def run(self, context: PhaseContext) -> Any:
        context.log("Running verification...")
        context.log("Executing opusflow verify command...")
        result = await context.client.verify(
            context.plan_reference,
            cwd=context.workspace,
            on_output=context.log_chunk,
        )
        context.store("verify_result", result)
        report_path = Path(result.full_path)
        if not report_path.is_absolute():
            report_path = context.workspace / report_path
        if report_path.is_file():
            context.store("verification_report", report_path.read_text(encoding="utf-8"))
            context.log(f"Verification report created: {report_path.name}", "success")
        if result.status == "failed":
            context.log("Verification reported failing checks", "warning")
        return result


def default_phase_actions(
    *,
    plans_dir: str = "opusflow-planning/plans",
    step_delay_seconds: float = 1.0,
    agent_exec: bool = False,
) -> list[PhaseAction]:
    implementation: PhaseAction = (
        AgentExecAction() if agent_exec else ImplementationAction(step_delay_seconds)
    )
    return [
        LoadPlanAction(plans_dir, settle_seconds=step_delay_seconds * 0.5),
        GeneratePromptAction(settle_seconds=step_delay_seconds),
        ResearchAction(step_delay_seconds),
        implementation,
        VerifyAction(),
    ]
