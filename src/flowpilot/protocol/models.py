from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

TaskStatusName = Literal["pending", "in_progress", "done", "failed"]
VerifyStatusName = Literal["passed", "failed", "partial"]
MapFormat = Literal["markdown", "json", "summary"]
PromptAction = Literal["plan", "verify"]

# Lifecycle owned by the external tool; observed, never driven from here.
WORKFLOW_PHASES = (
    "idle",
    "specification",
    "planning",
    "decomposition",
    "execution",
    "verification",
    "complete",
    "failed",
)


@dataclass(frozen=True, slots=True)
class PlanResult:
    full_path: str
    filename: str


@dataclass(frozen=True, slots=True)
class VerifyResult:
    full_path: str
    status: VerifyStatusName | None = None
    checks_passed: int | None = None
    checks_total: int | None = None


@dataclass(frozen=True, slots=True)
class SpecResult:
    full_path: str
    filename: str
    title: str


@dataclass(frozen=True, slots=True)
class MapResult:
    content: str
    files_count: int
    symbols_count: int
    languages: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskInfo:
    id: str
    title: str
    status: TaskStatusName = "pending"
    files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DecomposeResult:
    plan_ref: str
    tasks_count: int
    tasks: tuple[TaskInfo, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskResult:
    task: TaskInfo | None
    prompt: str
    all_completed: bool


@dataclass(frozen=True, slots=True)
class WorkflowStatus:
    id: str
    name: str
    current_phase: str
    next_phase: str
    history_count: int
    spec_path: str | None = None
    plan_path: str | None = None
    task_queue_path: str | None = None
    verify_path: str | None = None


@dataclass(frozen=True, slots=True)
class WorkflowGuidance:
    current_phase: str
    next_phase: str
    guidance: str


@dataclass(frozen=True, slots=True)
class AgentInfo:
    name: str
    available: bool
    install_command: str | None = None


@dataclass(frozen=True, slots=True)
class AgentStatus:
    agents: tuple[AgentInfo, ...] = field(default_factory=tuple)

    def available_names(self) -> list[str]:
        return [agent.name for agent in self.agents if agent.available]
