from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from flowpilot.client import OpusFlowClient
from flowpilot.events import EventBus, EventKind, RunEvent
from flowpilot.phases import PhaseAction, PhaseContext, default_phase_actions

logger = logging.getLogger(__name__)

PhaseStatus = Literal["pending", "running", "completed", "failed"]
RunStatus = Literal["idle", "running", "completed", "failed"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.replace(microsecond=0).isoformat() if value else None


def format_duration(start: datetime, end: datetime) -> str:
    seconds = int((end - start).total_seconds())
    minutes = seconds // 60
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass(slots=True)
class Phase:
    id: str
    title: str
    description: str
    status: PhaseStatus = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "error": self.error,
        }


@dataclass(slots=True)
class WorkflowRun:
    plan_reference: str
    agent: str
    phases: list[Phase]
    current_phase_index: int = 0
    status: RunStatus = "idle"
    start_time: datetime | None = None
    end_time: datetime | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)

    @property
    def current_phase(self) -> Phase | None:
        if 0 <= self.current_phase_index < len(self.phases):
            return self.phases[self.current_phase_index]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_reference": self.plan_reference,
            "agent": self.agent,
            "status": self.status,
            "current_phase_index": self.current_phase_index,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "phases": [phase.to_dict() for phase in self.phases],
        }


class PhaseOrchestrator:
    """Runs a fixed, ordered list of phase actions as one workflow run.

    Phases execute strictly one after another because later phases read
    artifacts of earlier ones. The first failing phase aborts the run and
    its exception propagates to the caller after the run is marked failed.
    Only one run may be in flight per orchestrator.
    """

    def __init__(
        self,
        client: OpusFlowClient,
        *,
        workspace: Path,
        actions: Sequence[PhaseAction] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.client = client
        self.workspace = workspace
        self.actions = list(actions) if actions is not None else default_phase_actions()
        self.events = events or EventBus()
        self._current: WorkflowRun | None = None

    @property
    def current_run(self) -> WorkflowRun | None:
        return self._current

    def build_phases(self) -> list[Phase]:
        return [
            Phase(id=action.phase_id, title=action.title, description=action.description)
            for action in self.actions
        ]

    def _publish(self, kind: EventKind, message: str = "", **kwargs: Any) -> None:
        self.events.publish(RunEvent(kind=kind, message=message, **kwargs))

    async def _execute_phase(
        self,
        phase: Phase,
        action: PhaseAction,
        context: PhaseContext,
    ) -> None:
        phase.status = "running"
        phase.start_time = _utcnow()
        context.phase_id = phase.id
        self._publish("phase_started", f"▶️  {phase.title}", phase_id=phase.id)
        try:
            await action.run(context)
        except (Exception, asyncio.CancelledError) as exc:
            phase.status = "failed"
            phase.error = str(exc) or exc.__class__.__name__
            phase.end_time = _utcnow()
            self._publish(
                "phase_failed",
                f"✗ {phase.title} failed: {phase.error}",
                level="error",
                phase_id=phase.id,
            )
            raise
        phase.status = "completed"
        phase.end_time = _utcnow()
        self._publish(
            "phase_completed",
            f"✓ {phase.title} completed in {format_duration(phase.start_time, phase.end_time)}",
            level="success",
            phase_id=phase.id,
        )

    async def run(self, plan_reference: str, agent: str) -> WorkflowRun:
        if self._current is not None and self._current.status == "running":
            raise RuntimeError("A workflow run is already in progress.")

        run = WorkflowRun(
            plan_reference=plan_reference,
            agent=agent,
            phases=self.build_phases(),
            status="running",
            start_time=_utcnow(),
        )
        self._current = run
        context = PhaseContext(
            plan_reference=plan_reference,
            agent=agent,
            workspace=self.workspace,
            client=self.client,
            events=self.events,
            artifacts=run.artifacts,
        )
        logger.info("Starting workflow run for %s with %s", plan_reference, agent)
        self._publish(
            "run_started",
            f"🚀 Starting workflow execution with {agent}",
            data={"plan_reference": plan_reference, "phases": [p.id for p in run.phases]},
        )

        total = len(run.phases)
        for index, (phase, action) in enumerate(zip(run.phases, self.actions, strict=True)):
            run.current_phase_index = index
            try:
                await self._execute_phase(phase, action, context)
            except (Exception, asyncio.CancelledError) as exc:
                run.status = "failed"
                run.end_time = _utcnow()
                self._publish(
                    "run_failed",
                    f"❌ Workflow failed: {phase.error}",
                    level="error",
                    phase_id=phase.id,
                    data={"error_type": exc.__class__.__name__},
                )
                raise
            self._publish(
                "progress",
                phase_id=phase.id,
                progress=(index + 1) / total * 100,
            )

        run.status = "completed"
        run.end_time = _utcnow()
        duration = format_duration(run.start_time, run.end_time)
        self._publish(
            "run_completed",
            f"✅ Workflow completed successfully in {duration}",
            level="success",
            data={"duration": duration},
        )
        return run
