from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "success", "warning", "error"]
EventKind = Literal[
    "run_started",
    "phase_started",
    "phase_completed",
    "phase_failed",
    "progress",
    "log",
    "artifact",
    "run_completed",
    "run_failed",
]
RunEventHook = Callable[["RunEvent"], None]

_STDLIB_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class RunEvent:
    kind: EventKind
    message: str = ""
    level: LogLevel = "info"
    phase_id: str | None = None
    progress: float | None = None
    data: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": self.kind,
            "level": self.level,
            "at": self.at.replace(microsecond=0).isoformat(),
        }
        if self.message:
            payload["message"] = self.message
        if self.phase_id is not None:
            payload["phase_id"] = self.phase_id
        if self.progress is not None:
            payload["progress"] = self.progress
        if self.data:
            payload["data"] = dict(self.data)
        return payload


class EventBus:
    """Fan-out of run events to any number of subscribers.

    Subscribers are called synchronously in subscription order, so every
    subscriber sees events in the order they were published.
    """

    def __init__(self) -> None:
        self._subscribers: list[RunEventHook] = []

    def subscribe(self, hook: RunEventHook) -> Callable[[], None]:
        self._subscribers.append(hook)

        def _unsubscribe() -> None:
            if hook in self._subscribers:
                self._subscribers.remove(hook)

        return _unsubscribe

    def publish(self, event: RunEvent) -> None:
        if event.message:
            logger.log(_STDLIB_LEVELS[event.level], "[%s] %s", event.kind, event.message)
        for hook in list(self._subscribers):
            hook(event)

    def log(self, message: str, level: LogLevel = "info", *, phase_id: str | None = None) -> None:
        self.publish(RunEvent(kind="log", message=message, level=level, phase_id=phase_id))
