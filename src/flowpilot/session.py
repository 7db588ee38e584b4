from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from flowpilot.config import SessionConfig
from flowpilot.errors import (
    ManualLoginRequired,
    ProcessLaunchError,
    SessionCancelledError,
    SessionError,
    SessionNotAuthenticatedError,
    SessionTimeoutError,
)
from flowpilot.process import ChunkSink, ProcessEventHook, ProcessRunner

logger = logging.getLogger(__name__)

LoginMethod = Literal["existing", "interactive"]


@dataclass(frozen=True, slots=True)
class SessionResult:
    provider: str
    authenticated: bool
    method: LoginMethod


class SessionFlow:
    """Bounded login handshake against an auth-capable agent CLI.

    A status check runs first; only when it does not report an
    authenticated session is the interactive login spawned. That login is
    killed on timeout or when ``cancel_event`` is set, and a clean exit is
    confirmed with a second status check before success is reported.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        config: SessionConfig,
        *,
        event_hook: ProcessEventHook | None = None,
    ) -> None:
        self.runner = runner
        self.config = config
        self.event_hook = event_hook
        self._authenticated = re.compile(config.authenticated_pattern, re.IGNORECASE)
        self._unauthenticated = (
            re.compile(config.unauthenticated_pattern, re.IGNORECASE)
            if config.unauthenticated_pattern
            else None
        )

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def reports_authenticated(self, stdout: str) -> bool:
        if self._unauthenticated is not None and self._unauthenticated.search(stdout):
            return False
        return bool(self._authenticated.search(stdout))

    async def check_status(self) -> bool:
        try:
            result = await self.runner.run(self.config.binary, list(self.config.status_args))
        except ProcessLaunchError:
            return False
        authenticated = result.exit_code == 0 and self.reports_authenticated(result.stdout)
        self._emit({"event": "session_status", "authenticated": authenticated})
        return authenticated

    async def _stop(self, task: asyncio.Task[Any]) -> None:
        if task.done():
            if not task.cancelled():
                task.exception()
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def login(
        self,
        cancel_event: asyncio.Event | None = None,
        *,
        on_output: ChunkSink | None = None,
    ) -> SessionResult:
        provider = self.config.binary
        if await self.check_status():
            return SessionResult(provider=provider, authenticated=True, method="existing")
        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelledError(f"{provider} login cancelled")

        self._emit({"event": "session_login_start", "provider": provider})
        login_task = asyncio.create_task(
            self.runner.run(
                provider,
                list(self.config.login_args),
                on_stdout=on_output,
                on_stderr=on_output,
            )
        )
        cancel_task: asyncio.Task[Any] | None = None
        waiters: set[asyncio.Task[Any]] = {login_task}
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._stop(login_task)
            raise
        finally:
            if cancel_task is not None:
                await self._stop(cancel_task)

        if cancel_event is not None and cancel_event.is_set():
            await self._stop(login_task)
            self._emit({"event": "session_login_cancelled", "provider": provider})
            logger.info("%s login cancelled", provider)
            raise SessionCancelledError(f"{provider} login cancelled")
        if login_task not in done:
            await self._stop(login_task)
            self._emit({"event": "session_login_timeout", "provider": provider})
            raise SessionTimeoutError(
                f"{provider} login timed out after {self.config.timeout_seconds:.0f}s"
            )

        try:
            result = login_task.result()
        except ProcessLaunchError as exc:
            logger.warning("%s is not installed; manual credential entry required", provider)
            raise ManualLoginRequired(
                f"{provider} is not installed", hint=self.config.manual_hint
            ) from exc

        if result.exit_code != 0:
            raise SessionError(
                f"{provider} login failed with exit code {result.exit_code}",
                stderr=result.stderr,
            )
        if not await self.check_status():
            raise SessionNotAuthenticatedError(
                f"{provider} login exited cleanly but the session is not authenticated",
                stderr=result.stderr,
            )
        self._emit({"event": "session_login_success", "provider": provider})
        return SessionResult(provider=provider, authenticated=True, method="interactive")
