from __future__ import annotations

TOOL_NOT_FOUND_MESSAGE = "OpusFlow CLI not found. Please ensure it is installed and in your PATH."


class FlowpilotError(RuntimeError):
    """Base class for every failure raised by flowpilot."""


class ConfigError(FlowpilotError):
    """Raised when flowpilot.toml cannot be interpreted."""


class ProcessLaunchError(FlowpilotError):
    """Raised when an external program cannot be spawned at all."""

    def __init__(self, message: str, *, program: str) -> None:
        super().__init__(message)
        self.program = program


class CLIError(FlowpilotError):
    """Terminal failure of a single OpusFlow invocation."""

    def __init__(
        self,
        message: str,
        *,
        stderr: str | None = None,
        exit_code: int | None = None,
        command: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stderr = stderr
        self.exit_code = exit_code
        self.command = command


class DecodeError(CLIError):
    """Raised when stdout matches none of the known output formats."""

    def __init__(self, kind: str, raw_text: str) -> None:
        super().__init__(f"Failed to parse {kind} output: {raw_text}")
        self.kind = kind
        self.raw_text = raw_text


class SessionError(FlowpilotError):
    """Raised when the login handshake fails."""

    def __init__(self, message: str, *, stderr: str | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr


class SessionTimeoutError(SessionError):
    """Raised when the interactive login exceeds its time budget."""


class SessionCancelledError(SessionError):
    """Raised when the interactive login is cancelled by the caller."""


class SessionNotAuthenticatedError(SessionError):
    """Raised when login exited cleanly but the status check disagrees."""


class ManualLoginRequired(SessionError):
    """Recoverable: the interactive login binary is missing.

    Callers are expected to fall back to manual credential entry.
    """

    def __init__(self, message: str, *, hint: str) -> None:
        super().__init__(message)
        self.hint = hint


class TaskExecutionError(CLIError):
    """Raised when ``opusflow exec`` exits 0 but the task did not complete."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str,
        output: str,
        command: list[str] | None = None,
    ) -> None:
        super().__init__(message, command=command)
        self.task_id = task_id
        self.output = output
