from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowpilot.errors import ConfigError


@dataclass(slots=True)
class ToolConfig:
    binary: str = "opusflow"
    working_directory: str = ""


@dataclass(slots=True)
class PipelineConfig:
    plans_dir: str = "opusflow-planning/plans"
    default_agent: str = "claude-cli"
    step_delay_seconds: float = 1.0
    agent_exec: bool = False


@dataclass(slots=True)
class SessionConfig:
    binary: str = "cursor-agent"
    status_args: list[str] = field(default_factory=lambda: ["status"])
    login_args: list[str] = field(default_factory=lambda: ["login"])
    timeout_seconds: float = 120.0
    authenticated_pattern: str = "logged in"
    unauthenticated_pattern: str = "not logged in"
    manual_hint: str = "Set an API key for your agent (e.g. ANTHROPIC_API_KEY) and retry."


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


def _section(section_cls: type, data: dict[str, Any], name: str) -> Any:
    values = data.get(name, {})
    if not isinstance(values, dict):
        raise ConfigError(f"[{name}] must be a table, got {type(values).__name__}")
    try:
        return section_cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid [{name}] section: {exc}") from exc


@dataclass(slots=True)
class FlowpilotConfig:
    tool: ToolConfig = field(default_factory=ToolConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> FlowpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlowpilotConfig:
        return cls(
            tool=_section(ToolConfig, data, "tool"),
            pipeline=_section(PipelineConfig, data, "pipeline"),
            session=_section(SessionConfig, data, "session"),
            logging=_section(LoggingConfig, data, "logging"),
        )

    def working_directory(self, base: Path) -> Path:
        raw = self.tool.working_directory.strip()
        if not raw:
            return base
        path = Path(raw)
        return path if path.is_absolute() else (base / path).resolve()

    def to_dict(self) -> dict:
        return {
            "tool": {
                "binary": self.tool.binary,
                "working_directory": self.tool.working_directory,
            },
            "pipeline": {
                "plans_dir": self.pipeline.plans_dir,
                "default_agent": self.pipeline.default_agent,
                "step_delay_seconds": self.pipeline.step_delay_seconds,
                "agent_exec": self.pipeline.agent_exec,
            },
            "session": {
                "binary": self.session.binary,
                "status_args": list(self.session.status_args),
                "login_args": list(self.session.login_args),
                "timeout_seconds": self.session.timeout_seconds,
                "authenticated_pattern": self.session.authenticated_pattern,
                "unauthenticated_pattern": self.session.unauthenticated_pattern,
                "manual_hint": self.session.manual_hint,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FlowpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["tool", "pipeline", "session", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlowpilotConfig:
    if not path.exists():
        return FlowpilotConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return FlowpilotConfig.from_dict(data)


def save_config(path: Path, config: FlowpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
