from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from dataclasses import asdict, dataclass, is_dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from flowpilot.client import OpusFlowClient
from flowpilot.config import FlowpilotConfig, load_config, save_config
from flowpilot.errors import CLIError, FlowpilotError, ManualLoginRequired
from flowpilot.events import RunEvent
from flowpilot.orchestrator import PhaseOrchestrator
from flowpilot.phases import default_phase_actions
from flowpilot.process import ProcessRunner
from flowpilot.protocol.models import WORKFLOW_PHASES
from flowpilot.session import SessionFlow

T = TypeVar("T")

config_option = click.option(
    "--config", "config_value", default="flowpilot.toml", show_default=True
)


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: FlowpilotConfig
    runner: ProcessRunner
    client: OpusFlowClient


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise click.ClickException(f"Unknown log level: {level_name}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_client(
    config: FlowpilotConfig, workspace: Path, runner: ProcessRunner
) -> OpusFlowClient:
    return OpusFlowClient(
        runner,
        binary=config.tool.binary,
        working_directory=config.working_directory(workspace),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    ctx = click.get_current_context(silent=True)
    override = ctx.find_root().params.get("log_level") if ctx is not None else None
    _configure_logging(override or config.logging.level)
    runner = ProcessRunner()
    return Runtime(
        workspace=config.working_directory(repo_root),
        config_path=config_path,
        config=config,
        runner=runner,
        client=_build_client(config, repo_root, runner),
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _call(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except CLIError as exc:
        message = str(exc)
        if exc.stderr and exc.stderr.strip():
            message += f"\n{exc.stderr.strip()}"
        raise click.ClickException(message) from exc
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(value: Any) -> None:
    payload = asdict(value) if is_dataclass(value) and not isinstance(value, type) else value
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_chunk(chunk: str) -> None:
    click.echo(chunk, nl=False)


@click.group()
@click.option("--log-level", default=None, help="Override [logging] level from the config.")
def cli(log_level: str | None) -> None:
    """Drive the OpusFlow CLI."""


@cli.command("init")
@click.option("--binary", default=None, help="OpusFlow executable name or path.")
@config_option
def init_command(binary: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if binary:
        config.tool.binary = binary
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"OpusFlow binary: {config.tool.binary}")


@cli.command("installed")
@config_option
def installed_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    if not _call(runtime.client.is_installed()):
        raise click.ClickException(f"{runtime.config.tool.binary} is not installed.")
    click.echo(f"{runtime.config.tool.binary} is installed.")


@cli.command("plan")
@click.argument("title")
@config_option
def plan_command(title: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(runtime.client.plan(title)))


@cli.command("verify")
@click.argument("plan_file")
@click.option("--prompt", "as_prompt", is_flag=True, default=False)
@click.option("--spec", "spec_file", default=None)
@config_option
def verify_command(
    plan_file: str, as_prompt: bool, spec_file: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    if as_prompt:
        click.echo(_call(runtime.client.verify_prompt(plan_file, spec_file)))
        return
    _echo_json(_call(runtime.client.verify(plan_file)))


@cli.command("prompt")
@click.argument("action", type=click.Choice(["plan", "verify"]))
@click.argument("file")
@config_option
def prompt_command(action: str, file: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(_call(runtime.client.prompt(action, file)))  # type: ignore[arg-type]


@cli.command("spec")
@click.argument("description")
@click.option("--title", default=None)
@config_option
def spec_command(description: str, title: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(runtime.client.spec(description, title)))


@cli.command("map")
@click.option(
    "--format", "fmt", type=click.Choice(["markdown", "json", "summary"]), default="summary"
)
@config_option
def map_command(fmt: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _call(runtime.client.map(fmt))  # type: ignore[arg-type]
    click.echo(f"Files: {result.files_count}")
    click.echo(f"Symbols: {result.symbols_count}")
    click.echo(f"Languages: {', '.join(result.languages) or '(none)'}")


@cli.command("decompose")
@click.argument("plan_file")
@config_option
def decompose_command(plan_file: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(runtime.client.decompose(plan_file)))


@cli.group("tasks")
def tasks_group() -> None:
    """Inspect and update a plan's task queue."""


@tasks_group.command("list")
@click.argument("plan_ref")
@config_option
def tasks_list_command(plan_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _call(runtime.client.tasks_list(plan_ref))
    if not result.tasks:
        click.echo("No tasks found.")
        return
    for task in result.tasks:
        click.echo(f"{task.id:<10} {task.status:<11} {task.title}")


@tasks_group.command("next")
@click.argument("plan_ref")
@config_option
def tasks_next_command(plan_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    result = _call(runtime.client.tasks_next(plan_ref))
    if result.all_completed:
        click.echo("All tasks completed.")
        return
    click.echo(result.prompt)


@tasks_group.command("start")
@click.argument("plan_ref")
@click.argument("task_id")
@config_option
def tasks_start_command(plan_ref: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(runtime.client.tasks_start(plan_ref, task_id))
    click.echo(f"Started {task_id}")


@tasks_group.command("complete")
@click.argument("plan_ref")
@click.argument("task_id")
@config_option
def tasks_complete_command(plan_ref: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(runtime.client.tasks_complete(plan_ref, task_id))
    click.echo(f"Marked {task_id} as complete")


@cli.command("exec")
@click.argument("task_spec")
@click.argument("plan_ref")
@click.option("--agent", default="prompt", show_default=True)
@config_option
def exec_command(task_spec: str, plan_ref: str, agent: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(runtime.client.exec(task_spec, plan_ref, agent, on_output=_echo_chunk))


@cli.group("workflow")
def workflow_group() -> None:
    """Observe and steer the OpusFlow workflow lifecycle."""


@workflow_group.command("status")
@config_option
def workflow_status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json(_call(runtime.client.workflow_status()))


@workflow_group.command("start")
@click.argument("name")
@config_option
def workflow_start_command(name: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(runtime.client.workflow_start(name))
    click.echo(f"Started workflow: {name}")


@workflow_group.command("next")
@config_option
def workflow_next_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    guidance = _call(runtime.client.workflow_next())
    click.echo(guidance.guidance.rstrip())


@workflow_group.command("transition")
@click.argument("phase", type=click.Choice(list(WORKFLOW_PHASES)))
@click.option("--reason", default=None)
@config_option
def workflow_transition_command(phase: str, reason: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    _call(runtime.client.workflow_transition(phase, reason))
    click.echo(f"Transitioned to: {phase}")


@cli.command("agents")
@config_option
def agents_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    status = _call(runtime.client.agents())
    for agent in status.agents:
        line = f"{agent.name}: {'available' if agent.available else 'not installed'}"
        if agent.install_command:
            line += f" (install: {agent.install_command})"
        click.echo(line)


def _print_event(event: RunEvent) -> None:
    if event.kind == "progress" and event.progress is not None:
        click.echo(f"Progress: {event.progress:.0f}%")
        return
    if event.message:
        click.echo(event.message, err=event.level == "error")


@cli.command("run")
@click.argument("plan_ref")
@click.option("--agent", default=None, help="Defaults to [pipeline].default_agent.")
@click.option("--exec-agent", is_flag=True, default=False, help="Run tasks via opusflow exec.")
@config_option
def run_command(plan_ref: str, agent: str | None, exec_agent: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    pipeline = runtime.config.pipeline
    orchestrator = PhaseOrchestrator(
        runtime.client,
        workspace=runtime.workspace,
        actions=default_phase_actions(
            plans_dir=pipeline.plans_dir,
            step_delay_seconds=pipeline.step_delay_seconds,
            agent_exec=exec_agent or pipeline.agent_exec,
        ),
    )
    orchestrator.events.subscribe(_print_event)
    try:
        run = _call(orchestrator.run(plan_ref, agent or pipeline.default_agent))
    except (RuntimeError, OSError, ValueError) as exc:
        raise click.ClickException(f"Workflow execution failed: {exc}") from exc
    click.echo(f"Workflow {run.status}: {run.plan_reference}")


@cli.command("login")
@click.option("--timeout", "timeout_seconds", type=float, default=None)
@config_option
@click.pass_context
def login_command(ctx: click.Context, timeout_seconds: float | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    session_config = runtime.config.session
    if timeout_seconds is not None:
        session_config.timeout_seconds = timeout_seconds
    flow = SessionFlow(runtime.runner, session_config)
    try:
        result = _call(flow.login(on_output=_echo_chunk))
    except click.ClickException as exc:
        if isinstance(exc.__cause__, ManualLoginRequired):
            click.echo(f"{exc.__cause__} - manual login required.", err=True)
            click.echo(exc.__cause__.hint, err=True)
            ctx.exit(2)
        raise
    if result.method == "existing":
        click.echo(f"Already authenticated with {result.provider}.")
    else:
        click.echo(f"Authenticated with {result.provider}.")
