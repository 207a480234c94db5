from __future__ import annotations

import asyncio
import base64
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from loguru import logger

from flowpilot.agents import AgentIdentity, AgentRegistry
from flowpilot.backends import AgentBackend, ClaudeCodeBackend, ResilientBackend, RetryPolicy
from flowpilot.config import FlowpilotConfig, load_config, save_config
from flowpilot.engine import WorkflowEngine
from flowpilot.graph import Step, group_by_rank
from flowpilot.oracle import BackendOracle, FallbackOracle, OfflineOracle, Oracle
from flowpilot.pipeline import ApprovalHandler, AutoApprovalHandler
from flowpilot.state import Phase, WorkflowError

LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
BACKEND_CHOICES = ["claude", "offline"]
IMAGE_PATH = click.Path(exists=True, dir_okay=False, path_type=Path)


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: FlowpilotConfig
    engine: WorkflowEngine


class ConsoleApprovalHandler(ApprovalHandler):
    async def request_approval(self, step: Step, agent: AgentIdentity) -> bool:
        prompt = f"{agent.name} wants to run '{step.label}' ({step.action_type.value}). Approve?"
        return await asyncio.to_thread(click.confirm, prompt, default=False)


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _configure_logging(config: FlowpilotConfig) -> None:
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level, format=LOG_FORMAT, colorize=True)
    if config.logging.file:
        logger.add(
            config.logging.file,
            level="DEBUG",
            format=LOG_FORMAT,
            rotation=config.logging.rotation,
        )


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "backend_event")
    details = {key: value for key, value in event.items() if key != "event"}
    logger.bind(backend=event.get("backend")).warning("{} {}", name, details)


def _make_backend(name: str) -> AgentBackend:
    if name == "claude":
        return ClaudeCodeBackend(working_directory=Path.cwd())
    raise click.ClickException(f"Backend {name!r} cannot serve oracle calls")


def _build_oracle(config: FlowpilotConfig) -> Oracle:
    offline = OfflineOracle(config.models)
    if config.backend.primary == "offline":
        return offline
    use_offline_fallback = config.backend.offline_fallback or config.backend.fallback == "offline"
    fallback_name = (
        config.backend.primary if config.backend.fallback == "offline" else config.backend.fallback
    )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    backend = ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_make_backend(config.backend.primary),
        fallback_name=fallback_name,
        fallback_backend=_make_backend(fallback_name),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )
    oracle: Oracle = BackendOracle(backend, config.models)
    if use_offline_fallback:
        oracle = FallbackOracle(oracle, offline)
    return oracle


def _load_runtime(config_value: str, *, auto_approve: bool = False) -> Runtime:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    _configure_logging(config)
    handler: ApprovalHandler
    if auto_approve or config.approval.auto_approve:
        handler = AutoApprovalHandler()
    else:
        handler = ConsoleApprovalHandler()
    engine = WorkflowEngine(
        _build_oracle(config),
        config,
        registry=AgentRegistry.default(),
        approval_handler=handler,
    )
    return Runtime(config_path=config_path, config=config, engine=engine)


def _read_image(image_path: Path | None) -> str | None:
    if image_path is None:
        return None
    return base64.b64encode(image_path.read_bytes()).decode("ascii")


def _echo_plan(steps: list[Step]) -> None:
    for rank, batch in enumerate(group_by_rank(steps)):
        click.echo(f"Rank {rank}:")
        for step in batch:
            deps = f" <- {', '.join(step.dependencies)}" if step.dependencies else ""
            click.echo(f"  {step.id} [{step.action_type.value}] {step.label}{deps}")


@click.group()
def cli() -> None:
    """flowpilot CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_CHOICES), default=None)
@click.option("--config", "config_value", default="flowpilot.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")


@cli.command("plan")
@click.argument("goal")
@click.option("--image", "image_path", type=IMAGE_PATH, default=None)
@click.option("--config", "config_value", default="flowpilot.toml", show_default=True)
def plan_command(goal: str, image_path: Path | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        workflow = asyncio.run(runtime.engine.plan(goal, _read_image(image_path)))
    except WorkflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Plan for: {workflow.goal}")
    _echo_plan(workflow.steps)


@cli.command("run")
@click.argument("goal")
@click.option("--image", "image_path", type=IMAGE_PATH, default=None)
@click.option("--auto-approve", is_flag=True, default=False)
@click.option("--maintenance-scans", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--snapshot", "snapshot_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="flowpilot.toml", show_default=True)
def run_command(
    goal: str,
    image_path: Path | None,
    auto_approve: bool,
    maintenance_scans: int,
    snapshot_path: Path | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value, auto_approve=auto_approve)
    engine = runtime.engine
    try:
        summary = asyncio.run(
            engine.run(goal, _read_image(image_path), maintenance_scans=maintenance_scans)
        )
    except WorkflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if engine.phase is Phase.MAINTENANCE:
        engine.stop_maintenance()
        summary = engine.summary()

    if snapshot_path is not None:
        snapshot_path.write_text(
            json.dumps(engine.snapshot(), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        click.echo(f"Snapshot: {snapshot_path}")

    click.echo(f"Goal: {summary.goal}")
    click.echo(f"Phase: {summary.phase}")
    click.echo(f"Steps: {summary.completed_steps}/{summary.total_steps} completed")
    if summary.failed_steps:
        click.echo(f"Failed: {summary.failed_steps} (recovery steps: {summary.replanned_steps})")
    click.echo(f"Artifacts: {summary.artifacts}")
    click.echo(f"Tokens: {summary.tokens}")
    if summary.phase == Phase.FAILED.value:
        raise click.ClickException("Workflow failed.")


@cli.command("status")
@click.option("--config", "config_value", default="flowpilot.toml", show_default=True)
def status_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    payload = {"config": str(config_path), "exists": config_path.exists(), **config.to_dict()}
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("agents")
@click.option("--json", "as_json", is_flag=True, default=False)
def agents_command(as_json: bool) -> None:
    registry = AgentRegistry.default()
    if as_json:
        click.echo(json.dumps([agent.to_dict() for agent in registry], indent=2))
        return
    for agent in registry:
        capabilities = ", ".join(sorted(agent.capabilities)) or "-"
        click.echo(f"{agent.id:<11} {agent.role.value:<10} {capabilities}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_CHOICES))
@click.option("--config", "config_value", default="flowpilot.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
