from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import click

from dispatcher.blockers import compute_blockers
from dispatcher.config import ConfigError, DispatcherConfig, load_config, save_config
from dispatcher.gateway import CliGatewayClient, HttpGatewayClient, SpawnGatewayClient
from dispatcher.models import INSTANCE_STATUSES, Blocker, WorkerInstance
from dispatcher.registry import HeartbeatValidationError, InstanceRegistry
from dispatcher.router import TaskRouter
from dispatcher.state import ActivityLog, JsonStateStore, StateError, TaskStore
from dispatcher.workers import WorkerDirectory

log = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: DispatcherConfig
    state: JsonStateStore
    tasks: TaskStore
    activity: ActivityLog
    gateway: SpawnGatewayClient
    router: TaskRouter


def _resolve_config_path(workspace: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace / config_path
    return config_path.resolve()


def _state_dir(workspace: Path, config: DispatcherConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = workspace / state_dir
    return state_dir


def _load_config_or_fail(config_path: Path) -> DispatcherConfig:
    try:
        return load_config(config_path)
    except (ConfigError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _build_gateway(config: DispatcherConfig, workspace: Path) -> SpawnGatewayClient:
    if config.gateway.kind == "cli":
        return CliGatewayClient(
            config.gateway.binary,
            run_timeout_seconds=config.gateway.run_timeout_seconds,
            working_directory=workspace,
        )
    return HttpGatewayClient(
        config.gateway.url,
        token=config.gateway.token,
        model=config.gateway.model or None,
        timeout_seconds=config.gateway.timeout_seconds,
        run_timeout_seconds=config.gateway.run_timeout_seconds,
    )


def _load_runtime(workspace: Path, config_path: Path) -> Runtime:
    config = _load_config_or_fail(config_path)
    try:
        directory = WorkerDirectory(config.workers.identities, config.workers.routes)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    state = JsonStateStore(_state_dir(workspace, config))
    tasks = TaskStore(state)
    activity = ActivityLog(state)
    gateway = _build_gateway(config, workspace)
    router = TaskRouter(
        tasks,
        gateway,
        directory,
        config.router,
        activity=activity,
        api_base_url=config.gateway.url if config.gateway.kind == "http" else None,
    )
    return Runtime(
        workspace=workspace,
        config_path=config_path,
        config=config,
        state=state,
        tasks=tasks,
        activity=activity,
        gateway=gateway,
        router=router,
    )


def _registry_kwargs(config: DispatcherConfig) -> dict[str, float]:
    return {
        "stale_timeout": config.registry.stale_timeout_seconds,
        "offline_timeout": config.registry.offline_timeout_seconds,
        "expiry": config.registry.expiry_seconds,
    }


def _with_registry(
    state: JsonStateStore, config: DispatcherConfig, action: Callable[[InstanceRegistry], T]
) -> T:
    """Load the persisted registry, apply ``action`` and write it back atomically."""
    result: dict[str, T] = {}

    def _updater(payload: Any) -> dict[str, Any]:
        registry = InstanceRegistry.from_dict(payload, **_registry_kwargs(config))
        result["value"] = action(registry)
        return registry.to_dict()

    state.update_json("instances", _updater, default={"instances": [], "agents": {}})
    return result["value"]


def _read_registry(state: JsonStateStore, config: DispatcherConfig) -> InstanceRegistry:
    payload = state.get_json("instances", default={"instances": [], "agents": {}})
    return InstanceRegistry.from_dict(payload, **_registry_kwargs(config))


def _store_blockers(state: JsonStateStore, blockers: list[Blocker], gateway: dict[str, Any]) -> None:
    state.set_json(
        "blockers",
        {
            "computed_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
            "gateway": gateway,
            "blockers": [blocker.to_dict() for blocker in blockers],
        },
    )


async def _analyze(
    runtime: Runtime, instances: list[WorkerInstance], now: float
) -> tuple[list[Blocker], dict[str, Any]]:
    gateway_status = await runtime.gateway.status()
    blockers = compute_blockers(
        gateway_status.health,
        instances,
        datetime.fromtimestamp(now, UTC),
        workspace=str(runtime.workspace),
    )
    return blockers, gateway_status.to_dict()


async def _maintain(runtime: Runtime, now: float) -> list[Blocker]:
    """Refresh registry liveness, prune expired instances and recompute blockers."""

    def _refresh_and_prune(registry: InstanceRegistry) -> list[WorkerInstance]:
        registry.refresh(now)
        registry.prune(now)
        return registry.all(now)

    instances = _with_registry(runtime.state, runtime.config, _refresh_and_prune)
    blockers, gateway = await _analyze(runtime, instances, now)
    _store_blockers(runtime.state, blockers, gateway)
    for blocker in blockers:
        log.info("Blocker [%s] %s", blocker.severity, blocker.title)
    return blockers


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _config_option(func):
    return click.option(
        "--config", "config_value", default="dispatcher.toml", show_default=True
    )(func)


def _runtime_from_cwd(config_value: str) -> Runtime:
    workspace = Path.cwd().resolve()
    return _load_runtime(workspace, _resolve_config_path(workspace, config_value))


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging] level from the config file.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Task dispatcher for worker agent pools."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _configure_logging(config: DispatcherConfig) -> None:
    ctx = click.get_current_context(silent=True)
    override = None
    if ctx is not None and ctx.find_root().obj:
        override = ctx.find_root().obj.get("log_level")
    level = str(override or config.logging.level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@cli.command("init")
@_config_option
def init_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace, config_value)
    config = _load_config_or_fail(config_path)
    save_config(config_path, config)
    state = JsonStateStore(_state_dir(workspace, config))
    if not state.get_json("tasks", default={}):
        state.set_json("tasks", {"tasks": []})

    click.echo(f"Initialized dispatcher in {workspace}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {state.state_dir}")
    click.echo(f"Gateway: {config.gateway.kind} {config.gateway.url}")


@cli.command("run")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many poll cycles.")
@_config_option
def run_command(max_ticks: int | None, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    _configure_logging(runtime.config)

    async def _run() -> int:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        async def _on_tick(now: float) -> None:
            await _maintain(runtime, now)

        try:
            return await runtime.router.run(stop, max_ticks=max_ticks, on_tick=_on_tick)
        finally:
            await runtime.gateway.aclose()

    log.info("Router %s starting", runtime.router.router_id)
    try:
        ticks = asyncio.run(_run())
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Stopped after {ticks} tick(s).")


@cli.command("poll")
@_config_option
def poll_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    _configure_logging(runtime.config)

    async def _poll() -> dict[str, Any]:
        try:
            result = await runtime.router.poll()
            await runtime.router.drain()
            blockers = await _maintain(runtime, time.time())
        finally:
            await runtime.gateway.aclose()
        payload: dict[str, Any] = result.to_dict()
        payload["blockers"] = [blocker.id for blocker in blockers]
        return payload

    try:
        payload = asyncio.run(_poll())
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


@cli.command("status")
@_config_option
def status_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    payload = runtime.router.status()
    payload["instances"] = _read_registry(runtime.state, runtime.config).stats()
    _echo_json(payload)


@cli.command("requeue")
@click.argument("task_id")
@_config_option
def requeue_command(task_id: str, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    task = runtime.router.requeue(task_id)
    if task is None:
        existing = runtime.tasks.get(task_id)
        if existing is None:
            raise click.ClickException(f"Task not found: {task_id}")
        raise click.ClickException(f"Task {task_id} is {existing.lane}; only blocked tasks can be re-queued.")
    click.echo(f"Re-queued {task.id} with a fresh retry budget.")


@cli.command("heartbeat")
@click.option("--instance-id", default=None)
@click.option("--agent-id", default=None)
@click.option("--address", default=None)
@click.option("--status", "reported_status", default=None)
@click.option("--current-task", default=None)
@click.option("--payload", "payload_json", default=None, help="Raw heartbeat JSON object.")
@_config_option
def heartbeat_command(
    instance_id: str | None,
    agent_id: str | None,
    address: str | None,
    reported_status: str | None,
    current_task: str | None,
    payload_json: str | None,
    config_value: str,
) -> None:
    if payload_json is not None:
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"Heartbeat payload is not valid JSON: {exc}") from exc
    else:
        payload = {
            "instance_id": instance_id,
            "agent_id": agent_id,
            "address": address,
            "status": reported_status,
            "current_task": current_task,
        }

    workspace = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(workspace, config_value))
    state = JsonStateStore(_state_dir(workspace, config))
    try:
        instance = _with_registry(state, config, lambda registry: registry.ingest(payload))
    except HeartbeatValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Heartbeat recorded for {instance.instance_id} ({instance.agent_id})")


@cli.command("instances")
@click.option("--status", "status_filter", type=click.Choice(list(INSTANCE_STATUSES)), default=None)
@_config_option
def instances_command(status_filter: str | None, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(workspace, config_value))
    registry = _read_registry(JsonStateStore(_state_dir(workspace, config)), config)
    now = time.time()
    rows = registry.snapshot(now)
    if status_filter:
        rows = [row for row in rows if row["status"] == status_filter]
    if not rows:
        click.echo("No instances.")
        return
    for row in rows:
        click.echo(
            f"{row['instance_id']:<16} {row['status']:<8} "
            f"health={row['health_score']:.2f} agents={','.join(row['agents'])}"
        )


@cli.command("failover")
@click.argument("instance_id")
@_config_option
def failover_command(instance_id: str, config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(workspace, config_value))
    registry = _read_registry(JsonStateStore(_state_dir(workspace, config)), config)
    now = time.time()
    candidates = registry.find_failover_candidates(instance_id, now)
    if not candidates:
        click.echo(f"No online failover candidates for {instance_id}.")
        return
    for candidate in candidates:
        click.echo(
            f"{candidate.instance_id} health={registry.compute_health(candidate, now):.2f}"
        )


@cli.command("prune")
@_config_option
def prune_command(config_value: str) -> None:
    workspace = Path.cwd().resolve()
    config = _load_config_or_fail(_resolve_config_path(workspace, config_value))
    state = JsonStateStore(_state_dir(workspace, config))
    try:
        removed = _with_registry(state, config, lambda registry: registry.prune())
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        click.echo("Nothing to prune.")
        return
    click.echo(f"Pruned {len(removed)} instance(s): {', '.join(sorted(removed))}")


@cli.command("gateway-status")
@_config_option
def gateway_status_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)

    async def _status() -> dict[str, Any]:
        try:
            return (await runtime.gateway.status()).to_dict()
        finally:
            await runtime.gateway.aclose()

    _echo_json(asyncio.run(_status()))


@cli.command("blockers")
@_config_option
def blockers_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)

    async def _compute() -> list[Blocker]:
        try:
            now = time.time()
            instances = _read_registry(runtime.state, runtime.config).all(now)
            blockers, _ = await _analyze(runtime, instances, now)
            return blockers
        finally:
            await runtime.gateway.aclose()

    try:
        blockers = asyncio.run(_compute())
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json([blocker.to_dict() for blocker in blockers])
