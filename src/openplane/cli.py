from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from openplane.backends import build_backend
from openplane.config import CONFIG_FILE_NAME, OpenPlaneConfig, load_config, save_config
from openplane.connectors import ProcessConnectorBroker
from openplane.execution import StepExecutor, build_step_executor
from openplane.logging_utils import configure_logging
from openplane.models import (
    ConnectorDefinition,
    ConnectorStatus,
    NetworkAllowlist,
    PathGrant,
    RunEvent,
    RunStatus,
)
from openplane.paths import canonical_path, path_key
from openplane.planner import HeuristicPlanner
from openplane.runs import PlanExecutionError, PlanExecutionService
from openplane.sandbox.policy import NetworkPolicy
from openplane.state import JsonDocumentStore, StateStoreError, StateStores
from openplane.worker.host import worker_command

METRICS_DOCUMENT = "metrics"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: OpenPlaneConfig
    workspace_id: str
    stores: StateStores
    executor: StepExecutor
    service: PlanExecutionService


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _record_backend_event(documents: JsonDocumentStore, event: dict[str, Any]) -> None:
    def _updater(payload: Any) -> dict[str, Any]:
        metrics = payload if isinstance(payload, dict) else {}
        events = metrics.get("backend_events", [])
        if not isinstance(events, list):
            events = []
        event_payload = dict(event)
        event_payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
        events.append(event_payload)
        metrics["backend_events"] = events[-200:]
        if event.get("event") == "backend_retry":
            metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
        if event.get("event") == "backend_fallback_success":
            metrics["backend_fallback_count"] = int(metrics.get("backend_fallback_count", 0)) + 1
        return metrics

    documents.update_json(METRICS_DOCUMENT, _updater)


def _configure_logging(root: Path, config: OpenPlaneConfig) -> None:
    log_file = None
    if config.logging.file:
        log_file = Path(config.logging.file).expanduser()
        if not log_file.is_absolute():
            log_file = root / log_file
    configure_logging(config.logging.level, log_file, also_console=config.logging.console)


def _load_runtime(config_value: str, workspace: str | None = None) -> Runtime:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    base = config_path.parent
    _configure_logging(base, config)

    stores = StateStores.open(
        config.state_dir(base), lock_timeout_seconds=config.storage.lock_timeout_seconds
    )
    workspace_root = config.workspace_root(base)
    backend = build_backend(
        config.backend,
        working_directory=workspace_root,
        event_hook=lambda event: _record_backend_event(stores.documents, event),
    )
    executor = build_step_executor(config, stores, backend, working_directory=workspace_root)
    service = PlanExecutionService(
        planner=HeuristicPlanner(),
        plan_store=stores.plans,
        run_store=stores.runs,
        step_executor=executor,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        workspace_id=(workspace or config.workspace.id).strip(),
        stores=stores,
        executor=executor,
        service=service,
    )


def _echo_event(event: RunEvent) -> None:
    message = event.message
    if "\n" in message:
        message = "\n  " + message.replace("\n", "\n  ")
    click.echo(f"[{event.event_type.value}] {message}")


def _drive_run(runtime: Runtime, start: Callable[[], AsyncIterator[RunEvent]]) -> None:
    async def _consume() -> None:
        try:
            async for event in start():
                _echo_event(event)
        finally:
            await runtime.executor.close()

    try:
        recovered = runtime.service.recover_running_sessions()
        if recovered:
            click.echo(f"Recovered {recovered} interrupted run(s).")
        asyncio.run(_consume())
    except (PlanExecutionError, StateStoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    session = runtime.service.get_latest_run(runtime.workspace_id)
    if session is None:
        return
    click.echo(f"Run ID: {session.run_id}")
    click.echo(f"Status: {session.status.value} (next step {session.next_step_index + 1})")
    if session.status is RunStatus.FAILED:
        raise click.ClickException(session.failure_reason or "Run failed.")


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILE_NAME, show_default=True
)
workspace_option = click.option("--workspace", default=None, help="Workspace id override.")


@click.group()
def cli() -> None:
    """OpenPlane plan/run engine."""


cli.add_command(worker_command)


@cli.command("init")
@click.option("--workspace", default=None)
@click.option("--runner", type=click.Choice(["inline", "worker"]), default=None)
@click.option("--backend", type=click.Choice(["echo", "claude", "openai"]), default=None)
@config_option
def init_command(
    workspace: str | None, runner: str | None, backend: str | None, config_value: str
) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if workspace:
        config.workspace.id = workspace.strip()
    if runner:
        config.execution.step_runner = runner  # type: ignore[assignment]
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        config.backend.fallback = backend  # type: ignore[assignment]
    save_config(config_path, config)

    base = config_path.parent
    stores = StateStores.open(config.state_dir(base))
    stores.documents.state_dir.mkdir(parents=True, exist_ok=True)
    workspace_root = config.workspace_root(base)
    if not stores.policies.exists(config.workspace.id):
        policy = NetworkPolicy().with_default_allowlist(
            config.workspace.id,
            [PathGrant(str(workspace_root), allow_read=True, allow_write=True, allow_create=True)],
        )
        stores.policies.save(policy)

    click.echo(f"Initialized OpenPlane in {base}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Workspace: {config.workspace.id} ({workspace_root})")
    click.echo(f"Step runner: {config.execution.step_runner}")


@cli.command("plan")
@click.argument("prompt")
@workspace_option
@config_option
def plan_command(prompt: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = asyncio.run(runtime.service.create_plan(runtime.workspace_id, prompt))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Plan ID: {plan.plan_id}")
    click.echo(f"Risk: {plan.risk_level.value}")
    for index, step in enumerate(plan.steps, start=1):
        marker = "*" if step.significant_action else "-"
        click.echo(f"{index}. {marker} {step.title}")
    click.echo("Run `openplane approve` to approve this plan.")


@cli.command("approve")
@workspace_option
@config_option
def approve_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        plan = asyncio.run(runtime.service.approve_latest_plan(runtime.workspace_id))
    except PlanExecutionError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Approved plan {plan.plan_id} ({len(plan.steps)} steps)")


@cli.command("run")
@workspace_option
@config_option
def run_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    _drive_run(
        runtime,
        lambda: runtime.service.execute_latest_approved_plan(runtime.workspace_id),
    )


@cli.command("resume")
@workspace_option
@config_option
def resume_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    _drive_run(runtime, lambda: runtime.service.resume_latest_run(runtime.workspace_id))


@cli.command("recover")
@config_option
def recover_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        recovered = runtime.service.recover_running_sessions()
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Recovered {recovered} run(s).")


@cli.command("status")
@workspace_option
@config_option
def status_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    plan = runtime.service.get_latest_plan(runtime.workspace_id)
    session = runtime.service.get_latest_run(runtime.workspace_id)
    payload: dict[str, Any] = {
        "workspace_id": runtime.workspace_id,
        "plan": plan.to_dict() if plan else None,
        "run": session.to_dict() if session else None,
        "steps": (
            [state.to_dict() for state in runtime.service.get_run_step_states(session.run_id)]
            if session
            else []
        ),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.group("policy")
def policy_group() -> None:
    """Inspect and edit the workspace access policy."""


@policy_group.command("show")
@workspace_option
@config_option
def policy_show_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    policy = runtime.stores.policies.get(runtime.workspace_id)
    click.echo(json.dumps(policy.to_dict(), ensure_ascii=False, indent=2))


@policy_group.command("grant")
@click.argument("path")
@click.option("--read/--no-read", "allow_read", default=True, show_default=True)
@click.option("--write/--no-write", "allow_write", default=False, show_default=True)
@click.option("--create/--no-create", "allow_create", default=False, show_default=True)
@workspace_option
@config_option
def policy_grant_command(
    path: str,
    allow_read: bool,
    allow_write: bool,
    allow_create: bool,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value, workspace)
    canonical = canonical_path(path, runtime.root)
    policy = runtime.stores.policies.get(runtime.workspace_id)
    grants = [
        grant
        for grant in policy.path_grants
        if path_key(grant.absolute_path) != path_key(canonical)
    ]
    grants.append(PathGrant(canonical, allow_read, allow_write, allow_create))
    runtime.stores.policies.save(replace(policy, path_grants=tuple(grants)))
    requested = (("read", allow_read), ("write", allow_write), ("create", allow_create))
    flags = [name for name, enabled in requested if enabled]
    click.echo(f"Granted {', '.join(flags) or 'nothing'} on {canonical}")


@policy_group.command("revoke")
@click.argument("path")
@workspace_option
@config_option
def policy_revoke_command(path: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    canonical = canonical_path(path, runtime.root)
    policy = runtime.stores.policies.get(runtime.workspace_id)
    grants = tuple(
        grant
        for grant in policy.path_grants
        if path_key(grant.absolute_path) != path_key(canonical)
    )
    if len(grants) == len(policy.path_grants):
        raise click.ClickException(f"No grant found for {canonical}")
    runtime.stores.policies.save(replace(policy, path_grants=grants))
    click.echo(f"Revoked grant on {canonical}")


@policy_group.command("allow-host")
@click.argument("host")
@workspace_option
@config_option
def policy_allow_host_command(host: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    policy = runtime.stores.policies.get(runtime.workspace_id)
    hosts = set(policy.network_allowlist.allowed_hosts)
    hosts.add(host)
    runtime.stores.policies.save(
        replace(policy, network_allowlist=NetworkAllowlist.of(hosts))
    )
    click.echo(f"Allowed host {host.strip().casefold()}")


@cli.group("model")
def model_group() -> None:
    """Choose the reasoning model per workspace."""


@model_group.command("show")
@workspace_option
@config_option
def model_show_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    selected = runtime.stores.models.get(runtime.workspace_id)
    if selected:
        click.echo(f"{runtime.workspace_id}: {selected} (workspace selection)")
    elif runtime.config.backend.model:
        click.echo(f"{runtime.workspace_id}: {runtime.config.backend.model} (config default)")
    else:
        click.echo(f"{runtime.workspace_id}: backend default")


@model_group.command("set")
@click.argument("model")
@workspace_option
@config_option
def model_set_command(model: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    try:
        saved = runtime.stores.models.set(runtime.workspace_id, model)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Model for {runtime.workspace_id}: {saved}")


@model_group.command("clear")
@workspace_option
@config_option
def model_clear_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value, workspace)
    if not runtime.stores.models.clear(runtime.workspace_id):
        raise click.ClickException(f"No model selected for {runtime.workspace_id}")
    click.echo(f"Cleared model for {runtime.workspace_id}")


@cli.group("connector")
def connector_group() -> None:
    """Manage connector definitions and check that they start."""


def _parse_environment(pairs: tuple[str, ...]) -> dict[str, str]:
    environment: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        environment[key.strip()] = value
    return environment


@connector_group.command("add")
@click.argument("name")
@click.argument("command")
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE, repeatable.")
@click.option("--scope", "scopes", multiple=True, help="Allowed scope, repeatable.")
@config_option
def connector_add_command(
    name: str,
    command: str,
    env_pairs: tuple[str, ...],
    scopes: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    definition = ConnectorDefinition(
        name=name,
        command=command,
        environment=_parse_environment(env_pairs),
        allowed_scopes=scopes,
    )
    try:
        saved = runtime.stores.connectors.save(definition)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Saved connector {saved.name}")


@connector_group.command("list")
@config_option
def connector_list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    definitions = runtime.stores.connectors.list()
    if not definitions:
        click.echo("No connectors defined.")
        return
    for definition in definitions:
        scopes = ",".join(definition.allowed_scopes) or "-"
        click.echo(f"{definition.name}\t{definition.command}\tscopes={scopes}")


@connector_group.command("remove")
@click.argument("name")
@config_option
def connector_remove_command(name: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if not runtime.stores.connectors.remove(name):
        raise click.ClickException(f"Connector not found: {name}")
    click.echo(f"Removed connector {name}")


@connector_group.command("check")
@click.argument("name", required=False)
@config_option
def connector_check_command(name: str | None, config_value: str) -> None:
    """Start each connector, report its status, then stop it."""
    runtime = _load_runtime(config_value)
    if name:
        definition = runtime.stores.connectors.get(name)
        if definition is None:
            raise click.ClickException(f"Connector not found: {name}")
        definitions = [definition]
    else:
        definitions = runtime.stores.connectors.list()
    if not definitions:
        click.echo("No connectors defined.")
        return

    async def _check() -> list[ConnectorStatus]:
        broker = ProcessConnectorBroker(runtime.config.connectors.startup_grace_seconds)
        try:
            return [await broker.connect(definition) for definition in definitions]
        finally:
            await broker.close()

    failed = False
    for status in asyncio.run(_check()):
        if status.connected:
            click.echo(f"{status.name}: connected")
        else:
            failed = True
            click.echo(f"{status.name}: failed ({status.last_error})")
    if failed:
        raise click.ClickException("One or more connectors failed to start.")
