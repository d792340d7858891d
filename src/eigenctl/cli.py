"""Typer-powered command line for ``eigenctl``.

Commands operate on the data directory configured in ``config.yml`` (or
``EIGENCTL_DATA_DIR``). Every command runs inside a structured operation scope
so its outcome lands in ``operations.jsonl`` next to the human-readable log.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import httpx
import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .data import Backup, BackupId, DataDir, DataDirError, Instance
from .exit_codes import ExitCode, exit_code_for
from .filesystem import LocalFilesystem
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .monitoring import (
    GrafanaService,
    MonitoringError,
    MonitoringManager,
    NodeExporterService,
    PrometheusService,
    ScrapeConfig,
)
from .templates import TemplateEngine, TemplateError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to eigenctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

_HANDLED_ERRORS: tuple[type[BaseException], ...] = (
    DataDirError,
    MonitoringError,
    LockError,
    TemplateError,
    OSError,
    ValueError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        EigenLayer node instance registry CLI.

        Inspect registered node instances, seal backups and keep the local
        Prometheus/Grafana monitoring stack in step with running nodes.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    datadir: DataDir
    locks: LockManager
    logger: StructuredLogger
    prometheus: PrometheusService
    monitoring: MonitoringManager


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    fs = LocalFilesystem()
    locks = LockManager(config.lock_timeout)
    try:
        fs.makedirs(config.data_dir)
    except OSError as exc:
        console.print(f"[red]Cannot create data directory {config.data_dir}: {exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc
    datadir = DataDir(config.data_dir, fs, locks)
    logger = StructuredLogger(config.logs_dir)

    templates = TemplateEngine.with_overrides(None)
    client: httpx.Client | None = None
    if config.monitoring.reload_timeout is not None:
        client = httpx.Client(timeout=config.monitoring.reload_timeout)
        ctx.call_on_close(client.close)
    prometheus = PrometheusService(
        client=client,
        templates=templates,
        scrape_interval=config.monitoring.scrape_interval,
    )
    monitoring = MonitoringManager(
        datadir,
        [prometheus, GrafanaService(templates=templates), NodeExporterService()],
        overrides=config.monitoring.options,
    )

    runtime = RuntimeContext(
        config=config,
        datadir=datadir,
        locks=locks,
        logger=logger,
        prometheus=prometheus,
        monitoring=monitoring,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the eigenctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"eigenctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _failed(op: OperationScope, exc: BaseException) -> NoReturn:
    _command_error(op, str(exc), rc=exit_code_for(exc), errors=[type(exc).__name__])


def _instance_row(instance: Instance) -> dict[str, object]:
    data: dict[str, object] = {"id": instance.id, **instance.to_dict()}
    data["path"] = str(instance.path) if instance.path is not None else None
    return data


def _backup_row(backup: Backup) -> dict[str, object]:
    return {
        "id": str(backup.id),
        "instance_id": backup.instance_id,
        "created": backup.id.timestamp.isoformat(),
        "path": str(backup.path),
    }


def _target_row(job: ScrapeConfig) -> dict[str, Any]:
    targets = [target for static in job.static_configs for target in static.targets]
    labels: dict[str, str] = {}
    for static in job.static_configs:
        labels.update(static.labels or {})
    return {"job_name": job.job_name, "targets": targets, "labels": labels}


def _require_monitoring(runtime: RuntimeContext, op: OperationScope) -> None:
    if not runtime.monitoring.installed():
        _command_error(
            op,
            "Monitoring stack is not installed. Run `eigenctl monitoring init` first.",
            rc=ExitCode.VALIDATION,
        )
    try:
        runtime.monitoring.init_stack()
    except _HANDLED_ERRORS as exc:
        _failed(op, exc)


config_app = typer.Typer(help="Inspect the effective configuration.")
instances_app = typer.Typer(help="Inspect and remove registered node instances.")
backups_app = typer.Typer(help="Seal and list instance backups.")
monitoring_app = typer.Typer(help="Manage the monitoring stack and its scrape targets.")

app.add_typer(config_app, name="config")
app.add_typer(instances_app, name="instance")
app.add_typer(backups_app, name="backup")
app.add_typer(monitoring_app, name="monitoring")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "datadir"},
    ) as op:
        try:
            instances = runtime.datadir.list_instances()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        rows = [_instance_row(instance) for instance in instances]

        if json_output:
            console.print_json(data={"instances": rows})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Version")
        table.add_column("Profile")
        table.add_column("URL")

        if not rows:
            table.add_row("(none)", "", "", "")
        for row in rows:
            table.add_row(
                str(row["id"]),
                str(row["version"]),
                str(row["profile"]),
                str(row["url"]),
            )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show details for a single instance."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instance show",
        args={"instance_id": instance_id, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            instance = runtime.datadir.instance(instance_id)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        row = _instance_row(instance)

        if json_output:
            console.print_json(data=row)
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in row.items():
            if value in (None, ""):
                continue
            table.add_row(key.title(), str(value))

        console.print(table)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("remove")
def instance_remove(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to remove."),
) -> None:
    """Remove an instance directory while holding its lock."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instance remove",
        args={"instance_id": instance_id},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        try:
            instance = runtime.datadir.instance(instance_id)
            with instance.locked():
                op.set_lock_wait_ms(instance.lock_wait_ms)
                op.add_step("lock.acquire")
                runtime.datadir.remove_instance(instance_id)
                op.add_step("instance.remove")
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        console.print(f"Removed instance [bold]{instance_id}[/bold].")
        op.success(f"Removed instance {instance_id}.", changed=1)


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List sealed backups."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "datadir"},
    ) as op:
        try:
            backups = runtime.datadir.list_backups()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"backups": [_backup_row(backup) for backup in backups]})
            op.success("Reported backup list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Instance")
        table.add_column("Created")
        table.add_column("Path")

        if not backups:
            table.add_row("(none)", "", "", "")
        for backup in backups:
            row = _backup_row(backup)
            table.add_row(
                str(row["id"]),
                str(row["instance_id"]),
                str(row["created"]),
                str(row["path"]),
            )

        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("init")
def backup_init(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Id of the instance to back up."),
) -> None:
    """Seal a new, empty backup archive for an instance."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "backup init",
        args={"instance_id": instance_id},
        target={"kind": "backup", "instance": instance_id},
    ) as op:
        try:
            runtime.datadir.instance(instance_id)
            backup = runtime.datadir.init_backup(BackupId.new(instance_id))
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        console.print(f"Sealed backup [bold]{backup.id}[/bold] at {backup.path}.")
        op.success(
            f"Sealed backup {backup.id}.",
            changed=1,
            backups=[str(backup.path)],
        )


@monitoring_app.command("init")
def monitoring_init(ctx: typer.Context) -> None:
    """Create and configure the monitoring stack if it does not exist yet."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "monitoring init",
        target={"kind": "monitoring"},
    ) as op:
        already_installed = runtime.monitoring.installed()
        try:
            stack = runtime.monitoring.init_stack()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if already_installed:
            console.print(f"Monitoring stack already installed at {stack.path}.")
            op.success("Monitoring stack already installed.", changed=0)
            return
        console.print(f"Monitoring stack installed at [bold]{stack.path}[/bold].")
        op.success("Installed monitoring stack.", changed=1)


@monitoring_app.command("targets")
def monitoring_targets(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the scrape targets Prometheus is configured with."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "monitoring targets",
        args={"json": json_output},
        target={"kind": "monitoring", "service": "prometheus"},
    ) as op:
        _require_monitoring(runtime, op)
        try:
            jobs = runtime.prometheus.targets()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"targets": [_target_row(job) for job in jobs]})
            op.success("Reported scrape targets as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Job", style="bold")
        table.add_column("Targets")
        table.add_column("Labels")
        for job in jobs:
            row = _target_row(job)
            table.add_row(
                job.job_name,
                ", ".join(row["targets"]),
                ", ".join(f"{key}={value}" for key, value in row["labels"].items()),
            )
        console.print(table)
        op.success("Reported scrape targets.", changed=0)


@monitoring_app.command("add-target")
def monitoring_add_target(
    ctx: typer.Context,
    endpoint: str = typer.Argument(..., help="Metrics endpoint, e.g. http://10.0.0.5:9090."),
    instance_id: str = typer.Argument(..., help="Id of the instance behind the endpoint."),
) -> None:
    """Register an instance's metrics endpoint with Prometheus."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "monitoring add-target",
        args={"endpoint": endpoint, "instance_id": instance_id},
        target={"kind": "monitoring", "endpoint": endpoint},
    ) as op:
        _require_monitoring(runtime, op)
        try:
            known = runtime.datadir.has_instance(instance_id)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        if not known:
            _command_error(op, f"Instance not found: {instance_id}", rc=ExitCode.VALIDATION)
        try:
            added = runtime.monitoring.add_target(endpoint, instance_id)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if not added:
            console.print(f"Scrape target [bold]{endpoint}[/bold] is already registered.")
            op.success(f"Scrape target {endpoint} already registered.", changed=0)
            return
        console.print(f"Scrape target [bold]{endpoint}[/bold] registered for {instance_id}.")
        op.success(f"Registered scrape target {endpoint}.", changed=1)


@monitoring_app.command("remove-target")
def monitoring_remove_target(
    ctx: typer.Context,
    endpoint: str = typer.Argument(..., help="Metrics endpoint to unregister."),
) -> None:
    """Unregister a metrics endpoint from Prometheus."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "monitoring remove-target",
        args={"endpoint": endpoint},
        target={"kind": "monitoring", "endpoint": endpoint},
    ) as op:
        _require_monitoring(runtime, op)
        try:
            runtime.monitoring.remove_target(endpoint)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        console.print(f"Scrape target [bold]{endpoint}[/bold] removed.")
        op.success(f"Removed scrape target {endpoint}.", changed=1)


@monitoring_app.command("remove")
def monitoring_remove(ctx: typer.Context) -> None:
    """Delete the monitoring stack directory."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "monitoring remove",
        target={"kind": "monitoring"},
    ) as op:
        try:
            runtime.datadir.remove_monitoring_stack()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        console.print("Monitoring stack removed.")
        op.success("Removed monitoring stack.", changed=1)


__all__ = ["RuntimeContext", "app"]
