"""Typer-powered command line for ``n8nctl``.

Commands are thin: each builds (or reuses) the :class:`RuntimeContext`, opens
a structured log operation and delegates to the lifecycle controller or the
reconciler. Expected failures are :class:`~n8nctl.errors.N8nctlError`
subclasses and map onto the exit codes in :mod:`n8nctl.exit_codes`.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .allocator import ResourceAllocator
from .config import AppConfig, ConfigError, load_config
from .errors import HealthTimeoutError, N8nctlError
from .health import HealthGate
from .lifecycle import LifecycleController
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .preflight import check_dependencies
from .providers import ComposeExecutor, ConsoleInteraction, PostgresAdmin
from .reconcile import Reconciler
from .state import InstanceIdentity, InstanceKey, SharedInfrastructureState, StateStore

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to n8nctl's YAML config file.",
)
SERVER_OPTION = typer.Option(..., "--server", "-s", help="Server name of the instance.")
INSTANCE_OPTION = typer.Option(..., "--instance", "-i", help="Instance name.")
FOLLOW_OPTION = typer.Option(
    True,
    "--follow/--no-follow",
    help="Keep streaming new log lines.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-instance n8n deployment manager.

        Bring the shared Postgres/Redis tier up once with ``n8nctl shared up``,
        then create isolated instances with ``n8nctl instance up``.
        """
    ).strip(),
)
shared_app = typer.Typer(help="Manage the shared Postgres/Redis tier.")
instances_app = typer.Typer(help="Manage n8n instances.")

app.add_typer(shared_app, name="shared")
app.add_typer(instances_app, name="instance")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: StateStore
    locks: LockManager
    logger: StructuredLogger
    controller: LifecycleController
    reconciler: Reconciler
    required_binaries: tuple[str, ...] = ()


def _report_health_attempt(service: str, attempt: int, total: int, status: str | None) -> None:
    detail = f" ({status})" if status else ""
    console.print(f"Waiting for '{service}'... (attempt {attempt}/{total}){detail}")


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire the production collaborators described by *config*."""
    store = StateStore(config.state_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    interaction = ConsoleInteraction()
    compose = config.compose
    executor = ComposeExecutor(
        compose_file=compose.instance_file,
        compose_bin=compose.compose_bin,
        docker_bin=compose.docker_bin,
    )
    shared_executor = ComposeExecutor(
        compose_file=compose.shared_file,
        compose_bin=compose.compose_bin,
        docker_bin=compose.docker_bin,
    )
    postgres = config.postgres

    def admin_factory(shared: SharedInfrastructureState) -> PostgresAdmin:
        return PostgresAdmin(
            password=shared.postgres_password,
            host=postgres.host,
            user=postgres.user,
            database=postgres.database,
            psql_bin=postgres.psql_bin,
        )

    controller = LifecycleController(
        store=store,
        allocator=ResourceAllocator(
            base_port=config.ports.base,
            max_attempts=config.ports.max_attempts,
            cache_floor=config.cache.floor,
        ),
        executor=executor,
        shared_executor=shared_executor,
        admin_factory=admin_factory,
        health=HealthGate(
            executor=executor,
            max_attempts=config.health.max_attempts,
            interval=config.health.interval,
            on_attempt=_report_health_attempt,
        ),
        interaction=interaction,
        locks=locks,
        services=config.health.services,
        shared_project=compose.shared_project,
        container_prefix=compose.container_prefix,
        container_port=compose.container_port,
    )
    reconciler = Reconciler(
        store=store,
        inventory=executor,
        interaction=interaction,
        suffixes=config.volumes.suffixes,
    )
    return RuntimeContext(
        config=config,
        store=store,
        locks=locks,
        logger=logger,
        controller=controller,
        reconciler=reconciler,
        required_binaries=(compose.docker_bin, compose.compose_bin, postgres.psql_bin),
    )


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
        raise typer.Exit(code=exc.exit_code) from exc
    runtime = build_runtime(config)
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
        help="Show the n8nctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print debug diagnostics to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )

    if version:
        console.print(f"n8nctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]Error: {message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: N8nctlError) -> NoReturn:
    """Report an expected failure, surfacing service logs for health timeouts."""
    if isinstance(exc, HealthTimeoutError) and exc.logs:
        console.rule(f"logs: {exc.service}")
        console.print(exc.logs, markup=False, highlight=False)
        console.rule()
    _command_error(op, str(exc), rc=int(exc.exit_code))


def _preflight(runtime: RuntimeContext, op: OperationScope) -> None:
    try:
        check_dependencies(runtime.required_binaries)
    except N8nctlError as exc:
        _fail(op, exc)


def _instance_key(op: OperationScope, server: str, instance: str) -> InstanceKey:
    try:
        return InstanceKey(server.strip(), instance.strip())
    except N8nctlError as exc:
        _fail(op, exc)


def _mask(secret: str) -> str:
    return "*" * 8 if secret else ""


def _identity_summary(identity: InstanceIdentity) -> dict[str, object]:
    """Return the non-secret fields of *identity*."""
    return {
        "instance": identity.key.display,
        "port": identity.service_port,
        "db_name": identity.database_name,
        "db_user": identity.database_user,
        "redis_db": identity.cache_namespace_index,
    }


# ----------------------------------------------------------------------
# Shared tier
# ----------------------------------------------------------------------
@shared_app.command("up")
def shared_up(ctx: typer.Context) -> None:
    """Bring up the shared Postgres and Redis services."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("shared up", target={"kind": "shared"}) as op:
        _preflight(runtime, op)
        console.print("[blue]--- Bringing up Shared Infrastructure (Postgres, Redis) ---[/blue]")
        try:
            created = runtime.controller.shared_up(op=op)
        except N8nctlError as exc:
            _fail(op, exc)
        console.print("[green]Shared infrastructure is up.[/green]")
        op.success("Shared infrastructure is up.", changed=1 if created else 0)


@shared_app.command("down")
def shared_down(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        help="Proceed even while instance records still exist.",
    ),
) -> None:
    """Stop the shared tier and delete its volumes and credential."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "shared down",
        args={"force": force},
        target={"kind": "shared"},
    ) as op:
        _preflight(runtime, op)
        console.print("[blue]--- Bringing down Shared Infrastructure ---[/blue]")
        try:
            stopped = runtime.controller.shared_down(force=force, op=op)
        except N8nctlError as exc:
            _fail(op, exc)
        if not stopped:
            console.print("Cancelled.")
            op.success("Operator cancelled shared teardown.", changed=0)
            return
        console.print("[green]Shared infrastructure is down.[/green]")
        op.success("Shared infrastructure is down.", changed=1)


@shared_app.command("logs")
def shared_logs(ctx: typer.Context, follow: bool = FOLLOW_OPTION) -> None:
    """Stream logs from the shared services."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "shared logs",
        args={"follow": follow},
        target={"kind": "shared"},
    ) as op:
        _preflight(runtime, op)
        try:
            rc = runtime.controller.shared_logs(follow=follow)
        except N8nctlError as exc:
            _fail(op, exc)
        op.success("Streamed shared logs.", context={"rc": rc})


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------
@instances_app.command("up")
def instance_up(
    ctx: typer.Context,
    server: str = SERVER_OPTION,
    instance: str = INSTANCE_OPTION,
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        min=1,
        max=65535,
        help="Preferred starting port (default from config, 5678).",
    ),
    show_secrets: bool = typer.Option(
        False,
        "--show-secrets",
        help="Print the database password in clear text.",
    ),
) -> None:
    """Provision (if needed), start and health-check an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance up",
        args={"server": server, "instance": instance, "port": port},
        target={"kind": "instance", "name": f"{server}/{instance}"},
    ) as op:
        key = _instance_key(op, server, instance)
        _preflight(runtime, op)
        console.print(f"[blue]--- Bringing up instance: {key.unit_id} ---[/blue]")
        try:
            report = runtime.controller.activate(key, preferred_port=port, op=op)
        except N8nctlError as exc:
            _fail(op, exc)

        identity = report.identity
        if report.created:
            console.print("[green]Provisioned and saved new instance state.[/green]")
        console.print(
            f"[green]Instance '{key.unit_id}' is up and running on port "
            f"{identity.service_port}.[/green]"
        )
        password = identity.database_password if show_secrets else _mask(
            identity.database_password
        )
        console.print(
            f"[yellow]DB User: {identity.database_user} | DB Pass: {password} | "
            f"DB Name: {identity.database_name}[/yellow]",
            markup=True,
            highlight=False,
        )
        if not show_secrets:
            console.print("Re-run with --show-secrets to reveal the database password.")
        op.success(
            f"Instance '{key.display}' is up.",
            changed=1 if report.created else 0,
            context=_identity_summary(identity),
        )


@instances_app.command("update")
def instance_update(
    ctx: typer.Context,
    server: str = SERVER_OPTION,
    instance: str = INSTANCE_OPTION,
) -> None:
    """Pull newer images, recreate containers and re-verify health."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance update",
        args={"server": server, "instance": instance},
        target={"kind": "instance", "name": f"{server}/{instance}"},
    ) as op:
        key = _instance_key(op, server, instance)
        _preflight(runtime, op)
        console.print(f"[blue]--- Updating instance: {key.display} ---[/blue]")
        try:
            report = runtime.controller.update(key, op=op)
        except N8nctlError as exc:
            _fail(op, exc)
        console.print("[green]Instance update complete.[/green]")
        op.success(
            f"Instance '{key.display}' updated.",
            changed=1,
            context=_identity_summary(report.identity),
        )


@instances_app.command("down")
def instance_down(
    ctx: typer.Context,
    server: str = SERVER_OPTION,
    instance: str = INSTANCE_OPTION,
) -> None:
    """Stop an instance and reclaim its database, role, volumes and record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance down",
        args={"server": server, "instance": instance},
        target={"kind": "instance", "name": f"{server}/{instance}"},
    ) as op:
        key = _instance_key(op, server, instance)
        _preflight(runtime, op)
        console.print(f"[blue]--- Bringing down instance: {key.display} ---[/blue]")
        try:
            removed = runtime.controller.deactivate(key, op=op)
        except N8nctlError as exc:
            _fail(op, exc)
        if not removed:
            console.print("[yellow]Warning: No state found. Assuming instance is already down.[/yellow]")
            op.success("Instance already down.", changed=0)
            return
        console.print("[green]Instance cleanup complete.[/green]")
        op.success(f"Instance '{key.display}' removed.", changed=1)


@instances_app.command("status")
def instance_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show instances currently running according to the container engine."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"json": json_output},
        target={"kind": "instance", "scope": "running"},
    ) as op:
        _preflight(runtime, op)
        try:
            running = runtime.controller.enumerate_running()
        except N8nctlError as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(
                data={
                    "instances": [
                        {"instance": item.instance_id, "state": item.state, "port": item.port}
                        for item in running
                    ]
                }
            )
            op.success("Reported running instances as JSON.", changed=0)
            return

        if not running:
            console.print("[yellow]Warning: No running n8n instances found.[/yellow]")
            op.success("No running instances.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("Status")
        table.add_column("Port")
        for item in running:
            table.add_row(item.instance_id, item.state, "" if item.port is None else str(item.port))
        console.print(table)
        op.success("Reported running instances.", changed=0)


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List every known instance from the state directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "state"},
    ) as op:
        entries = [_identity_summary(identity) for identity in runtime.controller.enumerate_known()]

        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported known instances as JSON.", changed=0)
            return

        if not entries:
            console.print("[yellow]Warning: No known n8n instances found.[/yellow]")
            op.success("No known instances.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("Port")
        table.add_column("DB Name")
        table.add_column("Redis DB")
        for entry in entries:
            table.add_row(
                str(entry["instance"]),
                str(entry["port"]),
                str(entry["db_name"]),
                str(entry["redis_db"]),
            )
        console.print(table)
        op.success("Reported known instances.", changed=0)


@instances_app.command("prune")
def instance_prune(ctx: typer.Context) -> None:
    """Find volumes left behind by removed instances and offer to delete them."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance prune",
        target={"kind": "volume", "scope": "orphans"},
    ) as op:
        _preflight(runtime, op)
        console.print("[blue]--- Pruning orphaned instance volumes ---[/blue]")
        try:
            report = runtime.reconciler.prune(op=op)
        except N8nctlError as exc:
            _fail(op, exc)

        if not report.orphans:
            console.print("[green]No orphaned instance volumes found.[/green]")
            op.success("No orphaned volumes.", changed=0)
            return
        for name in report.deleted:
            console.print(f"[green]Volume '{name}' deleted.[/green]")
        op.success(
            f"Deleted {len(report.deleted)} of {len(report.orphans)} orphaned volume(s).",
            changed=len(report.deleted),
            context={"orphans": report.orphans, "kept": report.kept},
        )


@instances_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    server: str = SERVER_OPTION,
    instance: str = INSTANCE_OPTION,
    follow: bool = FOLLOW_OPTION,
) -> None:
    """Stream logs from every service of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance logs",
        args={"server": server, "instance": instance, "follow": follow},
        target={"kind": "instance", "name": f"{server}/{instance}"},
    ) as op:
        key = _instance_key(op, server, instance)
        _preflight(runtime, op)
        try:
            rc = runtime.controller.instance_logs(key, follow=follow)
        except N8nctlError as exc:
            _fail(op, exc)
        op.success("Streamed instance logs.", context={"rc": rc})


__all__ = ["RuntimeContext", "app", "build_runtime"]
