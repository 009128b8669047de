"""Typer-powered command line interface for ``quadctl``.

Every command runs inside a structured-log operation and exits with one of
the codes in :class:`quadctl.exit_codes.ExitCode`. Errors print in red and
warnings in yellow so blocking and advisory output are never confused.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .backups import BackupManager, RestoreError
from .batch import BatchResult, ItemStatus
from .config import ALLOWED_SCOPES, AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers import (
    Differ,
    DifflibDiffer,
    GitSourceFetcher,
    PodmanVolumeStore,
    PortScanner,
    ServiceController,
    SocketPortScanner,
    SourceFetcher,
    SystemdProvider,
    VolumeStore,
)
from .staging import DIFF_STATUSES, StagingError, StagingManager
from .state.manifests import ManifestError
from .validation import ValidationReport, Validator, summarize

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to quadctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)
NAMES_ARGUMENT = typer.Argument(
    ...,
    help="Unit-set names, or 'all'.",
    show_default=False,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Quadlet unit-set lifecycle manager.

        Stage candidate unit files from their sources, review the differences,
        apply them with an automatic backup, and restore earlier snapshots
        including their named volumes.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    fetcher: SourceFetcher
    services: ServiceController
    volumes: VolumeStore
    port_scanner: PortScanner
    differ: Differ = field(default_factory=DifflibDiffer)
    sleep: Callable[[float], None] | None = None

    def validator(self, progress: Callable[[str], None] | None = None) -> Validator:
        """Return a validator wired to the live system."""
        return Validator(self.port_scanner, self.volumes, progress)

    def backup_manager(self) -> BackupManager:
        """Return a backup manager bound to this runtime."""
        return BackupManager(
            config=self.config,
            services=self.services,
            volumes=self.volumes,
            locks=self.locks,
        )

    def staging_manager(self, progress: Callable[[str], None] | None = None) -> StagingManager:
        """Return a staging manager bound to this runtime."""
        manager = StagingManager(
            config=self.config,
            fetcher=self.fetcher,
            validator=self.validator(progress),
            backups=self.backup_manager(),
            services=self.services,
            differ=self.differ,
            locks=self.locks,
        )
        if self.sleep is not None:
            manager.sleep = self.sleep
        return manager


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
        console.print(f"[red]Configuration error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        fetcher=GitSourceFetcher(git_bin=config.git.git_bin),
        services=SystemdProvider(systemctl_bin=config.systemd.systemctl_bin),
        volumes=PodmanVolumeStore(podman_bin=config.podman.podman_bin),
        port_scanner=SocketPortScanner(ss_bin=config.ports.ss_bin),
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
        help="Show the quadctl version and exit.",
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
            console.print(f"quadctl {get_version()}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    backups: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), backups=backups, rc=int(rc))
    raise typer.Exit(code=int(rc))


def _progress(line: str) -> None:
    console.print(f"  {escape(line)}", highlight=False)


# Rendering -------------------------------------------------------------
_STATUS_STYLES = {
    ItemStatus.OK: "green",
    ItemStatus.SKIPPED: "yellow",
    ItemStatus.FAILED: "red",
}


def _render_batch(batch: BatchResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Unit-set", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for item in batch.items:
        style = _STATUS_STYLES[item.status]
        table.add_row(item.name, f"[{style}]{item.status.value}[/{style}]", escape(item.message))
    console.print(table)

    for item in batch.items:
        for warning in item.warnings:
            console.print(
                f"[yellow]warning[/yellow] {item.name}: {escape(warning)}", highlight=False
            )
    for item in batch.failed:
        for error in item.errors:
            console.print(f"[red]error[/red] {item.name}: {escape(error)}", highlight=False)

    summary = (
        f"{batch.operation}: {len(batch.succeeded)} ok, "
        f"{len(batch.skipped)} skipped, {len(batch.failed)} failed"
    )
    console.print(f"[{'green' if batch.ok else 'red'}]{summary}[/]")


def _batch_exit_code(batch: BatchResult) -> ExitCode:
    if batch.ok:
        return ExitCode.OK
    if all(item.detail.get("error_kind") == "validation" for item in batch.failed):
        return ExitCode.VALIDATION
    return ExitCode.PROVIDER


def _finish_batch(op: OperationScope, batch: BatchResult) -> None:
    _render_batch(batch)
    op.set_lock_wait_ms(batch.lock_wait_ms)
    context = {"batch": batch.to_dict()}
    changed = len(batch.succeeded)
    backups = batch.backup_ids
    if batch.ok:
        if batch.warnings:
            op.warning(
                f"{batch.operation} completed with warnings.",
                warnings=batch.warnings,
                changed=changed,
                backups=backups,
                context=context,
            )
        else:
            op.success(
                f"{batch.operation} completed.",
                changed=changed,
                backups=backups,
                context=context,
            )
        return
    code = _batch_exit_code(batch)
    op.error(
        f"{batch.operation} failed for {len(batch.failed)} unit-set(s).",
        errors=[f"{item.name}: {item.message}" for item in batch.failed],
        warnings=batch.warnings,
        changed=changed,
        backups=backups,
        context=context,
        rc=int(code),
    )
    raise typer.Exit(code=int(code))


def _render_report(report: ValidationReport) -> None:
    for issue in report.errors:
        console.print(f"[red]error[/red] {escape(str(issue))}", highlight=False)
    for issue in report.warnings:
        console.print(f"[yellow]warning[/yellow] {escape(str(issue))}", highlight=False)
    if report.dependencies:
        table = Table(show_header=True, header_style="bold magenta", title="Dependencies")
        table.add_column("Unit")
        table.add_column("Relation")
        table.add_column("Target")
        for edge in report.dependencies:
            table.add_row(edge.source_unit, edge.relation, edge.target_unit)
        console.print(table)
    status = "[green]valid[/green]" if report.ok else "[red]invalid[/red]"
    console.print(
        f"{status}: {len(report.units)} unit file(s), {len(report.errors)} error(s), "
        f"{len(report.warnings)} warning(s)"
    )


# Commands ----------------------------------------------------------------
@app.command()
def validate(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Directory containing quadlet files."),
    no_conflicts: bool = typer.Option(
        False,
        "--no-conflicts",
        help="Skip live port and volume conflict checks.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate a directory of quadlet files without staging it."""
    runtime = _get_runtime(ctx)
    args = {"path": str(path), "no_conflicts": no_conflicts, "json": json_output}
    with runtime.logger.operation(
        "validate",
        args=args,
        target={"kind": "path", "path": str(path)},
    ) as op:
        validator = runtime.validator(None if json_output else _progress)
        report = validator.validate(path, check_conflicts=not no_conflicts)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_report(report)
        counts = dict(summarize(report))
        if not report.ok:
            op.error(
                "Validation failed.",
                errors=[str(issue) for issue in report.errors],
                warnings=[str(issue) for issue in report.warnings],
                context=counts,
                rc=int(ExitCode.VALIDATION),
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if report.warnings:
            op.warning(
                "Validation passed with warnings.",
                warnings=[str(issue) for issue in report.warnings],
                context=counts,
            )
        else:
            op.success("Validation passed.", context=counts)


@app.command()
def stage(ctx: typer.Context, names: list[str] = NAMES_ARGUMENT) -> None:
    """Fetch and validate unit-sets into the staging area."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stage",
        args={"names": names},
        target={"kind": "unit-sets", "names": names},
    ) as op:
        manager = runtime.staging_manager(_progress)
        try:
            batch = manager.stage(names)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, batch)


def staged(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List staged unit-sets awaiting apply or discard."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "staged",
        args={"json": json_output},
        target={"kind": "staging"},
    ) as op:
        entries = runtime.staging_manager().list_staged()
        if json_output:
            console.print_json(data=[entry.to_dict() for entry in entries])
            op.success("Rendered staged unit-sets as JSON.")
            return
        if not entries:
            console.print("No unit-sets are staged.")
            op.success("No staged unit-sets.")
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Unit-set", style="bold")
        table.add_column("Source")
        table.add_column("Branch")
        table.add_column("Staged at")
        table.add_column("Files", justify="right")
        for entry in entries:
            manifest = entry.manifest
            if manifest is None or entry.orphan:
                reason = entry.error or "orphaned staging artifacts"
                table.add_row(entry.name, f"[red]{reason}[/red]", "", "", "")
                continue
            table.add_row(
                entry.name,
                manifest.source,
                manifest.branch,
                manifest.staged_at,
                str(len(manifest.files)),
            )
        console.print(table)
        op.success("Rendered staged unit-sets.", context={"count": len(entries)})


app.command("staged")(staged)
app.command("list", help="Alias for 'staged'.")(staged)


@app.command()
def diff(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Staged unit-set to compare."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show differences between a staged unit-set and its installation."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diff",
        args={"name": name, "json": json_output},
        target={"kind": "unit-set", "name": name},
    ) as op:
        try:
            result = runtime.staging_manager().diff(name)
        except (ConfigError, StagingError, ManifestError) as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        if json_output:
            console.print_json(data=result.to_dict())
        elif not result.installed:
            console.print(f"[bold]{name}[/bold] is not installed; every staged file is new:")
            for entry in result.files:
                console.print(f"  [green]+ {escape(entry.path)}[/green]", highlight=False)
        elif not result.has_changes:
            console.print(f"No differences between staged and installed '{name}'.")
        else:
            for entry in result.files:
                console.print(f"[bold]{entry.status}[/bold] {escape(entry.path)}", highlight=False)
                console.print(entry.diff, markup=False, highlight=False, end="")
            if result.services_affected:
                console.print(f"Services affected: {', '.join(result.services_affected)}")
        counts = {status: len(result.by_status(status)) for status in DIFF_STATUSES}
        if not json_output and result.has_changes:
            console.print(", ".join(f"{count} {status}" for status, count in counts.items()))
        op.success(
            "Diff rendered." if result.has_changes else "No differences.",
            context={"files": len(result.files), "installed": result.installed, **counts},
        )


@app.command()
def apply(ctx: typer.Context, names: list[str] = NAMES_ARGUMENT) -> None:
    """Install staged unit-sets, backing up current installations first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"names": names},
        target={"kind": "unit-sets", "names": names},
    ) as op:
        try:
            batch = runtime.staging_manager().apply(names)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        for item in batch.items:
            backup_id = item.detail.get("backup_id")
            if backup_id:
                op.add_step("backup.pre-apply", detail=f"{item.name}:{backup_id}")
        _finish_batch(op, batch)


@app.command()
def discard(ctx: typer.Context, names: list[str] = NAMES_ARGUMENT) -> None:
    """Remove staged artifacts without touching installed unit-sets."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "discard",
        args={"names": names},
        target={"kind": "unit-sets", "names": names},
    ) as op:
        try:
            batch = runtime.staging_manager().discard(names)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, batch)


@app.command()
def backup(
    ctx: typer.Context,
    names: list[str] = NAMES_ARGUMENT,
    scope: str | None = typer.Option(
        None,
        "--scope",
        help="Only back up unit-sets in this scope (user or system).",
    ),
) -> None:
    """Snapshot installed unit-sets and their named volumes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup",
        args={"names": names, "scope": scope},
        target={"kind": "unit-sets", "names": names},
    ) as op:
        if scope is not None and scope not in ALLOWED_SCOPES:
            allowed = ", ".join(sorted(ALLOWED_SCOPES))
            _command_error(op, f"Unsupported scope '{scope}'. Allowed: {allowed}.")
        try:
            batch = runtime.backup_manager().backup(names, scope=scope)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        _finish_batch(op, batch)


def backups(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Only list backups of this unit-set."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List backup snapshots, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backups",
        args={"name": name, "json": json_output},
        target={"kind": "backups", "name": name},
    ) as op:
        snapshots = runtime.backup_manager().list_backups(name)
        if json_output:
            console.print_json(data=[snapshot.to_dict() for snapshot in snapshots])
            op.success("Rendered backups as JSON.")
            return
        if not snapshots:
            console.print("No backups found.")
            op.success("No backups found.")
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Unit-set", style="bold")
        table.add_column("Backup ID")
        table.add_column("Backed up at")
        table.add_column("Reason")
        table.add_column("Volumes", justify="right")
        for snapshot in snapshots:
            manifest = snapshot.manifest
            table.add_row(
                snapshot.name,
                snapshot.backup_id,
                snapshot.backed_up_at or "[yellow]unknown[/yellow]",
                manifest.reason if manifest else "",
                str(len(snapshot.volume_archives())),
            )
        console.print(table)
        op.success("Rendered backups.", context={"count": len(snapshots)})


app.command("backups")(backups)
app.command("list-backups", help="Alias for 'backups'.")(backups)


@app.command()
def restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Unit-set to restore."),
    backup_id: str | None = typer.Argument(None, help="Snapshot id (defaults to the newest)."),
) -> None:
    """Replace a unit-set's files and volumes with a backup snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"name": name, "backup_id": backup_id},
        target={"kind": "unit-set", "name": name},
    ) as op:
        try:
            outcome = runtime.backup_manager().restore(name, backup_id)
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except RestoreError as exc:
            if exc.partial:
                console.print(
                    f"[bold red]PARTIAL RESTORE:[/bold red] '{name}' may be stopped with a "
                    "partially restored state."
                )
            elif exc.rolled_back:
                console.print(
                    f"[yellow]Rolled back:[/yellow] '{name}' was returned to its state "
                    "before the restore."
                )
            kept = [f"{name}:{exc.safety_backup_id}"] if exc.safety_backup_id else []
            if kept:
                op.add_step("backup.pre-restore", status="kept", detail=kept[0])
            rc = ExitCode.VALIDATION if exc.not_found else ExitCode.PROVIDER
            _command_error(
                op,
                str(exc),
                rc=rc,
                errors=[str(exc), *(f"volume {v}" for v in exc.failed_volumes)],
                backups=kept,
            )
        op.set_lock_wait_ms(outcome.lock_wait_ms)
        console.print(
            f"[green]Restored '{name}' from {outcome.backup_id}[/green]: "
            f"{len(outcome.files)} file(s), {len(outcome.volumes)} volume(s), "
            f"{len(outcome.services)} service(s) started."
        )
        op.success("Restore complete.", changed=len(outcome.files), context=outcome.to_dict())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
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
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
