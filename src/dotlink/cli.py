"""Command-line interface for dotlink."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .client import Client
from .config import load_config, render_config
from .errors import EXIT_ERROR, EXIT_INVALID_ARGUMENTS, EXIT_OK, ConflictError, DotlinkError, exit_code_for
from .models import (
    ConflictPolicy,
    DiagnosticReport,
    ExecutionResult,
    HealthStatus,
    OrphanGroup,
    PackageStatus,
    ScanMode,
    Severity,
    TriageChoice,
    TriageResult,
)

app = typer.Typer(help="Manage dotfiles as symlinks into package directories", no_args_is_help=True)
doctor_app = typer.Typer(help="Check link health and find unmanaged symlinks")
app.add_typer(doctor_app, name="doctor")

console = Console()
err_console = Console(stderr=True)


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    TABLE = "table"


@dataclass
class CliState:
    config: Path | None = None
    package_dir: Path | None = None
    target_dir: Path | None = None
    dry_run: bool = False
    conflict_policy: ConflictPolicy | None = None
    output: OutputFormat = OutputFormat.TEXT


def _configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, markup=False)],
        force=True,
    )


def _state(ctx: typer.Context) -> CliState:
    state = ctx.find_object(CliState)
    return state if state is not None else CliState()


def _load_client(ctx: typer.Context) -> Client:
    state = _state(ctx)
    config = load_config(
        state.config,
        package_dir=state.package_dir,
        target_dir=state.target_dir,
        dry_run=True if state.dry_run else None,
        conflict_policy=state.conflict_policy,
    )
    return Client(config)


def _handle_error(exc: Exception) -> NoReturn:
    if isinstance(exc, typer.Exit):
        raise exc
    if isinstance(exc, ConflictError):
        console.print(f"[red]error:[/red] {escape(exc.message)}")
        for conflict in exc.conflicts:
            console.print(f"  [red]•[/red] {escape(conflict.path)}: {escape(conflict.details)}")
            for suggestion in conflict.suggestions:
                console.print(f"    [yellow]hint:[/yellow] {escape(suggestion)}")
        if exc.suggestion:
            console.print(f"[yellow]hint:[/yellow] {escape(exc.suggestion)}")
        raise typer.Exit(code=exit_code_for(exc))
    if isinstance(exc, DotlinkError):
        console.print(f"[red]error:[/red] {escape(exc.message)}")
        if exc.suggestion:
            console.print(f"[yellow]hint:[/yellow] {escape(exc.suggestion)}")
        raise typer.Exit(code=exit_code_for(exc))
    if isinstance(exc, PermissionError):
        console.print("[red]error:[/red] Permission denied.")
        console.print("[yellow]hint:[/yellow] Check write access to the target and package directories.")
        raise typer.Exit(code=exit_code_for(exc))
    raise exc


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: _to_jsonable(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_jsonable(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _print_json(value: Any) -> None:
    typer.echo(json.dumps(_to_jsonable(value), indent=2, sort_keys=True))


# ---------------------------------------------------------------------------
# Formatters


def _format_result(state: CliState, result: ExecutionResult, summary: str) -> None:
    if state.output is OutputFormat.JSON:
        _print_json(result)
        return
    if result.dry_run:
        console.print(f"[yellow]Dry run:[/yellow] {len(result.planned)} operation(s) would run")
        rows = result.planned
    else:
        console.print(f"[green]{escape(summary)}[/green] ({len(result.executed)} operation(s))")
        rows = result.executed
    if state.output is OutputFormat.TABLE and rows:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Operation", overflow="fold")
        for index, row in enumerate(rows, start=1):
            table.add_row(str(index), row)
        console.print(table)
    elif result.dry_run:
        for row in rows:
            console.print(f"  {escape(row)}")


def _format_status(state: CliState, statuses: list[PackageStatus]) -> None:
    if state.output is OutputFormat.JSON:
        _print_json(statuses)
        return
    if not statuses:
        console.print("[yellow]No packages are installed.[/yellow]")
        return
    if state.output is OutputFormat.TEXT:
        for item in statuses:
            health = "[green]ok[/green]" if item.healthy else f"[red]unhealthy[/red] ({escape(item.reason or '')})"
            console.print(f"{escape(item.name)}  {item.source.value}  {item.link_count} link(s)  {health}")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Package")
    table.add_column("Source")
    table.add_column("Links", justify="right")
    table.add_column("Installed")
    table.add_column("Health", overflow="fold")
    for item in statuses:
        health = "[green]ok[/green]" if item.healthy else f"[red]{escape(item.reason or 'unhealthy')}[/red]"
        table.add_row(
            item.name,
            item.source.value,
            str(item.link_count),
            item.installed_at.strftime("%Y-%m-%d %H:%M"),
            health,
        )
    console.print(table)


_SEVERITY_STYLES = {Severity.ERROR: "red", Severity.WARNING: "yellow", Severity.INFO: "cyan"}
_HEALTH_STYLES = {HealthStatus.OK: "green", HealthStatus.WARNINGS: "yellow", HealthStatus.ERRORS: "red"}


def _format_report(state: CliState, report: DiagnosticReport) -> None:
    if state.output is OutputFormat.JSON:
        _print_json(report)
        return
    style = _HEALTH_STYLES[report.overall]
    stats = report.stats
    console.print(f"Health: [{style}]{report.overall.value}[/{style}]")
    console.print(
        f"{stats.managed_links} managed link(s), {stats.broken_links} broken, {stats.orphaned_links} orphaned"
    )
    if state.output is OutputFormat.TABLE and report.issues:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Severity")
        table.add_column("Type")
        table.add_column("Path", overflow="fold")
        table.add_column("Message", overflow="fold")
        for issue in report.issues:
            colour = _SEVERITY_STYLES[issue.severity]
            table.add_row(f"[{colour}]{issue.severity.value}[/{colour}]", issue.type.value, issue.path, issue.message)
        console.print(table)
    else:
        for issue in report.issues:
            colour = _SEVERITY_STYLES[issue.severity]
            console.print(
                f"[{colour}]{issue.severity.value}[/{colour}] {issue.type.value} "
                f"{escape(issue.path)}: {escape(issue.message)}"
            )
            if issue.suggestion:
                console.print(f"    [yellow]hint:[/yellow] {escape(issue.suggestion)}")
    if report.truncated:
        console.print("[yellow]Issue limit reached; results are truncated.[/yellow]")


def _format_triage(state: CliState, result: TriageResult) -> None:
    if state.output is OutputFormat.JSON:
        _print_json(result)
        return
    prefix = "[yellow]Dry run:[/yellow] " if result.dry_run else ""
    console.print(
        f"{prefix}ignored {result.ignored} link(s), added {len(result.patterns_added)} pattern(s), "
        f"adopted {result.adopted}, skipped {result.skipped}"
    )
    for error in result.errors:
        console.print(f"  [red]•[/red] {escape(error.operation_id)}: {escape(error.message)}")


def _prompt_group(group: OrphanGroup) -> TriageChoice:
    console.print(
        f"\n[bold]{escape(group.description)}[/bold] ({group.category}, {group.confidence.value} confidence): "
        f"{len(group.orphans)} link(s)"
    )
    for orphan in group.orphans[:10]:
        console.print(f"  {escape(orphan.path)} -> {escape(orphan.target)}")
    while True:
        answer = typer.prompt("Decision [ignore/pattern/adopt:<package>/skip]", default="skip")
        try:
            return TriageChoice.parse(answer)
        except ValueError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")


# ---------------------------------------------------------------------------
# Commands


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotlink.toml or its directory"),
    package_dir: Path | None = typer.Option(None, "--dir", "-d", help="Package directory"),
    target_dir: Path | None = typer.Option(None, "--target", "-t", help="Target directory (default: home)"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show what would happen without changing anything"),
    on_conflict: ConflictPolicy | None = typer.Option(
        None, "--on-conflict", help="What to do with files already at a link location"
    ),
    output: OutputFormat = typer.Option(OutputFormat.TEXT, "--format", "-f", help="Output format"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Log more (repeat for debug output)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors"),
) -> None:
    """Symlink-farm dotfile manager."""

    _configure_logging(verbose, quiet)
    ctx.obj = CliState(
        config=config,
        package_dir=package_dir,
        target_dir=target_dir,
        dry_run=dry_run,
        conflict_policy=on_conflict,
        output=output,
    )


@app.command()
def manage(ctx: typer.Context, packages: list[str] = typer.Argument(..., help="Packages to install")) -> None:
    """Link packages into the target directory."""

    try:
        result = _load_client(ctx).manage(*packages)
        _format_result(_state(ctx), result, f"Managed {', '.join(packages)}")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def unmanage(
    ctx: typer.Context,
    packages: list[str] = typer.Argument(None, help="Packages to remove"),
    all_packages: bool = typer.Option(False, "--all", help="Unmanage every installed package"),
    no_restore: bool = typer.Option(False, "--no-restore", help="Do not restore adopted content or backups"),
    purge: bool = typer.Option(False, "--purge", help="Also delete the package directories"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Only forget packages whose files are already gone"),
) -> None:
    """Remove package links and forget the packages."""

    try:
        client = _load_client(ctx)
        if all_packages:
            result = client.unmanage_all(restore=not no_restore, purge=purge)
            summary = "Unmanaged all packages"
        else:
            if not packages:
                console.print("[red]error:[/red] Name at least one package or pass --all.")
                raise typer.Exit(code=EXIT_INVALID_ARGUMENTS)
            result = client.unmanage(*packages, restore=not no_restore, purge=purge, cleanup=cleanup)
            summary = f"Unmanaged {', '.join(packages)}"
        _format_result(_state(ctx), result, summary)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def remanage(ctx: typer.Context, packages: list[str] = typer.Argument(..., help="Packages to refresh")) -> None:
    """Refresh packages whose content or links changed."""

    try:
        result = _load_client(ctx).remanage(*packages)
        _format_result(_state(ctx), result, f"Remanaged {', '.join(packages)}")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def adopt(
    ctx: typer.Context,
    paths: list[Path] = typer.Argument(..., help="Files or directories to move into the package"),
    package: str = typer.Option(..., "--package", "-p", help="Package that receives the files"),
) -> None:
    """Move existing files into a package and link them back."""

    try:
        targets = [_target_arg(str(path)) for path in paths]
        result = _load_client(ctx).adopt(targets, package)
        _format_result(_state(ctx), result, f"Adopted {len(targets)} path(s) into {package}")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def status(ctx: typer.Context, packages: list[str] = typer.Argument(None, help="Limit to these packages")) -> None:
    """Show installed packages and whether their links are healthy."""

    try:
        statuses = _load_client(ctx).status(*(packages or ()))
        _format_status(_state(ctx), statuses)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command("list")
def list_packages(ctx: typer.Context) -> None:
    """List installed packages."""

    try:
        names = _load_client(ctx).list_packages()
        if _state(ctx).output is OutputFormat.JSON:
            _print_json(names)
            return
        for name in names:
            console.print(escape(name))
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@doctor_app.callback(invoke_without_command=True)
def doctor(
    ctx: typer.Context,
    scan: ScanMode | None = typer.Option(None, "--scan", help="Orphan scan mode"),
    max_issues: int | None = typer.Option(None, "--max-issues", min=0, help="Stop after this many issues"),
    triage: bool = typer.Option(False, "--triage", help="Group orphaned links and decide what to do with them"),
    auto: bool = typer.Option(False, "--auto", help="With --triage, ignore high-confidence groups automatically"),
) -> None:
    """Run health checks; exits 1 on warnings and 2 on errors."""

    if ctx.invoked_subcommand is not None:
        return
    try:
        client = _load_client(ctx)
        state = _state(ctx)
        if triage:
            result = client.triage(
                None if auto else _prompt_group,
                auto_ignore_high_confidence=auto,
                scan_mode=scan,
            )
            _format_triage(state, result)
            return
        report = client.doctor(scan_mode=scan, max_issues=max_issues)
        _format_report(state, report)
        codes = {HealthStatus.OK: EXIT_OK, HealthStatus.WARNINGS: EXIT_ERROR, HealthStatus.ERRORS: 2}
        if report.overall is not HealthStatus.OK:
            raise typer.Exit(code=codes[report.overall])
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@doctor_app.command("ignore")
def doctor_ignore(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Symlink path, or a glob with --pattern"),
    pattern: bool = typer.Option(False, "--pattern", help="Treat TARGET as a glob pattern"),
    reason: str = typer.Option("", "--reason", help="Why the link is acknowledged"),
) -> None:
    """Stop reporting an unmanaged symlink."""

    try:
        client = _load_client(ctx)
        if pattern:
            added = client.ignore_pattern(target)
            message = f"Ignoring pattern {target}" if added else f"Pattern {target} was already ignored"
        else:
            entry = client.ignore_link(_target_arg(target), reason)
            message = f"Ignoring {target} -> {entry.target}"
        console.print(f"[green]{escape(message)}[/green]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@doctor_app.command("unignore")
def doctor_unignore(
    ctx: typer.Context,
    target: str = typer.Argument(..., help="Symlink path, or a glob with --pattern"),
    pattern: bool = typer.Option(False, "--pattern", help="Treat TARGET as a glob pattern"),
) -> None:
    """Report a previously ignored symlink or pattern again."""

    try:
        client = _load_client(ctx)
        removed = client.unignore_pattern(target) if pattern else client.unignore_link(_target_arg(target))
        if removed:
            console.print(f"[green]No longer ignoring {escape(target)}[/green]")
        else:
            console.print(f"[yellow]{escape(target)} was not ignored[/yellow]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@doctor_app.command("ignored")
def doctor_ignored(ctx: typer.Context) -> None:
    """List acknowledged symlinks and ignore patterns."""

    try:
        ignored = _load_client(ctx).list_ignored()
        if _state(ctx).output is OutputFormat.JSON:
            _print_json(ignored)
            return
        for path, entry in sorted(ignored.ignored_links.items()):
            console.print(f"{escape(path)} -> {escape(entry.target)}")
        for glob in ignored.ignored_patterns:
            console.print(f"pattern {escape(glob)}")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def _target_arg(raw: str) -> str:
    """Absolute paths and paths starting with ./ are taken as given; others are relative to the target."""

    expanded = os.path.expanduser(raw)
    if os.path.isabs(expanded) or raw.startswith(("./", "../")):
        return os.path.abspath(expanded)
    return expanded


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Print the effective configuration as TOML."""

    try:
        state = _state(ctx)
        config = load_config(state.config, package_dir=state.package_dir, target_dir=state.target_dir)
        if state.output is OutputFormat.JSON:
            _print_json(config.model_dump(mode="json"))
            return
        typer.echo(render_config(config), nl=False)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def upgrade(ctx: typer.Context) -> None:
    """Migrate the manifest to the current format, keeping a backup."""

    try:
        result = _load_client(ctx).upgrade_manifest()
        if _state(ctx).output is OutputFormat.JSON:
            _print_json(result)
        elif not result.changed:
            console.print(f"[green]Manifest is already at version {result.to_version}.[/green]")
        elif result.backup is None:
            console.print(f"[yellow]Dry run:[/yellow] manifest would be upgraded from {result.from_version}")
        else:
            console.print(
                f"[green]Upgraded manifest from {result.from_version} to {result.to_version}[/green] "
                f"(backup: {escape(str(result.backup))})"
            )
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
