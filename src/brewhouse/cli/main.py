"""CLI entry point for the Brewhouse package manager."""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import typer

from brewhouse.cli.renderers import (
    console,
    package_table,
    plan_table,
    reconcile_table,
    render_events,
    render_result,
)
from brewhouse.core.channel import ProgressChannel
from brewhouse.core.config import BrewhouseConfig, discover_env
from brewhouse.core.engine import Engine, OperationResult
from brewhouse.core.errors import (
    EXIT_FATAL_ERROR,
    EXIT_SUCCESS,
    BrewError,
    UserError,
    exit_code_for,
    format_error_message,
)
from brewhouse.core.logging import configure_logging, get_logger
from brewhouse.core.metadata import load_metadata
from brewhouse.core.models import Operation, PackageKind, PackageStatus

log = get_logger(__name__)

app = typer.Typer(help="Brewhouse: a transactional package manager.")


@dataclass
class Settings:
    config: BrewhouseConfig
    metadata: Path


def handle_error(error: Exception) -> int:
    """Handle errors and return appropriate exit codes.

    Args:
        error: The exception to handle.

    Returns:
        An integer exit code.
    """
    if isinstance(error, BrewError):
        log.error(
            "cli_error",
            error_type=type(error).__name__,
            message=error.message,
            context=error.context,
        )
        console.print(f"\n{format_error_message(error)}\n", style="bold red", markup=False)
        return exit_code_for(error)

    log.error("unexpected_error", error=str(error), exc_info=True)
    console.print(f"\n⚠️ Unexpected error occurred: {error}\n", style="bold red", markup=False)
    return EXIT_FATAL_ERROR


@app.callback()
def main(
    ctx: typer.Context,
    prefix: Optional[Path] = typer.Option(None, "--prefix", help="Install root"),
    metadata: Optional[Path] = typer.Option(
        None, "--metadata", "-m", help="Metadata JSON file or directory"
    ),
    workers: Optional[int] = typer.Option(None, "--workers", "-j", min=1, help="Parallel nodes"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the console"),
) -> None:
    """Global options shared by every command."""
    configure_logging(level="DEBUG" if verbose else "INFO", enable_console=verbose)

    config = discover_env()
    if prefix is not None:
        config = replace(config, prefix=prefix)
    if workers is not None:
        config = replace(config, workers=workers)
    if metadata is None:
        env_path = os.environ.get("BREWHOUSE_METADATA")
        metadata = Path(env_path) if env_path else config.prefix / "var" / "brewhouse" / "metadata"
    ctx.obj = Settings(config=config, metadata=metadata)


def _engine(settings: Settings) -> Engine:
    if not settings.metadata.exists():
        raise UserError(
            f"No package metadata at {settings.metadata}",
            context={"path": str(settings.metadata)},
        )
    return Engine(settings.config, load_metadata(settings.metadata))


def _run(settings: Settings, verb: Callable[[Engine, ProgressChannel], Awaitable[OperationResult]]) -> None:
    """Run one verb with live progress and exit with its exit code."""

    async def runner() -> OperationResult:
        async with _engine(settings) as engine:
            channel = ProgressChannel(settings.config.channel_size)
            printer = asyncio.create_task(render_events(channel.subscribe()))
            try:
                return await verb(engine, channel)
            finally:
                channel.close()
                await printer

    try:
        result = asyncio.run(runner())
    except Exception as e:
        sys.exit(handle_error(e))

    render_result(result)
    if isinstance(result.error, BrewError):
        console.print(format_error_message(result.error), style="red", markup=False)
    sys.exit(result.exit_code)


@app.command()
def install(
    ctx: typer.Context,
    names: List[str] = typer.Argument(..., help="Packages, optionally name@version"),
    build_from_source: bool = typer.Option(
        False, "--build-from-source", "-s", help="Build requested formulae from source"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Only show the plan"),
) -> None:
    """Install packages and their dependencies."""
    settings: Settings = ctx.obj
    if dry_run:
        _show_plan(settings, Operation.INSTALL, names, build_from_source=build_from_source)
        return
    _run(settings, lambda e, ch: e.install(names, build_from_source=build_from_source, channel=ch))


@app.command()
def uninstall(
    ctx: typer.Context,
    names: List[str] = typer.Argument(..., help="Installed packages"),
    force: bool = typer.Option(False, "--force", "-f", help="Remove even if other packages depend on it"),
    zap: bool = typer.Option(False, "--zap", help="Also run cask zap directives"),
) -> None:
    """Uninstall packages."""
    _run(ctx.obj, lambda e, ch: e.uninstall(names, force=force, zap=zap, channel=ch))


@app.command()
def reinstall(
    ctx: typer.Context,
    names: List[str] = typer.Argument(..., help="Installed packages"),
    build_from_source: bool = typer.Option(False, "--build-from-source", "-s"),
) -> None:
    """Reinstall packages at their installed version."""
    _run(ctx.obj, lambda e, ch: e.reinstall(names, build_from_source=build_from_source, channel=ch))


@app.command()
def upgrade(
    ctx: typer.Context,
    names: Optional[List[str]] = typer.Argument(None, help="Packages to upgrade"),
    all_: bool = typer.Option(False, "--all", "-a", help="Upgrade every outdated package"),
) -> None:
    """Upgrade packages to their newest version."""
    if not names and not all_:
        console.print("Name at least one package or pass --all", style="bold red")
        sys.exit(exit_code_for(UserError("nothing to upgrade")))
    _run(ctx.obj, lambda e, ch: e.upgrade(names or [], all_=all_, channel=ch))


@app.command(name="list")
def list_packages(
    ctx: typer.Context,
    formula: bool = typer.Option(False, "--formula", "--formulae", help="Only formulae"),
    cask: bool = typer.Option(False, "--cask", "--casks", help="Only casks"),
    outdated: bool = typer.Option(False, help="Only outdated"),
) -> None:
    """List installed packages."""
    if formula and cask:
        console.print("--formula and --cask are mutually exclusive", style="bold red")
        sys.exit(exit_code_for(UserError("conflicting list filters")))
    kind = PackageKind.FORMULA if formula else PackageKind.CASK if cask else None
    try:
        engine = _engine(ctx.obj)
        pkgs = engine.list_installed(kind)
        if outdated:
            pkgs = [p for p in pkgs if PackageStatus.OUTDATED in p.status]
        console.print(package_table(pkgs))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def reconcile(ctx: typer.Context) -> None:
    """Recover the prefix after an interrupted operation."""
    try:
        engine = _engine(ctx.obj)
        report = asyncio.run(engine.reconcile())
    except Exception as e:
        sys.exit(handle_error(e))

    if report.clean:
        console.print("Prefix is consistent", style="bold green")
    else:
        console.print(reconcile_table(report))
    sys.exit(EXIT_FATAL_ERROR if report.fatal else EXIT_SUCCESS)


def _show_plan(settings: Settings, op: Operation, names: List[str], **kw) -> None:
    try:
        plan = _engine(settings).plan(op, names, **kw)
    except Exception as e:
        sys.exit(handle_error(e))
    console.print(plan_table(plan))
    for message in plan.warnings:
        console.print(f"warning: {message}", style="yellow", markup=False)


if __name__ == "__main__":
    app()
