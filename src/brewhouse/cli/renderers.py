"""Renderers for plans, results and installed packages using Rich."""

from typing import Iterable

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from brewhouse.core.channel import EventKind, ProgressEvent, Subscription
from brewhouse.core.engine import InstalledPackage, OperationResult, OperationStatus
from brewhouse.core.models import InstallPlan, NodeState, PackageStatus
from brewhouse.core.transaction import ReconcileReport

console = Console()

STATUS_LABELS = {
    PackageStatus.OUTDATED: "[red]Outdated[/red]",
    PackageStatus.NOT_LINKED: "[blue]Not Linked[/blue]",
    PackageStatus.FROM_SOURCE: "[magenta]Source[/magenta]",
    PackageStatus.DEPENDENCY: "[dim]Dependency[/dim]",
    PackageStatus.ORPHANED: "[yellow]Orphaned[/yellow]",
}

NODE_STYLES = {
    NodeState.FETCHING: "cyan",
    NodeState.STAGING: "cyan",
    NodeState.COMMITTING: "blue",
    NodeState.DONE: "green",
    NodeState.FAILED: "bold red",
    NodeState.SKIPPED: "dim",
    NodeState.ABANDONED: "yellow",
}

RESULT_STYLES = {
    OperationStatus.SUCCESS: "bold green",
    OperationStatus.PARTIAL: "bold yellow",
    OperationStatus.FAILURE: "bold red",
}


def status_to_str(status: PackageStatus) -> str:
    """Convert PackageStatus to a human-readable string with color coding.

    Args:
        status: The PackageStatus to convert.

    Returns:
        A human-readable string representation of the PackageStatus.
    """
    if status == PackageStatus.NONE:
        return "[green]Up-to-date[/green]"
    bits = [label for flag, label in STATUS_LABELS.items() if flag in status]
    return ", ".join(bits)


def package_table(pkgs: Iterable[InstalledPackage]) -> Table:
    """Create a Rich Table of installed packages.

    Args:
        pkgs: Installed packages to display.

    Returns:
        A Rich Table displaying package information.
    """
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("Kind", style="bold")
    table.add_column("Name", style="bold")
    table.add_column("Installed")
    table.add_column("Latest")
    table.add_column("Status")
    table.add_column("Installed On", style="dim")

    for p in pkgs:
        table.add_row(
            p.receipt.kind.value,
            p.name,
            p.receipt.pkg_version,
            p.latest or "",
            status_to_str(p.status),
            p.receipt.installed_on or "",
        )

    return table


def plan_table(plan: InstallPlan) -> Table:
    """Create a Rich Table listing plan nodes in execution order."""
    table = Table(box=box.MINIMAL_HEAVY_HEAD)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Operation", style="bold")
    table.add_column("Package")
    table.add_column("Artifact")
    table.add_column("After", style="dim")

    for i, node in enumerate(plan, start=1):
        op = "skip" if node.skip else node.op.value
        artifact = type(node.artifact).__name__ if node.artifact is not None else ""
        if node.build_from_source:
            artifact += " (from source)"
        table.add_row(str(i), op, str(node.package.id), artifact, ", ".join(node.after))

    return table


def reconcile_table(report: ReconcileReport) -> Table:
    t = Table(box=box.MINIMAL_HEAVY_HEAD)
    t.add_column("Finding", style="bold")
    t.add_column("Items")
    t.add_row("Rolled back", ", ".join(report.rolled_back))
    t.add_row("Rolled forward", ", ".join(report.rolled_forward))
    t.add_row("Needs manual repair", ", ".join(report.fatal))
    t.add_row("Orphaned receipts removed", ", ".join(report.orphaned_receipts))
    t.add_row("Untracked directories", ", ".join(report.untracked))
    return t


def event_line(event: ProgressEvent) -> str | None:
    """One console line for a progress event, or None if it is not shown."""
    data = event.data
    match event.kind:
        case EventKind.NODE_STATE:
            state = NodeState(data["state"])
            style = NODE_STYLES.get(state, "")
            return f"[{style}]{state.value:>10}[/{style}] {event.node}"
        case EventKind.DOWNLOAD_CACHED:
            return f"[dim]    cached[/dim] {event.node}"
        case EventKind.DOWNLOAD_FINISHED:
            return f"[dim]downloaded[/dim] {event.node} ({data.get('size_bytes', 0)} bytes)"
        case EventKind.DOWNLOAD_FAILED:
            return f"[bold red]  download[/bold red] {event.node}: {escape(str(data.get('error')))}"
    return None


async def render_events(sub: Subscription) -> None:
    """Print events until the channel closes."""
    async for event in sub:
        line = event_line(event)
        if line:
            console.print(line)


def render_result(result: OperationResult) -> None:
    style = RESULT_STYLES[result.status]
    console.print(f"\n[{style}]{result.verb}: {result.status.value}[/{style}] {escape(result.describe())}")
    for message in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(message)}")
