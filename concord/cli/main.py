"""Main CLI entry point using Typer."""

from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from concord import __version__
from concord.core.config import get_settings
from concord.core.exceptions import ConcordError
from concord.core.logging import configure_logging

app = typer.Typer(
    name="concord",
    help="Concord - conflict detection and resolution for concurrent document edits",
    add_completion=True,
    rich_markup_mode="rich",
)

policy_app = typer.Typer(help="Inspect and validate resolution policies.")
app.add_typer(policy_app, name="policy")

console = Console()

STATUS_COLORS = {
    "committed": "green",
    "superseded": "yellow",
    "rejected": "red",
    "pending": "white",
    "awaiting_manual_resolution": "magenta",
    "resolved": "green",
    "open": "white",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Concord[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Also log to the console.",
    ),
) -> None:
    """
    Concord - detect, resolve and commit concurrent edits.

    Replays editing scenarios and inspects the transaction journal.
    """
    configure_logging(console=verbose)


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _print_report(report, show_events: bool) -> None:
    coordinator = report.coordinator

    steps = Table(title="Steps")
    steps.add_column("#", style="cyan")
    steps.add_column("Action", style="bold")
    steps.add_column("Result")
    for step in report.steps:
        detail = f"[red]{step.error}[/red]" if step.error else step.detail
        steps.add_row(str(step.index), step.action, detail)
    console.print(steps)

    if show_events:
        events = Table(title="Events")
        events.add_column("Event", style="bold")
        events.add_column("Details")
        for event in report.events:
            data = event.model_dump(mode="json", exclude={"event_type", "occurred_at"})
            if "resolution" in data:
                data["resolution"] = data["resolution"]["resolution_id"]
            events.add_row(event.event_type.value, ", ".join(f"{k}={v}" for k, v in data.items()))
        console.print(events)

    conflicts = Table(title="Conflicts")
    conflicts.add_column("Conflict", style="cyan")
    conflicts.add_column("Element")
    conflicts.add_column("Classification")
    conflicts.add_column("Status")
    conflicts.add_column("Edits")
    conflicts.add_column("Outcome")
    for conflict in coordinator.list_conflicts():
        resolution = coordinator.resolution_for(conflict.conflict_id)
        outcome = "-"
        if resolution is not None:
            outcome = f"{resolution.strategy_used} -> {resolution.outcome_edit_id or 'none'}"
        elif conflict.reason:
            outcome = conflict.reason
        conflicts.add_row(
            conflict.conflict_id,
            conflict.element_id,
            conflict.classification.value,
            _colored(conflict.status.value),
            str(len(conflict.competing_edit_ids)),
            outcome,
        )
    console.print(conflicts)

    elements = Table(title="Elements")
    elements.add_column("Element", style="cyan")
    elements.add_column("Version")
    elements.add_column("Content")
    for element in coordinator.list_elements():
        content = "[dim]deleted[/dim]" if element.deleted else str(element.content)
        elements.add_row(element.element_id, str(element.current_version), content)
    console.print(elements)


@app.command()
def simulate(
    script: Path = typer.Argument(..., help="Scenario file (.yaml, .yml or .json)"),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        "-d",
        help="Journal the run to this database instead of memory",
    ),
    show_events: bool = typer.Option(
        True,
        "--events/--no-events",
        help="Print the emitted events",
    ),
) -> None:
    """
    Replay an editing scenario and show what the engine decided.

    Example:
        concord simulate scenarios/race.yaml
    """
    from concord.simulation import Scenario, run_scenario

    if not script.exists():
        console.print(f"[red]Scenario not found: {script}[/red]")
        raise typer.Exit(1)

    try:
        scenario = Scenario.from_file(script)
    except ConcordError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[bold]Scenario:[/bold] {scenario.name}\n"
            f"[bold]Elements:[/bold] {len(scenario.elements)}  "
            f"[bold]Steps:[/bold] {len(scenario.steps)}",
            title="[bold blue]Concord[/bold blue]",
            border_style="blue",
        )
    )

    async def execute() -> None:
        journal = None
        if database_url:
            from concord.persistence import SqlJournal

            journal = SqlJournal.from_url(_async_url(database_url))
            await journal.init_schema()

        report = await run_scenario(scenario, journal=journal)
        _print_report(report, show_events)
        await report.coordinator.close()

        if report.failed_steps:
            console.print(f"\n[yellow]{len(report.failed_steps)} steps failed[/yellow]")

    anyio.run(execute)


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


@app.command()
def conflicts(
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        "-d",
        help="Journal database (defaults to DATABASE_URL)",
    ),
    status: str | None = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter: open, awaiting_manual_resolution or resolved",
    ),
) -> None:
    """
    List conflicts stored in the SQL journal.
    """
    url = _async_url(database_url) if database_url else get_settings().database_url_async
    if url is None:
        console.print("[yellow]No journal database configured (set DATABASE_URL)[/yellow]")
        raise typer.Exit(1)

    async def show() -> None:
        from concord.persistence import SqlJournal

        journal = SqlJournal.from_url(url)
        try:
            snapshot = await journal.load_snapshot()
        finally:
            await journal.close()

        rows = sorted(snapshot.conflicts, key=lambda c: (c.detected_at, c.conflict_id))
        if status:
            rows = [c for c in rows if c.status.value == status]

        table = Table(title="Conflicts")
        table.add_column("Conflict", style="cyan")
        table.add_column("Element")
        table.add_column("Classification")
        table.add_column("Status")
        table.add_column("Detected")
        table.add_column("Reason")
        for conflict in rows:
            table.add_row(
                conflict.conflict_id,
                conflict.element_id,
                conflict.classification.value,
                _colored(conflict.status.value),
                conflict.detected_at.isoformat(timespec="seconds"),
                conflict.reason or "-",
            )

        if not rows:
            console.print("[dim]No conflicts found[/dim]")
        else:
            console.print(table)

    try:
        anyio.run(show)
    except ConcordError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


@policy_app.command("check")
def policy_check(
    file: Path = typer.Argument(..., help="Policy book (.json, .yaml or .yml)"),
) -> None:
    """
    Validate a policy book and show the effective policies.
    """
    from concord.conflict.resolver import StrategyEngine
    from concord.core.policy import PolicyBook

    engine = StrategyEngine()
    try:
        book = PolicyBook.from_file(file)
        scopes = [("default", "*", book.default)]
        scopes += [("document", name, p) for name, p in sorted(book.documents.items())]
        scopes += [("element class", name, p) for name, p in sorted(book.element_classes.items())]
        for _, _, policy in scopes:
            engine.validate_policy(policy)
    except ConcordError as e:
        console.print(f"[red]Invalid policy book: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Policies in {file.name}")
    table.add_column("Scope", style="cyan")
    table.add_column("Name")
    table.add_column("Strategy", style="bold")
    table.add_column("Fallback")
    table.add_column("Timeout")
    for scope, name, policy in scopes:
        timeout = "-"
        if policy.manual_resolution_timeout is not None:
            timeout = f"{policy.manual_resolution_timeout:g}s -> {policy.timeout_action}"
        table.add_row(scope, name, policy.strategy, policy.fallback_strategy or "-", timeout)

    console.print(table)
    console.print("[green]Policy book is valid[/green]")


if __name__ == "__main__":
    app()
