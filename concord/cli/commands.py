"""Additional CLI commands for Concord."""

from pathlib import Path

import anyio
import typer
from rich.console import Console
from rich.table import Table

from concord.cli.main import app
from concord.core.config import get_settings
from concord.core.exceptions import ConcordError

console = Console()


@app.command()
def logs(
    tail: int = typer.Option(
        50,
        "--tail",
        "-n",
        help="Number of lines to show",
    ),
) -> None:
    """
    View the latest Concord log file.
    """
    log_dir = Path(get_settings().concord_log_dir)

    if not log_dir.exists():
        console.print("[yellow]No logs directory found[/yellow]")
        return

    log_files = sorted(log_dir.glob("concord_*.log"), reverse=True)

    if not log_files:
        console.print("[yellow]No log files found[/yellow]")
        return

    latest_log = log_files[0]
    console.print(f"[dim]Reading from {latest_log}[/dim]\n")

    with open(latest_log) as f:
        lines = f.readlines()
        for line in lines[-tail:]:
            console.print(line.rstrip(), markup=False, highlight=False)


@app.command()
def metrics(
    script: Path = typer.Argument(..., help="Scenario to run before reporting"),
    output_format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format: table, json or prometheus",
    ),
    export: Path | None = typer.Option(
        None,
        "--export",
        "-e",
        help="Export metrics to file",
    ),
) -> None:
    """
    Run a scenario and show the engine metrics it produced.
    """
    from concord.monitoring import MetricReporter
    from concord.simulation import Scenario, run_scenario

    if output_format not in {"table", "json", "prometheus"}:
        console.print(f"[red]Unknown format: {output_format}[/red]")
        raise typer.Exit(1)
    if not script.exists():
        console.print(f"[red]Scenario not found: {script}[/red]")
        raise typer.Exit(1)

    try:
        scenario = Scenario.from_file(script)
    except ConcordError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    async def collect():
        report = await run_scenario(scenario)
        return report.coordinator.metrics

    collected = anyio.run(collect)
    reporter = MetricReporter()

    if output_format == "table":
        summary = collected.get_summary()
        table = Table(title="Engine Metrics")
        table.add_column("Metric")
        table.add_column("Value")

        for name, value in summary["edits"].items():
            table.add_row(f"Edits {name}", f"{value:g}")
        for name in ("detected", "resolved", "awaiting_manual"):
            table.add_row(f"Conflicts {name.replace('_', ' ')}", f"{summary['conflicts'][name]:g}")
        for classification, value in sorted(summary["conflicts"]["by_classification"].items()):
            table.add_row(f"  {classification}", f"{value:g}")
        for strategy, value in sorted(summary["resolutions_by_strategy"].items()):
            table.add_row(f"Resolved by {strategy}", f"{value:g}")
        table.add_row("Commit retries", f"{summary['commit_retries']:g}")
        table.add_row("Escalations", f"{summary['escalations']:g}")

        console.print(table)
        text = reporter.to_json(collected)
    else:
        text = reporter.export(collected, output_format)
        console.print(text, markup=False, highlight=False)

    if export:
        export.write_text(text)
        console.print(f"[green]Saved to {export}[/green]")
