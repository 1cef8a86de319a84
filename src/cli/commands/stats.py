"""Event statistics and engine metrics commands."""

import json

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components, require_kb

console = Console()


@click.command()
@click.argument("kb_id")
def stats(kb_id: str):
    """Show event counts by status and category."""
    c = get_components(with_embeddings=False)
    record = require_kb(c, kb_id)
    s = c["event_store"].get_stats(kb_id)

    console.print(f"[bold]{record.business_name or kb_id}[/]")
    console.print(
        f"Events: {s['total']} total, [green]{s['applied']} applied[/], "
        f"[yellow]{s['unapplied']} pending[/], avg confidence {s['average_confidence']}"
    )
    console.print(f"Version {record.version}, enrichment {record.enrichment_version}")

    if s["by_category"]:
        table = Table(title="By category")
        table.add_column("Category", style="cyan")
        table.add_column("Events", justify="right")
        for category, count in sorted(s["by_category"].items(), key=lambda kv: -kv[1]):
            table.add_row(category, str(count))
        console.print(table)


@click.command()
@click.argument("kb_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw metrics")
@click.option("--limit", "-n", default=5, help="Recent runs to show")
def metrics(kb_id: str, as_json: bool, limit: int):
    """Show extraction, application and quality metrics."""
    c = get_components(with_embeddings=False)
    require_kb(c, kb_id)
    data = c["metrics"].get_metrics(kb_id)

    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return

    application = data["application"][-limit:]
    if application:
        table = Table(title="Recent apply runs")
        table.add_column("When", style="dim")
        table.add_column("Processed", justify="right")
        table.add_column("Applied", justify="right", style="green")
        table.add_column("Skipped", justify="right", style="yellow")
        table.add_column("Decayed", justify="right")
        table.add_column("ms", justify="right", style="dim")
        for run in reversed(application):
            table.add_row(
                run["timestamp"][:19],
                str(run["events_processed"]),
                str(run["events_applied"]),
                str(run["events_skipped"]),
                str(run.get("events_decayed", 0)),
                str(run["processing_time_ms"]),
            )
        console.print(table)
    else:
        console.print("No apply runs recorded.")

    extraction = data["extraction"][-limit:]
    if extraction:
        table = Table(title="Recent extractions")
        table.add_column("When", style="dim")
        table.add_column("Source")
        table.add_column("Submitted", justify="right")
        table.add_column("Created", justify="right", style="green")
        table.add_column("Duplicates", justify="right", style="yellow")
        for run in reversed(extraction):
            table.add_row(
                run["timestamp"][:19],
                run["source_type"],
                str(run["insights_extracted"]),
                str(run["insights_created"]),
                str(run["duplicate_count"]),
            )
        console.print(table)

    quality = data.get("quality")
    if quality:
        outcomes = quality["conflict_resolution_outcomes"]
        dist = quality["confidence_distribution"]
        console.print(
            "\n[bold]Quality:[/] "
            + ", ".join(f"{k} {v}" for k, v in outcomes.items())
            + " | confidence "
            + ", ".join(f"{k} {v}" for k, v in dist.items())
        )
