"""Apply command."""

import sys

import click
from rich.console import Console
from rich.table import Table

from cli.utils import finish, get_components, print_errors

console = Console()


@click.command()
@click.argument("kb_id")
@click.option("--min-confidence", type=click.IntRange(1, 100), help="Override learning.min_confidence")
@click.option("--batch-size", type=click.IntRange(1), help="Override learning.batch_size")
def apply(kb_id: str, min_confidence: int | None, batch_size: int | None):
    """Merge pending learning events into a knowledge base."""
    c = get_components(with_embeddings=False)
    learning_cfg = c["config_model"].learning

    with console.status("Applying learning events..."):
        result = c["engine"].apply_learning_events(
            kb_id,
            min_confidence=min_confidence or learning_cfg.min_confidence,
            batch_size=batch_size or learning_cfg.batch_size,
        )
    finish(c)

    table = Table(show_header=False, box=None)
    table.add_column("", style="dim")
    table.add_column("")
    table.add_row("Applied", f"[green]{result.events_applied}[/]")
    table.add_row("Skipped", f"[yellow]{result.events_skipped}[/]")
    table.add_row("Fields", ", ".join(result.fields_updated) or "-")
    table.add_row("Enrichment version", str(result.enrichment_version))
    console.print(table)
    print_errors(result.errors)

    if not result.success:
        console.print("[red]Apply failed[/]")
        sys.exit(1)
