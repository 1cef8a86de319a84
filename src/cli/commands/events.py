"""Commands that record learning events."""

import sys
from pathlib import Path

import click
from rich.console import Console

from cli.utils import finish, get_components, print_errors, read_json_file, require_kb

console = Console()

SOURCE_CHOICES = click.Choice(
    [
        "JOB_DESCRIPTION",
        "SOP_GENERATION",
        "CHAT_CONVERSATION",
        "INITIAL_ONBOARDING",
        "MANUAL_UPDATE",
        "FILE_UPLOAD",
        "AI_ENRICHMENT",
    ]
)


def _report(result, label: str) -> None:
    if result.success:
        console.print(f"[green]✓[/] {label}: created {result.events_created} event(s)")
    else:
        console.print(f"[red]No events created[/] ({label})")
    print_errors(result.errors)


@click.command("add-events")
@click.argument("kb_id")
@click.argument("insights_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-s", "--source-type", type=SOURCE_CHOICES, default="MANUAL_UPDATE")
@click.option("--source-id", help="Source record id (defaults to the file name)")
@click.option("--triggered-by", help="User or process that produced the insights")
def add_events(
    kb_id: str,
    insights_file: Path,
    source_type: str,
    source_id: str | None,
    triggered_by: str | None,
):
    """Record insights from a JSON file as learning events.

    The file holds a list of {insight, category, event_type, confidence, metadata}
    objects, or an object with an "insights" list.
    """
    payload = read_json_file(insights_file)
    insights = payload.get("insights") if isinstance(payload, dict) else payload
    if not isinstance(insights, list):
        console.print("[red]Expected a JSON list of insights[/]")
        sys.exit(1)

    c = get_components()
    result = c["recorder"].create_learning_events(
        knowledge_base_id=kb_id,
        source_type=source_type,
        source_id=source_id or insights_file.stem,
        insights=insights,
        triggered_by=triggered_by,
    )
    finish(c)
    _report(result, insights_file.name)
    if not result.success:
        sys.exit(1)


@click.command()
@click.argument("kb_id")
@click.argument("source_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-s", "--source-type", type=SOURCE_CHOICES, default="FILE_UPLOAD")
@click.option("--source-id", help="Source record id (defaults to the file name)")
@click.option("--triggered-by", help="User or process that produced the source")
@click.option("--dry-run", is_flag=True, help="Print extracted insights without recording them")
def extract(
    kb_id: str,
    source_file: Path,
    source_type: str,
    source_id: str | None,
    triggered_by: str | None,
    dry_run: bool,
):
    """Extract insights from a document with the LLM and record them."""
    c = get_components(with_extractor=True)
    require_kb(c, kb_id)

    text = source_file.read_text()
    with console.status("Extracting insights..."):
        insights = c["extractor"].extract(source_type, text, triggered_by=triggered_by)

    if not insights:
        console.print("[yellow]No insights extracted.[/]")
        finish(c)
        return

    if dry_run:
        for insight in insights:
            console.print(
                f"[cyan]{insight.category}[/] [dim]{insight.event_type}[/] "
                f"({insight.confidence}) {insight.insight}"
            )
        finish(c)
        return

    result = c["recorder"].create_learning_events(
        knowledge_base_id=kb_id,
        source_type=source_type,
        source_id=source_id or source_file.stem,
        insights=insights,
        triggered_by=triggered_by,
    )
    finish(c)
    _report(result, source_file.name)
    if not result.success:
        sys.exit(1)
