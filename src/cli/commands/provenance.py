"""Audit log, snapshot and replay commands."""

import json
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components, require_kb

console = Console()

ACTION_STYLES = {
    "created": "blue",
    "applied": "green",
    "skipped": "yellow",
    "reverted": "red",
}


@click.command()
@click.argument("kb_id")
@click.option("--limit", "-n", default=20, help="Number of entries")
@click.option("--action", type=click.Choice(list(ACTION_STYLES)), help="Filter by action")
def audit(kb_id: str, limit: int, action: str | None):
    """Show the most recent audit log entries."""
    c = get_components(with_embeddings=False)
    require_kb(c, kb_id)
    entries = c["audit"].get_audit_log(kb_id, limit=c["config_model"].audit.max_entries)
    if action:
        entries = [e for e in entries if e.get("action") == action]
    entries = entries[:limit]

    if not entries:
        console.print("No audit entries.")
        return

    table = Table(title=f"Audit log: {kb_id}")
    table.add_column("When", style="dim")
    table.add_column("Event", style="dim")
    table.add_column("Action")
    table.add_column("Fields")
    table.add_column("Reason")
    for entry in entries:
        style = ACTION_STYLES.get(entry.get("action"), "white")
        table.add_row(
            entry.get("timestamp", "")[:19],
            entry.get("event_id", "")[:12],
            f"[{style}]{entry.get('action')}[/]",
            ", ".join(entry.get("fields_affected") or []),
            (entry.get("reason") or "")[:80],
        )
    console.print(table)


@click.command()
@click.argument("kb_id")
@click.option("--show", "show_index", type=int, help="Print one snapshot (0 = oldest, -1 = newest)")
def snapshots(kb_id: str, show_index: int | None):
    """List state snapshots taken after each apply run."""
    c = get_components(with_embeddings=False)
    require_kb(c, kb_id)
    items = c["audit"].get_snapshots(kb_id)
    if not items:
        console.print("No snapshots.")
        return

    if show_index is not None:
        try:
            snapshot = items[show_index]
        except IndexError:
            console.print(f"[red]No snapshot at index {show_index}[/] ({len(items)} stored)")
            return
        click.echo(json.dumps(snapshot, indent=2, default=str))
        return

    table = Table(title=f"Snapshots: {kb_id}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Created")
    table.add_column("Version", justify="right")
    table.add_column("Enrichment", justify="right")
    table.add_column("Events", justify="right")
    for i, snapshot in enumerate(items):
        table.add_row(
            str(i),
            snapshot.get("created_at", "")[:19],
            str(snapshot.get("version")),
            str(snapshot.get("enrichment_version")),
            str(len(snapshot.get("event_ids") or [])),
        )
    console.print(table)


@click.command()
@click.argument("kb_id")
@click.option("--up-to", type=click.DateTime(), help="Only replay events created up to this time")
def rebuild(kb_id: str, up_to: datetime | None):
    """Approximate the knowledge base state by replaying applied events.

    Diagnostic only: replay covers bottleneck, tool and company stage
    metadata, so the output can differ from the live record.
    """
    c = get_components(with_embeddings=False)
    require_kb(c, kb_id)
    state = c["audit"].rebuild_state(kb_id, up_to=up_to)
    click.echo(json.dumps(state, indent=2, default=str))
