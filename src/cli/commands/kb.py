"""Knowledge base CLI commands."""

import json

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components, require_kb

console = Console()


@click.group()
def kb():
    """Create and inspect knowledge bases."""
    pass


@kb.command("create")
@click.option("--name", "business_name", required=True, help="Business name")
@click.option("--industry", help="Industry")
@click.option("--id", "kb_id", help="Explicit id (generated when omitted)")
def kb_create(business_name: str, industry: str | None, kb_id: str | None):
    """Create an empty knowledge base."""
    c = get_components(with_embeddings=False)
    created = c["kb_store"].create(id=kb_id or "", business_name=business_name, industry=industry)
    console.print(f"[green]✓[/] Created knowledge base [cyan]{created.id}[/]")


@kb.command("list")
def kb_list():
    """List knowledge bases."""
    c = get_components(with_embeddings=False)
    ids = c["kb_store"].list_ids()
    if not ids:
        console.print("[yellow]No knowledge bases. Run [cyan]kblearn kb create --name ...[/][/]")
        return

    table = Table(title="Knowledge Bases")
    table.add_column("ID", style="cyan")
    table.add_column("Business")
    table.add_column("Version", justify="right")
    table.add_column("Enrichment", justify="right")
    table.add_column("Pending", justify="right")
    for kb_id in ids:
        record = c["kb_store"].get(kb_id)
        table.add_row(
            kb_id,
            record.business_name or "",
            str(record.version),
            str(record.enrichment_version),
            str(c["event_store"].count_unapplied(kb_id)),
        )
    console.print(table)


@kb.command("show")
@click.argument("kb_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record")
def kb_show(kb_id: str, as_json: bool):
    """Show fields and knowledge bag of a knowledge base."""
    c = get_components(with_embeddings=False)
    record = require_kb(c, kb_id)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "id": record.id,
                    "business_name": record.business_name,
                    "industry": record.industry,
                    "biggest_bottleneck": record.biggest_bottleneck,
                    "top_objection": record.top_objection,
                    "core_offer": record.core_offer,
                    "ideal_customer": record.ideal_customer,
                    "primary_goal": record.primary_goal,
                    "tool_stack": record.tool_stack,
                    "knowledge": record.knowledge.to_dict(),
                    "version": record.version,
                    "enrichment_version": record.enrichment_version,
                },
                indent=2,
                default=str,
            )
        )
        return

    console.print(f"[bold]{record.business_name or record.id}[/] ({record.industry or 'no industry'})")
    console.print(
        f"Version {record.version} · enrichment {record.enrichment_version} · "
        f"last enriched {record.last_enriched_at or 'never'}"
    )
    for name in ("biggest_bottleneck", "top_objection", "core_offer", "ideal_customer", "primary_goal"):
        value = getattr(record, name)
        if value:
            console.print(f"  [cyan]{name}[/]: {value}")
    if record.tool_stack:
        console.print(f"  [cyan]tool_stack[/]: {', '.join(record.tool_stack)}")

    keys = record.knowledge.content_keys()
    if keys:
        console.print("\n[bold]Knowledge:[/]")
        for key in keys:
            value = record.knowledge[key]
            size = f"{len(value)} items" if isinstance(value, (list, dict)) else str(value)[:60]
            console.print(f"  {key} [dim]({record.knowledge.kind(key)})[/]: {size}")
