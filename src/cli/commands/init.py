"""Init CLI command."""

from pathlib import Path

import click
import yaml
from rich.console import Console

from cli.config import find_config, load_config_model

console = Console()

MINIMAL_CONFIG = {
    "llm": {
        "provider": "auto",
        "api_key": "${OPENAI_API_KEY}",
    },
    "embeddings": {
        "enabled": False,
    },
    "paths": {
        "db": "~/.kblearn/kblearn.db",
        "log_file": "~/.kblearn/kblearn.log",
    },
    "learning": {
        "min_confidence": 80,
        "batch_size": 100,
    },
}


@click.command()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), help="SQLite database path")
def init(db_path: str | None):
    """Create the config file and the learning database."""
    from knowledge.store import KnowledgeBaseStore
    from learning.store import EventStore

    config_path = find_config() or Path.home() / ".kblearn" / "config.yaml"
    if not config_path.exists():
        config = dict(MINIMAL_CONFIG)
        if db_path:
            config["paths"] = {**MINIMAL_CONFIG["paths"], "db": db_path}
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False)
        console.print(f"[green]✓[/] Created config: {config_path}")
    else:
        console.print(f"[dim]Config exists: {config_path}[/]")

    config_model = load_config_model(config_path)
    db = Path(db_path).expanduser() if db_path else config_model.paths.db
    KnowledgeBaseStore(db)
    EventStore(db)
    console.print(f"[green]✓[/] database: {db}")

    console.print("\n[bold]Next steps:[/]")
    console.print("  1. Set OPENAI_API_KEY to use [cyan]kblearn extract[/]")
    console.print("  2. Run [cyan]kblearn kb create --name 'Acme'[/] to add a knowledge base")
    console.print("  3. Run [cyan]kblearn add-events KB_ID insights.json[/], then [cyan]kblearn apply KB_ID[/]")
