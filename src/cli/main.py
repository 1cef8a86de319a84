"""kblearn command line entry point."""

import sys

import click
from rich.console import Console

from cli.commands import (
    add_events,
    apply,
    audit,
    extract,
    init,
    kb,
    metrics,
    rebuild,
    snapshots,
    stats,
)
from cli.config import load_config_model
from cli.logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(version="0.1.0", prog_name="kblearn")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Learning event engine for business knowledge bases."""
    try:
        config = load_config_model()
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)

    log_cfg = config.logging
    setup_logging(
        json_mode=log_cfg.json_output,
        level="DEBUG" if verbose else log_cfg.level,
        log_file=config.paths.log_file if log_cfg.to_file else None,
    )


cli.add_command(init)
cli.add_command(kb)
cli.add_command(add_events)
cli.add_command(extract)
cli.add_command(apply)
cli.add_command(audit)
cli.add_command(snapshots)
cli.add_command(rebuild)
cli.add_command(stats)
cli.add_command(metrics)


if __name__ == "__main__":
    cli()
