"""Start command."""

import asyncio
import click

from . import cli
from .shared import console


@cli.command()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def start(debug):
    """Start WhatsApp session and HTTP API."""
    from subgate.main import run
    console.print("[bold blue]Starting subgate...[/bold blue]")
    asyncio.run(run(debug=debug))
