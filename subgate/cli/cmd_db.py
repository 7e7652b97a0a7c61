"""Database management commands."""

import asyncio
import click

from . import cli
from .shared import console


@cli.group()
def db():
    """Database management commands."""
    pass


@db.command("init")
def db_init():
    """Initialize database schema."""
    async def _init():
        from subgate.config import load_settings
        from subgate.db.connection import apply_schema, close_db, init_db

        settings = load_settings()
        if not settings.database_url:
            raise click.ClickException("SUBGATE_DATABASE_URL is not set.")
        await init_db(settings.database_url, min_size=1, max_size=2)
        try:
            await apply_schema()
        finally:
            await close_db()
        console.print("[green]✓ Database schema initialized[/green]")

    asyncio.run(_init())
