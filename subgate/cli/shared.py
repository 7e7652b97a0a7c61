"""Shared utilities for subgate CLI commands."""

from contextlib import asynccontextmanager

import click
from rich.console import Console
from rich.table import Table

console = Console()


@asynccontextmanager
async def open_subscriber_store():
    """Connect to the configured database and yield a subscriber store."""
    from subgate.config import load_settings
    from subgate.db.connection import close_db, init_db
    from subgate.entitlements.pg_store import PostgresEntitlementStore

    settings = load_settings()
    if not settings.database_url:
        raise click.ClickException(
            "SUBGATE_DATABASE_URL is not set. Subscriber commands need the database."
        )
    await init_db(settings.database_url, min_size=1, max_size=2)
    try:
        yield PostgresEntitlementStore()
    finally:
        await close_db()


def subscribers_table(records, title: str = "Subscribers") -> Table:
    table = Table(title=title)
    table.add_column("Phone", style="bold")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Ends")
    table.add_column("Sent", justify="right")
    table.add_column("Key")

    styles = {"active": "green", "trial": "cyan", "expired": "red", "inactive": "dim"}
    for r in records:
        style = styles.get(r.status.value, "")
        table.add_row(
            r.identity,
            r.display_name or "",
            f"[{style}]{r.status.value}[/{style}]" if style else r.status.value,
            r.ends_at.strftime("%Y-%m-%d %H:%M") if r.ends_at else "-",
            str(r.messages_sent),
            "✓" if r.api_key else "",
        )
    return table
