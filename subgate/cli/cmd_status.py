"""Status command."""

import asyncio
import os

import httpx
from rich.table import Table

from . import cli
from .shared import console


def _fetch_live_status(host: str, port: int) -> dict | None:
    """Ask a running instance for its session state."""
    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    try:
        resp = httpx.get(f"http://{host}:{port}/api/status", timeout=3)
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPError:
        return None


@cli.command()
def status():
    """Show subgate status."""
    async def _status():
        from subgate import __version__
        from subgate.config import load_settings
        from subgate.session.wacli import WacliClient

        settings = load_settings()

        table = Table(title=f"subgate Status v{__version__}", show_header=False, padding=(0, 2))
        table.add_column("Key", style="bold")
        table.add_column("Value")

        table.add_row("Version", __version__)

        # Database + subscribers
        if settings.database_url:
            from subgate.db.connection import close_db, init_db
            from subgate.db.credentials import has_credential, CRED_WHATSAPP_SESSION
            from subgate.entitlements.pg_store import PostgresEntitlementStore

            try:
                await init_db(settings.database_url, min_size=1, max_size=2)
                try:
                    table.add_row("Database", "[green]Connected[/green]")
                    table.add_row("Subscribers", str(await PostgresEntitlementStore().count()))
                    stored = await has_credential(CRED_WHATSAPP_SESSION)
                finally:
                    await close_db()
            except Exception as e:
                table.add_row("Database", f"[red]Error: {e}[/red]")
                stored = False
        else:
            table.add_row("Database", "[yellow]Not configured (in-memory subscribers)[/yellow]")
            stored = os.path.isfile(os.path.expanduser(settings.credentials_file))
        table.add_row("Stored session", "[green]yes[/green]" if stored else "[dim]no (pairing required)[/dim]")

        # wacli
        wacli = WacliClient(wacli_path=settings.wacli_path, store_dir=settings.wacli_store_dir)
        binary = wacli.resolve_binary()
        table.add_row("wacli", binary or "[red]not found[/red]")

        # Running instance
        live = _fetch_live_status(settings.host, settings.port)
        if live is None:
            table.add_row("Service", "[dim]not running[/dim]")
        else:
            state = live.get("connectivity", "?")
            color = "green" if live.get("connected") else "yellow"
            table.add_row("Service", f"[green]running[/green] on port {settings.port}")
            table.add_row("WhatsApp", f"[{color}]{state}[/{color}]")
            table.add_row("Uptime", f"{live.get('uptimeSeconds', 0)}s")
            table.add_row("Messages sent", str(live.get("globalMessagesSent", 0)))
            if live.get("qrAvailable"):
                table.add_row("Pairing", "[yellow]QR waiting — GET /api/qr[/yellow]")

        console.print(table)

    asyncio.run(_status())
