"""Subscriber administration commands."""

import asyncio
from datetime import timedelta

import click

from . import cli
from .shared import console, open_subscriber_store, subscribers_table


@cli.group()
def subscriber():
    """Manage subscribers."""
    pass


@subscriber.command("add")
@click.argument("phone")
@click.option("--name", help="Display name ({name} in templates)")
@click.option("--days", type=click.IntRange(min=1), help="Subscription length from now, in days")
@click.option("--until", "until", help="Subscription end (ISO date or timestamp)")
@click.option(
    "--status",
    type=click.Choice(["active", "inactive", "trial", "expired"]),
    help="Status (default: active when --days/--until is given)",
)
@click.option("--template", help="Greeting template ({name}, {phone}, {endDate}, {order})")
@click.option("--api-key", help="Per-subscriber webhook key")
def subscriber_add(phone, name, days, until, status, template, api_key):
    """Create a subscriber or update an existing one."""
    if days and until:
        raise click.UsageError("Use either --days or --until, not both.")

    async def _add():
        from subgate.entitlements.models import utcnow
        from subgate.errors import SubgateError

        fields = {}
        if name is not None:
            fields["display_name"] = name
        if template is not None:
            fields["message_template"] = template
        if api_key is not None:
            fields["api_key"] = api_key
        if days:
            fields["ends_at"] = utcnow() + timedelta(days=days)
        elif until:
            fields["ends_at"] = until
        if status:
            fields["status"] = status
        elif "ends_at" in fields:
            fields["status"] = "active"

        async with open_subscriber_store() as store:
            try:
                record = await store.upsert(phone, **fields)
            except SubgateError as e:
                raise click.ClickException(str(e))
        console.print(subscribers_table([record], title="Saved"))

    asyncio.run(_add())


@subscriber.command("list")
@click.option("--limit", default=100, show_default=True, type=click.IntRange(min=0))
@click.option("--offset", default=0, show_default=True, type=click.IntRange(min=0))
def subscriber_list(limit, offset):
    """List subscribers (ordered by phone)."""
    async def _list():
        async with open_subscriber_store() as store:
            records = await store.list_all(limit=limit, offset=offset)
            total = await store.count()
        if not records:
            console.print("[dim]No subscribers.[/dim]")
            return
        console.print(subscribers_table(records, title=f"Subscribers ({len(records)} of {total})"))

    asyncio.run(_list())


@subscriber.command("remove")
@click.argument("phone")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def subscriber_remove(phone, yes):
    """Delete a subscriber."""
    if not yes:
        click.confirm(f"Delete subscriber {phone}?", abort=True)

    async def _remove():
        from subgate.errors import SubgateError

        async with open_subscriber_store() as store:
            try:
                removed = await store.delete(phone)
            except SubgateError as e:
                raise click.ClickException(str(e))
        if removed:
            console.print(f"[green]✓ Subscriber {phone} deleted[/green]")
        else:
            console.print(f"[yellow]Subscriber {phone} not found[/yellow]")

    asyncio.run(_remove())


@subscriber.command("expire-sweep")
def subscriber_expire_sweep():
    """Mark active subscriptions past their end date as expired."""
    async def _sweep():
        async with open_subscriber_store() as store:
            changed = await store.expire_lapsed()
        console.print(f"[green]✓ {changed} subscription(s) marked expired[/green]")

    asyncio.run(_sweep())
