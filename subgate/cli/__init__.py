"""subgate CLI — command line interface."""

import click
from subgate import __version__
from .shared import console


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="subgate")
@click.pass_context
def cli(ctx):
    """subgate — subscription-gated WhatsApp notifications"""
    if ctx.invoked_subcommand is None:
        _show_help()


def _show_help():
    """Show all available commands grouped by category."""
    console.print(f"[bold]subgate v{__version__}[/bold] — subscription-gated WhatsApp notifications\n")

    groups = {
        "Usage": [
            ("start", "Start WhatsApp session and HTTP API"),
            ("status", "Show service status"),
        ],
        "Data": [
            ("db init", "Initialize database schema"),
            ("subscriber add", "Create or update a subscriber"),
            ("subscriber list", "List subscribers"),
            ("subscriber remove", "Delete a subscriber"),
            ("subscriber expire-sweep", "Mark lapsed active subscriptions as expired"),
        ],
    }

    for category, commands in groups.items():
        console.print(f"  [bold cyan]{category}[/bold cyan]")
        for name, desc in commands:
            console.print(f"    [bold]subgate {name:24s}[/bold] {desc}")
        console.print()

    console.print("[dim]Run 'subgate <command> --help' for details on a specific command.[/dim]")


# Import all command modules (registers commands onto cli group)
from . import cmd_start  # noqa: E402, F401
from . import cmd_status  # noqa: E402, F401
from . import cmd_db  # noqa: E402, F401
from . import cmd_subscriber  # noqa: E402, F401


@cli.command(name="help", hidden=True)
def help_cmd():
    """Show all available commands."""
    _show_help()


def main():
    """CLI entry point."""
    import sys
    try:
        cli(standalone_mode=False)
    except click.UsageError as e:
        if e.ctx:
            click.echo(e.ctx.command.get_usage(e.ctx), err=True)
        click.echo("Try 'subgate help' for help.\n", err=True)
        click.echo(f"Error: {e.format_message()}", err=True)
        sys.exit(2)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.exceptions.Exit as e:
        sys.exit(e.code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
