"""CLI entry point for the mail MCP server."""

import logging

import click
from dotenv import load_dotenv

from mail_mcp.clients.config import ConfigError, Settings
from mail_mcp.clients.session import MailSession

logger = logging.getLogger(__name__)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Mail over MCP: serve the tools, or search and inspect a mailbox directly."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # keep CLI output clean; errors still surface
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        raise click.ClickException(f"Invalid mail configuration: {exc}") from exc
    ctx.obj = MailSession(settings)


# Import and register commands after cli is defined to avoid circular imports.
from mail_mcp.cli.commands import mailboxes, search, serve, status, unreplied  # noqa: E402

cli.add_command(serve)
cli.add_command(search)
cli.add_command(unreplied)
cli.add_command(mailboxes)
cli.add_command(status)
