"""Server entry point: load settings, open a MailSession and serve MCP over stdio."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from mail_mcp.clients.config import ConfigError, Settings
from mail_mcp.clients.session import MailSession
from mail_mcp.server.tools import build_server

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Log to stderr; stdout carries the MCP protocol.

    Replaces any handlers set up earlier, such as the CLI group's WARNING default.
    """
    name = (level or os.environ.get("MAIL_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )


async def serve(session: MailSession) -> None:
    """Run the stdio server until the host closes the stream."""
    server = build_server(session)
    try:
        await server.run_stdio_async()
    finally:
        await session.disconnect_all()
        logger.info("Mail connections closed")


def main() -> None:
    """Start the MCP mail server.  Called by `python -m mail_mcp` and `mail-mcp-server`."""
    load_dotenv()
    configure_logging()

    try:
        settings = Settings.from_env()
    except ConfigError as exc:
        logger.error("Invalid mail configuration: %s", exc)
        sys.exit(1)

    for line in settings.describe():
        logger.info("%s", line)

    try:
        asyncio.run(serve(MailSession(settings)))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
