"""MailSession owns the receive and send connections for one server process."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mail_mcp.clients.base import MailClient, MailConnectionError
from mail_mcp.clients.config import ReceiveProtocol, Settings
from mail_mcp.clients.imap_client import IMAPMailClient
from mail_mcp.clients.pop3_client import POP3MailClient
from mail_mcp.clients.smtp_client import SMTPMailClient

logger = logging.getLogger(__name__)


def build_receiver(settings: Settings) -> MailClient:
    client_cls = IMAPMailClient if settings.protocol is ReceiveProtocol.IMAP else POP3MailClient
    return client_cls(settings.receive, settings.username, settings.password, settings.timeout)


class MailSession:
    """Explicit owner of the two connection handles, passed to every tool.

    Connections are opened lazily.  One ``asyncio.Lock`` guards connection
    establishment, so a tool call that arrives while another is still
    connecting waits for that connect instead of opening a duplicate.

    Usage::

        session = MailSession(Settings.from_env())
        client = await session.receiver()
        ...
        await session.disconnect_all()
    """

    def __init__(
        self,
        settings: Settings,
        receiver: MailClient | None = None,
        smtp: SMTPMailClient | None = None,
    ) -> None:
        self.settings = settings
        self._receiver = receiver or build_receiver(settings)
        self._smtp = smtp or SMTPMailClient(
            settings.smtp, settings.username, settings.password, settings.timeout
        )
        self._connect_lock = asyncio.Lock()

    @property
    def account_address(self) -> str:
        return self.settings.username

    @property
    def protocol(self) -> ReceiveProtocol:
        return self.settings.protocol

    async def receiver(self) -> MailClient:
        """Return the connected receive client, connecting first if needed."""
        if not self._receiver.is_connected:
            async with self._connect_lock:
                if not self._receiver.is_connected:
                    await self._receiver.connect()
        return self._receiver

    async def smtp(self) -> SMTPMailClient:
        """Return the connected SMTP client, connecting first if needed."""
        if not self._smtp.is_connected:
            async with self._connect_lock:
                if not self._smtp.is_connected:
                    await self._smtp.connect()
        return self._smtp

    async def connect_all(self) -> dict[str, Any]:
        """Connect both sides, reporting each outcome instead of failing on the first."""
        name = self.protocol.value.upper()
        results: dict[str, Any] = {}
        for label, opener, server in (
            (name, self.receiver, self.settings.receive),
            ("SMTP", self.smtp, self.settings.smtp),
        ):
            try:
                await opener()
                results[label] = {"connected": True, "server": server.describe()}
            except MailConnectionError as exc:
                logger.error("%s connect failed: %s", label, exc)
                results[label] = {"connected": False, "server": server.describe(), "error": str(exc)}
        results["summary"] = " | ".join(
            f"{label} {'ok' if results[label]['connected'] else 'failed'}" for label in (name, "SMTP")
        )
        return results

    async def disconnect_all(self) -> None:
        async with self._connect_lock:
            await self._receiver.disconnect()
            await self._smtp.disconnect()

    def status(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "receive": {
                "server": self.settings.receive.describe(),
                "connected": self._receiver.is_connected,
                "current_mailbox": self._receiver.current_mailbox,
            },
            "smtp": {
                "server": self.settings.smtp.describe(),
                "connected": self._smtp.is_connected,
            },
            "user": self.settings.username,
        }
