"""SMTP send client: ``smtplib`` behind an async API."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from collections.abc import Callable
from email.message import EmailMessage

from mail_mcp.clients.base import MailConnectionError, SendError
from mail_mcp.clients.config import ServerConfig
from mail_mcp.clients.types import OutgoingMessage, SendResult

logger = logging.getLogger(__name__)

# Port 465 speaks TLS from the first byte; everything else upgrades via STARTTLS.
_IMPLICIT_TLS_PORT = 465


class SMTPMailClient:
    """Holds one authenticated SMTP connection and submits messages over it.

    ``connect`` logs in up front so a bad password surfaces as
    ``MailConnectionError`` from ``connect_all`` rather than on the first send.
    """

    def __init__(
        self,
        server: ServerConfig,
        username: str,
        password: str,
        timeout: int = 10,
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
    ) -> None:
        self._server = server
        self._username = username
        self._password = password
        self._timeout = timeout
        self._smtp_factory = smtp_factory
        self._smtp: smtplib.SMTP | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._smtp is not None

    @property
    def sender(self) -> str:
        return self._username

    async def connect(self) -> None:
        logger.info("Connecting to SMTP server %s", self._server.describe())
        async with self._lock:
            try:
                self._smtp = await asyncio.to_thread(self._open)
            except smtplib.SMTPAuthenticationError as exc:
                raise MailConnectionError(f"SMTP authentication failed: {exc}") from exc
            except (OSError, smtplib.SMTPException) as exc:
                raise MailConnectionError(f"SMTP connection failed: {exc}") from exc
        logger.info("SMTP connection ready (%s)", self._username)

    def _open(self) -> smtplib.SMTP:
        host, port = self._server.host, self._server.port
        if self._smtp_factory is not None:
            smtp = self._smtp_factory(host, port, timeout=self._timeout)
        elif self._server.secure and port == _IMPLICIT_TLS_PORT:
            smtp = smtplib.SMTP_SSL(host, port, timeout=self._timeout)
        else:
            smtp = smtplib.SMTP(host, port, timeout=self._timeout)
            if self._server.secure:
                smtp.starttls()
        smtp.login(self._username, self._password)
        return smtp

    async def disconnect(self) -> None:
        if self._smtp is None:
            return
        smtp, self._smtp = self._smtp, None
        async with self._lock:
            try:
                await asyncio.to_thread(smtp.quit)
            except (OSError, smtplib.SMTPException) as exc:
                logger.debug("SMTP QUIT failed (ignored): %s", exc)
        logger.info("Disconnected from SMTP server")

    def _connection_dropped(self, exc: Exception, attempts_left: int) -> None:
        stale, self._smtp = self._smtp, None
        if stale is not None:
            stale.close()
        if not attempts_left:
            raise MailConnectionError(f"SMTP connection lost: {exc}") from exc
        logger.warning("SMTP connection dropped (%s); reconnecting", exc)

    async def send(self, outgoing: OutgoingMessage) -> tuple[SendResult, EmailMessage]:
        """Submit a message.  Returns the result and the exact MIME message sent,
        so the caller can store a copy in the sent folder.

        Raises:
            ValueError: if the message has no recipients or no body.
            SendError: if every recipient was refused or the server rejected the data.
            MailConnectionError: if the connection is missing, or drops and
                cannot be re-established.
        """
        if not outgoing.to:
            raise ValueError("At least one recipient is required")
        mime = outgoing.to_mime(self._username)
        recipients = outgoing.recipients

        async with self._lock:
            if self._smtp is None:
                raise MailConnectionError("SMTP client not connected")
            # One reconnect covers a session the server closed while idle.
            for attempts_left in (1, 0):
                try:
                    if self._smtp is None:
                        self._smtp = await asyncio.to_thread(self._open)
                    refused = await asyncio.to_thread(
                        self._smtp.send_message, mime, self._username, recipients
                    )
                    break
                except smtplib.SMTPRecipientsRefused as exc:
                    raise SendError(f"Failed to send email: all recipients refused {list(exc.recipients)}") from exc
                except smtplib.SMTPAuthenticationError as exc:
                    self._smtp = None
                    raise MailConnectionError(f"SMTP authentication failed: {exc}") from exc
                except smtplib.SMTPServerDisconnected as exc:
                    self._connection_dropped(exc, attempts_left)
                except smtplib.SMTPException as exc:
                    raise SendError(f"Failed to send email: {exc}") from exc
                except OSError as exc:
                    self._connection_dropped(exc, attempts_left)

        rejected = list(refused)
        accepted = [r for r in recipients if r not in refused]
        result = SendResult(
            message_id=str(mime["Message-ID"]),
            accepted=accepted,
            rejected=rejected,
            response="250 OK" if accepted else "",
        )
        logger.info("Sent email to %s: %r", ", ".join(accepted), outgoing.subject)
        return result, mime
