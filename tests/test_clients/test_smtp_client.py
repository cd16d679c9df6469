"""Tests for SMTPMailClient: smtplib is mocked."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from mail_mcp.clients.base import MailConnectionError, SendError
from mail_mcp.clients.config import ServerConfig
from mail_mcp.clients.smtp_client import SMTPMailClient
from mail_mcp.clients.types import OutgoingMessage


@pytest.fixture
def smtp() -> MagicMock:
    conn = MagicMock()
    conn.send_message.return_value = {}
    return conn


@pytest.fixture
def client(smtp: MagicMock) -> SMTPMailClient:
    return SMTPMailClient(
        ServerConfig("smtp.example.com", 587, True),
        "me@example.com",
        "secret",
        timeout=5,
        smtp_factory=MagicMock(return_value=smtp),
    )


def _outgoing(**overrides) -> OutgoingMessage:
    fields = {"to": ["alice@example.com"], "subject": "Hi", "text": "Hello"}
    fields.update(overrides)
    return OutgoingMessage(**fields)


class TestConnect:
    async def test_logs_in(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        await client.connect()
        smtp.login.assert_called_once_with("me@example.com", "secret")
        assert client.is_connected

    async def test_auth_failure(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
        with pytest.raises(MailConnectionError, match="authentication failed"):
            await client.connect()
        assert not client.is_connected

    async def test_implicit_tls_on_465(self) -> None:
        c = SMTPMailClient(ServerConfig("smtp.example.com", 465, True), "me@example.com", "pw")
        with patch("mail_mcp.clients.smtp_client.smtplib.SMTP_SSL") as ssl_cls:
            await c.connect()
        ssl_cls.assert_called_once_with("smtp.example.com", 465, timeout=10)
        ssl_cls.return_value.login.assert_called_once_with("me@example.com", "pw")

    async def test_starttls_on_587(self) -> None:
        c = SMTPMailClient(ServerConfig("smtp.example.com", 587, True), "me@example.com", "pw")
        with patch("mail_mcp.clients.smtp_client.smtplib.SMTP") as smtp_cls:
            await c.connect()
        smtp_cls.return_value.starttls.assert_called_once()

    async def test_plain_when_not_secure(self) -> None:
        c = SMTPMailClient(ServerConfig("localhost", 25, False), "me@example.com", "pw")
        with patch("mail_mcp.clients.smtp_client.smtplib.SMTP") as smtp_cls:
            await c.connect()
        smtp_cls.return_value.starttls.assert_not_called()


class TestSend:
    async def test_send(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        await client.connect()
        result, mime = await client.send(_outgoing(cc=["bob@example.com"], bcc=["hidden@example.com"]))
        mime_arg, from_arg, rcpt_arg = smtp.send_message.call_args.args
        assert from_arg == "me@example.com"
        assert rcpt_arg == ["alice@example.com", "bob@example.com", "hidden@example.com"]
        assert mime_arg is mime
        assert mime["Bcc"] is None
        assert result.accepted == rcpt_arg
        assert result.rejected == []
        assert result.message_id == mime["Message-ID"]

    async def test_partial_refusal(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        smtp.send_message.return_value = {"bob@example.com": (550, b"no such user")}
        await client.connect()
        result, _ = await client.send(_outgoing(to=["alice@example.com", "bob@example.com"]))
        assert result.accepted == ["alice@example.com"]
        assert result.rejected == ["bob@example.com"]

    async def test_all_refused(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        smtp.send_message.side_effect = smtplib.SMTPRecipientsRefused({"alice@example.com": (550, b"no")})
        await client.connect()
        with pytest.raises(SendError, match="refused"):
            await client.send(_outgoing())

    async def test_disconnect_mid_send(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        smtp.send_message.side_effect = smtplib.SMTPServerDisconnected("gone")
        await client.connect()
        with pytest.raises(MailConnectionError, match="connection lost"):
            await client.send(_outgoing())
        assert smtp.send_message.call_count == 2
        assert not client.is_connected

    async def test_reconnects_after_idle_drop(self) -> None:
        stale, fresh = MagicMock(), MagicMock()
        stale.send_message.side_effect = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        fresh.send_message.return_value = {}
        factory = MagicMock(side_effect=[stale, fresh])
        c = SMTPMailClient(
            ServerConfig("smtp.example.com", 587, True),
            "me@example.com",
            "secret",
            smtp_factory=factory,
        )
        await c.connect()

        result, _ = await c.send(_outgoing())

        assert factory.call_count == 2
        stale.close.assert_called_once()
        fresh.login.assert_called_once_with("me@example.com", "secret")
        assert result.accepted == ["alice@example.com"]
        assert c.is_connected

    async def test_reconnect_refused(self) -> None:
        stale = MagicMock()
        stale.send_message.side_effect = smtplib.SMTPServerDisconnected("gone")
        factory = MagicMock(side_effect=[stale, ConnectionRefusedError("refused")])
        c = SMTPMailClient(
            ServerConfig("smtp.example.com", 587, True),
            "me@example.com",
            "secret",
            smtp_factory=factory,
        )
        await c.connect()
        with pytest.raises(MailConnectionError, match="connection lost"):
            await c.send(_outgoing())
        assert not c.is_connected

    async def test_requires_recipient(self, client: SMTPMailClient) -> None:
        await client.connect()
        with pytest.raises(ValueError, match="recipient"):
            await client.send(_outgoing(to=[]))

    async def test_requires_body(self, client: SMTPMailClient) -> None:
        await client.connect()
        with pytest.raises(ValueError, match="text or html"):
            await client.send(_outgoing(text=None))

    async def test_not_connected(self, client: SMTPMailClient) -> None:
        with pytest.raises(MailConnectionError, match="not connected"):
            await client.send(_outgoing())

    async def test_disconnect_quits(self, client: SMTPMailClient, smtp: MagicMock) -> None:
        await client.connect()
        await client.disconnect()
        smtp.quit.assert_called_once()
        assert not client.is_connected
