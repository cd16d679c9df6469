"""Tests for IMAPMailClient: the imapclient connection is mocked."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from mail_mcp.clients.base import MailboxError, MailConnectionError
from mail_mcp.clients.config import ServerConfig
from mail_mcp.clients.criteria import Criterion, SearchField
from mail_mcp.clients.imap_client import IMAPMailClient

RAW = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: me@example.com\r\n"
    b"Subject: Hello\r\n"
    b"Date: Fri, 10 Jan 2025 12:30:00 +0000\r\n"
    b"\r\n"
    b"Hi there\r\n"
)


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def imap() -> MagicMock:
    conn = MagicMock()
    conn.select_folder.return_value = {
        b"EXISTS": 3,
        b"RECENT": 1,
        b"UIDVALIDITY": 42,
        b"UIDNEXT": 10,
        b"PERMANENTFLAGS": (b"\\Seen", b"\\Deleted"),
    }
    return conn


@pytest.fixture
def factory(imap: MagicMock) -> MagicMock:
    return MagicMock(return_value=imap)


@pytest.fixture
def client(factory: MagicMock) -> IMAPMailClient:
    return IMAPMailClient(
        ServerConfig("imap.example.com", 993, True),
        "me@example.com",
        "secret",
        timeout=5,
        client_factory=factory,
    )


@pytest.fixture
async def connected(client: IMAPMailClient) -> IMAPMailClient:
    await client.connect()
    return client


# ── connect / disconnect ───────────────────────────────────────────────────────


class TestConnect:
    async def test_logs_in_and_selects_inbox(
        self, client: IMAPMailClient, factory: MagicMock, imap: MagicMock
    ) -> None:
        await client.connect()
        factory.assert_called_once_with("imap.example.com", port=993, ssl=True, timeout=5)
        imap.login.assert_called_once_with("me@example.com", "secret")
        imap.select_folder.assert_called_once_with("INBOX", readonly=True)
        assert client.is_connected
        assert client.current_mailbox == "INBOX"

    async def test_login_rejected(self, client: IMAPMailClient, imap: MagicMock) -> None:
        imap.login.side_effect = LoginError("bad credentials")
        with pytest.raises(MailConnectionError, match="authentication failed"):
            await client.connect()
        assert not client.is_connected
        imap.shutdown.assert_called_once()

    async def test_unreachable(self, client: IMAPMailClient, factory: MagicMock) -> None:
        factory.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(MailConnectionError, match="connection failed"):
            await client.connect()

    async def test_inbox_auto_open_failure_is_not_fatal(
        self, client: IMAPMailClient, imap: MagicMock
    ) -> None:
        imap.select_folder.side_effect = IMAPClientError("no INBOX")
        await client.connect()
        assert client.is_connected
        assert client.current_mailbox is None

    async def test_disconnect_logs_out(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        await connected.disconnect()
        imap.logout.assert_called_once()
        assert not connected.is_connected
        assert connected.current_mailbox is None

    async def test_disconnect_when_not_connected_is_noop(self, client: IMAPMailClient) -> None:
        await client.disconnect()

    async def test_commands_require_connection(self, client: IMAPMailClient) -> None:
        with pytest.raises(MailConnectionError, match="Not connected"):
            await client.list_mailboxes()


# ── Mailboxes ──────────────────────────────────────────────────────────────────


class TestMailboxes:
    async def test_open_mailbox(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        info = await connected.open_mailbox("Archive", read_only=False)
        imap.select_folder.assert_called_with("Archive", readonly=False)
        assert info.name == "Archive"
        assert info.total == 3
        assert info.recent == 1
        assert info.uidvalidity == 42
        assert info.uidnext == 10
        assert info.read_only is False
        assert info.permanent_flags == ("\\Seen", "\\Deleted")
        assert connected.current_mailbox == "Archive"

    async def test_open_missing_mailbox(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.select_folder.side_effect = IMAPClientError("select failed: NO such mailbox")
        with pytest.raises(MailboxError, match="Sent Items"):
            await connected.open_mailbox("Sent Items")
        assert connected.is_connected
        assert connected.current_mailbox is None

    async def test_list_mailboxes(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.list_folders.return_value = [
            ((b"\\HasNoChildren",), b"/", "INBOX"),
            ((b"\\HasChildren",), b"/", "Work"),
            ((), b"/", "Work/Clients"),
        ]
        entries = await connected.list_mailboxes()
        assert [e.name for e in entries] == ["INBOX", "Work", "Work/Clients"]
        assert entries[1].flags == ("\\HasChildren",)
        assert entries[2].delimiter == "/"


# ── Messages ───────────────────────────────────────────────────────────────────


class TestMessages:
    async def test_search_returns_sorted_ids(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.search.return_value = [5, 3]
        ids = await connected.search(Criterion(SearchField.FROM, "alice@example.com"))
        assert ids == [3, 5]
        imap.search.assert_called_once_with(["FROM", "alice@example.com"], charset=None)

    async def test_search_non_ascii_uses_utf8(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.search.return_value = []
        await connected.search(Criterion(SearchField.SUBJECT, "Café"))
        imap.search.assert_called_once_with(["SUBJECT", "Café"], charset="UTF-8")

    async def test_fetch_normalizes(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.fetch.return_value = {
            3: {
                b"RFC822": RAW,
                b"FLAGS": (b"\\Seen",),
                b"INTERNALDATE": datetime(2025, 1, 10, 12, 31),
                b"RFC822.SIZE": 99,
            }
        }
        messages = await connected.fetch_messages([3, 4])
        assert len(messages) == 1
        message = messages[0]
        assert message.id == 3
        assert message.mailbox == "INBOX"
        assert message.subject == "Hello"
        assert message.sender == "alice@example.com"
        assert message.flags == ("\\Seen",)
        assert message.size == 99

    async def test_fetch_nothing(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        assert await connected.fetch_messages([]) == []
        imap.fetch.assert_not_called()

    async def test_delete_reopens_writable_and_expunges(
        self, connected: IMAPMailClient, imap: MagicMock
    ) -> None:
        await connected.delete_message(7)
        imap.select_folder.assert_called_with("INBOX", readonly=False)
        imap.delete_messages.assert_called_once_with([7])
        imap.expunge.assert_called_once()

    async def test_append_marks_seen(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        await connected.append_message("Sent", b"raw")
        imap.append.assert_called_once_with("Sent", b"raw", flags=(b"\\Seen",))


# ── Error translation ──────────────────────────────────────────────────────────


class TestErrors:
    async def test_abort_drops_the_connection(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.search.side_effect = IMAPClientAbortError("connection reset")
        with pytest.raises(MailConnectionError, match="aborted"):
            await connected.search(Criterion(SearchField.ALL))
        assert not connected.is_connected

    async def test_socket_error_drops_the_connection(
        self, connected: IMAPMailClient, imap: MagicMock
    ) -> None:
        imap.fetch.side_effect = TimeoutError("timed out")
        with pytest.raises(MailConnectionError, match="lost"):
            await connected.fetch_messages([1])
        assert not connected.is_connected

    async def test_no_response_is_mailbox_error(self, connected: IMAPMailClient, imap: MagicMock) -> None:
        imap.search.side_effect = IMAPClientError("SEARCH failed")
        with pytest.raises(MailboxError):
            await connected.search(Criterion(SearchField.ALL))
        assert connected.is_connected


# ── Reconnect ──────────────────────────────────────────────────────────────────


class TestReconnect:
    async def test_dropped_session_is_reopened_once(
        self, connected: IMAPMailClient, factory: MagicMock, imap: MagicMock
    ) -> None:
        await connected.open_mailbox("Archive")
        imap.search.side_effect = [IMAPClientAbortError("idle timeout"), [4]]

        ids = await connected.search(Criterion(SearchField.ALL))

        assert ids == [4]
        assert factory.call_count == 2
        imap.shutdown.assert_called_once()
        imap.select_folder.assert_called_with("Archive", readonly=True)
        assert connected.is_connected
        assert connected.current_mailbox == "Archive"

    async def test_reconnect_failure_is_connection_error(
        self, connected: IMAPMailClient, factory: MagicMock, imap: MagicMock
    ) -> None:
        imap.search.side_effect = IMAPClientAbortError("idle timeout")
        factory.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(MailConnectionError, match="connection lost"):
            await connected.search(Criterion(SearchField.ALL))
        assert not connected.is_connected
        assert connected.current_mailbox is None

    async def test_append_is_not_repeated(
        self, connected: IMAPMailClient, factory: MagicMock, imap: MagicMock
    ) -> None:
        imap.append.side_effect = TimeoutError("timed out")
        with pytest.raises(MailConnectionError, match="lost"):
            await connected.append_message("Sent", b"raw")
        imap.append.assert_called_once()
        assert factory.call_count == 1
