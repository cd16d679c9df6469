"""IMAP receive client: wraps the blocking ``imapclient`` library behind an async API."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from mail_mcp.clients.base import INBOX, MailboxError, MailConnectionError
from mail_mcp.clients.config import ServerConfig
from mail_mcp.clients.criteria import SearchTerm
from mail_mcp.clients.types import MailboxEntry, MailboxInfo, Message, RawMessage
from mail_mcp.processing.normalizer import normalize

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_FETCH_ITEMS = [b"RFC822", b"FLAGS", b"INTERNALDATE", b"RFC822.SIZE"]


def _text(value: Any) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


class IMAPMailClient:
    """Async wrapper around one ``imapclient.IMAPClient`` connection.

    Every blocking call runs in a worker thread via ``asyncio.to_thread``.
    An ``asyncio.Lock`` keeps commands strictly sequential because an IMAP
    connection has exactly one selected mailbox and one command in flight.

    Errors are translated: socket failures, timeouts, login rejections and
    aborted sessions become ``MailConnectionError``; NO/BAD responses
    become ``MailboxError``.
    """

    def __init__(
        self,
        server: ServerConfig,
        username: str,
        password: str,
        timeout: int = 10,
        client_factory: Callable[..., IMAPClient] = IMAPClient,
    ) -> None:
        self._server = server
        self._username = username
        self._password = password
        self._timeout = timeout
        self._client_factory = client_factory
        self._imap: IMAPClient | None = None
        self._current_mailbox: str | None = None
        self._read_only = True
        self._lock = asyncio.Lock()

    # ── Connection ────────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._imap is not None

    @property
    def current_mailbox(self) -> str | None:
        return self._current_mailbox

    async def connect(self) -> None:
        """Connect, log in and select INBOX read-only."""
        logger.info("Connecting to IMAP server %s", self._server.describe())
        async with self._lock:
            try:
                self._imap = await asyncio.to_thread(self._open)
            except LoginError as exc:
                raise MailConnectionError(f"IMAP authentication failed: {exc}") from exc
            except (OSError, IMAPClientError) as exc:
                raise MailConnectionError(f"IMAP connection failed: {exc}") from exc
        logger.info("IMAP connection ready (%s)", self._username)

        try:
            await self.open_mailbox(INBOX, read_only=True)
        except MailboxError as exc:
            logger.warning("Failed to auto-open INBOX: %s", exc)

    def _open(self) -> IMAPClient:
        client = self._client_factory(
            self._server.host,
            port=self._server.port,
            ssl=self._server.secure,
            timeout=self._timeout,
        )
        try:
            client.login(self._username, self._password)
        except (OSError, IMAPClientError):
            with contextlib.suppress(OSError):
                client.shutdown()
            raise
        return client

    def _reopen(self) -> IMAPClient:
        """Fresh login that restores the previously selected mailbox."""
        client = self._open()
        if self._current_mailbox is not None:
            try:
                client.select_folder(self._current_mailbox, readonly=self._read_only)
            except IMAPClientError as exc:
                logger.warning("Could not reselect %s after reconnect: %s", self._current_mailbox, exc)
                self._current_mailbox = None
        return client

    async def disconnect(self) -> None:
        if self._imap is None:
            return
        imap, self._imap = self._imap, None
        self._current_mailbox = None
        async with self._lock:
            try:
                await asyncio.to_thread(imap.logout)
            except (OSError, IMAPClientError) as exc:
                logger.debug("IMAP logout failed (ignored): %s", exc)
        logger.info("Disconnected from IMAP server")

    # ── Mailboxes ─────────────────────────────────────────────────────────────

    async def list_mailboxes(self) -> list[MailboxEntry]:
        rows = await self._run("list mailboxes", lambda imap: imap.list_folders())
        return [
            MailboxEntry(
                name=_text(name),
                delimiter=_text(delimiter) if delimiter else "/",
                flags=tuple(_text(f) for f in flags),
            )
            for flags, delimiter, name in rows
        ]

    async def open_mailbox(self, name: str = INBOX, read_only: bool = True) -> MailboxInfo:
        try:
            info = await self._run(
                f"open mailbox {name!r}",
                lambda imap: imap.select_folder(name, readonly=read_only),
            )
        except MailboxError:
            # a failed SELECT leaves the server with nothing selected
            self._current_mailbox = None
            raise
        self._current_mailbox = name
        self._read_only = read_only
        logger.debug("Opened mailbox %s (read_only=%s)", name, read_only)
        return MailboxInfo(
            name=name,
            total=int(info.get(b"EXISTS", 0)),
            recent=int(info.get(b"RECENT", 0)),
            uidvalidity=info.get(b"UIDVALIDITY"),
            uidnext=info.get(b"UIDNEXT"),
            read_only=read_only,
            permanent_flags=tuple(_text(f) for f in info.get(b"PERMANENTFLAGS", ())),
        )

    # ── Messages ──────────────────────────────────────────────────────────────

    async def search(self, criterion: SearchTerm) -> list[int]:
        await self._ensure_selected()
        criteria = criterion.to_imap()
        charset = None
        if any(isinstance(c, str) and not c.isascii() for c in criteria):
            charset = "UTF-8"
        ids = await self._run(
            f"search {criterion.describe()!r} in {self._current_mailbox!r}",
            lambda imap: imap.search(criteria, charset=charset),
        )
        logger.debug("Search %s in %s: %d match(es)", criteria, self._current_mailbox, len(ids))
        return sorted(int(i) for i in ids)

    async def fetch_messages(self, ids: list[int]) -> list[Message]:
        if not ids:
            return []
        await self._ensure_selected()
        mailbox = self._current_mailbox or INBOX
        data = await self._run(
            f"fetch {len(ids)} message(s) from {mailbox!r}",
            lambda imap: imap.fetch(ids, _FETCH_ITEMS),
        )
        messages: list[Message] = []
        for uid in ids:
            item = data.get(uid)
            if item is None:
                continue
            raw = item.get(b"RFC822") or b""
            messages.append(normalize(RawMessage(
                id=int(uid),
                mailbox=mailbox,
                raw=raw,
                flags=tuple(_text(f) for f in item.get(b"FLAGS", ())),
                internal_date=item.get(b"INTERNALDATE"),
                size=item.get(b"RFC822.SIZE"),
            )))
        logger.debug("Fetched %d message(s) from %s", len(messages), mailbox)
        return messages

    async def delete_message(self, id: int) -> None:
        """Flag as \\Deleted and expunge.  Reopens the mailbox writable if needed."""
        mailbox = self._current_mailbox or INBOX
        await self.open_mailbox(mailbox, read_only=False)

        def _delete(imap: IMAPClient) -> None:
            imap.delete_messages([id])
            imap.expunge()

        await self._run(f"delete message {id} in {mailbox!r}", _delete)
        logger.info("Message %s deleted from %s", id, mailbox)

    async def append_message(self, mailbox: str, raw: bytes) -> None:
        await self._run(
            f"append to {mailbox!r}",
            lambda imap: imap.append(mailbox, raw, flags=(b"\\Seen",)),
            retry=False,
        )
        logger.debug("Appended message to %s", mailbox)

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _ensure_selected(self) -> None:
        if self._current_mailbox is None:
            await self.open_mailbox(INBOX, read_only=True)

    async def _run(self, action: str, fn: Callable[[IMAPClient], _T], retry: bool = True) -> _T:
        """Run one blocking IMAP command under the connection lock.

        A dropped connection is re-established once and the command retried,
        unless ``retry`` is off for commands that must not be repeated.
        """
        async with self._lock:
            if self._imap is None:
                raise MailConnectionError("Not connected to IMAP server")
            for attempts_left in ((1, 0) if retry else (0,)):
                try:
                    if self._imap is None:
                        self._imap = await asyncio.to_thread(self._reopen)
                    return await asyncio.to_thread(fn, self._imap)
                except LoginError as exc:
                    self._imap = None
                    self._current_mailbox = None
                    raise MailConnectionError(f"IMAP authentication failed: {exc}") from exc
                except IMAPClientAbortError as exc:
                    self._connection_dropped(f"IMAP session aborted during {action}", exc, attempts_left)
                except IMAPClientError as exc:
                    raise MailboxError(f"Failed to {action}: {exc}") from exc
                except OSError as exc:
                    self._connection_dropped(f"IMAP connection lost during {action}", exc, attempts_left)

    def _connection_dropped(self, message: str, exc: Exception, attempts_left: int) -> None:
        stale, self._imap = self._imap, None
        if stale is not None:
            with contextlib.suppress(OSError):
                stale.shutdown()
        if not attempts_left:
            self._current_mailbox = None
            raise MailConnectionError(f"{message}: {exc}") from exc
        logger.warning("%s (%s); reconnecting", message, exc)
