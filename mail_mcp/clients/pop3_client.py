"""POP3 receive client: ``poplib`` behind the same async API as the IMAP client.

POP3 has a single mailbox, no flags and no server-side search, so
``search`` downloads every message and evaluates the criterion locally, and
any mailbox other than INBOX fails to open (which makes sent-folder probing
fall through to an inbox-only result with a warning).
"""

from __future__ import annotations

import asyncio
import logging
import poplib
from collections.abc import Callable
from typing import TypeVar

from mail_mcp.clients.base import INBOX, MailboxError, MailConnectionError
from mail_mcp.clients.config import ServerConfig
from mail_mcp.clients.criteria import SearchTerm
from mail_mcp.clients.types import MailboxEntry, MailboxInfo, Message, RawMessage
from mail_mcp.processing.normalizer import normalize

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class POP3MailClient:
    """Async wrapper around one ``poplib.POP3``/``POP3_SSL`` session.

    Deletions are only committed by the server when the session ends, so
    ``delete_message`` marks the message and ``disconnect`` sends QUIT.
    """

    def __init__(
        self,
        server: ServerConfig,
        username: str,
        password: str,
        timeout: int = 10,
        client_factory: Callable[..., poplib.POP3] | None = None,
    ) -> None:
        self._server = server
        self._username = username
        self._password = password
        self._timeout = timeout
        self._client_factory = client_factory or (
            poplib.POP3_SSL if server.secure else poplib.POP3
        )
        self._pop: poplib.POP3 | None = None
        self._current_mailbox: str | None = None
        self._pending_deletes: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._pop is not None

    @property
    def current_mailbox(self) -> str | None:
        return self._current_mailbox

    async def connect(self) -> None:
        logger.info("Connecting to POP3 server %s", self._server.describe())

        def _open() -> poplib.POP3:
            pop = self._client_factory(self._server.host, self._server.port, timeout=self._timeout)
            try:
                pop.user(self._username)
                pop.pass_(self._password)
            except (OSError, poplib.error_proto):
                pop.close()
                raise
            return pop

        async with self._lock:
            try:
                self._pop = await asyncio.to_thread(_open)
            except poplib.error_proto as exc:
                raise MailConnectionError(f"POP3 authentication failed: {exc}") from exc
            except OSError as exc:
                raise MailConnectionError(f"POP3 connection failed: {exc}") from exc
        self._current_mailbox = INBOX
        logger.info("POP3 connection ready (%s)", self._username)

    async def disconnect(self) -> None:
        if self._pop is None:
            return
        pop, self._pop = self._pop, None
        self._current_mailbox = None
        async with self._lock:
            try:
                await asyncio.to_thread(pop.quit)
            except (OSError, poplib.error_proto) as exc:
                logger.debug("POP3 QUIT failed (ignored): %s", exc)
        if self._pending_deletes:
            logger.info("Committed %d POP3 deletion(s)", len(self._pending_deletes))
            self._pending_deletes.clear()
        logger.info("Disconnected from POP3 server")

    async def list_mailboxes(self) -> list[MailboxEntry]:
        return [MailboxEntry(name=INBOX)]

    async def open_mailbox(self, name: str = INBOX, read_only: bool = True) -> MailboxInfo:
        if name.upper() != INBOX:
            raise MailboxError(f"Failed to open mailbox {name!r}: POP3 only provides INBOX")
        count, _size = await self._run("STAT", lambda pop: pop.stat())
        self._current_mailbox = INBOX
        return MailboxInfo(name=INBOX, total=int(count), read_only=read_only)

    async def search(self, criterion: SearchTerm) -> list[int]:
        """Download every message and keep the ids whose content matches."""
        ids = await self._list_ids()
        messages = await self.fetch_messages(ids)
        matched = [m.id for m in messages if criterion.matches(m)]
        logger.debug("POP3 local search %s: %d of %d", criterion.describe(), len(matched), len(ids))
        return matched

    async def fetch_messages(self, ids: list[int]) -> list[Message]:
        messages: list[Message] = []
        for msg_id in ids:
            if msg_id in self._pending_deletes:
                continue
            _resp, lines, octets = await self._run(
                f"RETR {msg_id}", lambda pop, n=msg_id: pop.retr(n)
            )
            messages.append(normalize(RawMessage(
                id=msg_id,
                mailbox=INBOX,
                raw=b"\r\n".join(lines),
                size=int(octets),
            )))
        return messages

    async def delete_message(self, id: int) -> None:
        await self._run(f"DELE {id}", lambda pop: pop.dele(id))
        self._pending_deletes.add(id)
        logger.info("Message %s marked for deletion (committed on disconnect)", id)

    async def append_message(self, mailbox: str, raw: bytes) -> None:
        raise MailboxError("POP3 does not support storing messages on the server")

    async def _list_ids(self) -> list[int]:
        _resp, listing, _octets = await self._run("LIST", lambda pop: pop.list())
        ids: list[int] = []
        for line in listing:
            parts = line.split()
            if parts and parts[0].isdigit():
                ids.append(int(parts[0]))
        return [i for i in ids if i not in self._pending_deletes]

    async def _run(self, action: str, fn: Callable[[poplib.POP3], _T]) -> _T:
        async with self._lock:
            pop = self._pop
            if pop is None:
                raise MailConnectionError("Not connected to POP3 server")
            try:
                return await asyncio.to_thread(fn, pop)
            except poplib.error_proto as exc:
                raise MailboxError(f"POP3 {action} failed: {exc}") from exc
            except OSError as exc:
                self._pop = None
                self._current_mailbox = None
                raise MailConnectionError(f"POP3 connection lost during {action}: {exc}") from exc
