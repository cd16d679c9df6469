"""Receive-side client interface and the mail error hierarchy."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from mail_mcp.clients.criteria import SearchTerm
    from mail_mcp.clients.types import MailboxEntry, MailboxInfo, Message

INBOX = "INBOX"


class MailError(Exception):
    """Base class for every error raised by the mail clients."""


class MailConnectionError(MailError):
    """The server is unreachable, rejected the login, or dropped the session.

    Always fatal for the tool invocation that hit it.
    """


class MailboxError(MailError):
    """A single mailbox could not be opened, searched or fetched from."""


class SendError(MailError):
    """The SMTP server refused the submission."""


@runtime_checkable
class MailClient(Protocol):
    """What the search orchestrator and reply detector need from a receive client.

    Implementations: ``IMAPMailClient`` and ``POP3MailClient``.  Only one
    mailbox is selected at a time; ``open_mailbox`` replaces the selection.
    """

    @property
    def is_connected(self) -> bool: ...

    @property
    def current_mailbox(self) -> str | None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def list_mailboxes(self) -> list[MailboxEntry]: ...

    async def open_mailbox(self, name: str = INBOX, read_only: bool = True) -> MailboxInfo: ...

    async def search(self, criterion: SearchTerm) -> list[int]: ...

    async def fetch_messages(self, ids: list[int]) -> list[Message]: ...

    async def delete_message(self, id: int) -> None: ...

    async def append_message(self, mailbox: str, raw: bytes) -> None: ...
