"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytest

from mail_mcp.clients.base import INBOX, MailboxError
from mail_mcp.clients.config import ReceiveProtocol, ServerConfig, Settings
from mail_mcp.clients.criteria import SearchTerm
from mail_mcp.clients.types import MailboxEntry, MailboxInfo, Message


class FakeMailClient:
    """In-memory MailClient: mailboxes are plain lists of Messages.

    ``failing`` maps a mailbox name to the exception its search raises.
    """

    def __init__(
        self,
        mailboxes: dict[str, list[Message]],
        failing: dict[str, Exception] | None = None,
    ) -> None:
        self.mailboxes = mailboxes
        self.failing = failing or {}
        self.is_connected = True
        self.current_mailbox: str | None = None
        self.opened: list[tuple[str, bool]] = []
        self.appended: list[tuple[str, bytes]] = []
        self.deleted: list[tuple[str, int]] = []

    async def connect(self) -> None:
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def list_mailboxes(self) -> list[MailboxEntry]:
        return [MailboxEntry(name=name) for name in self.mailboxes]

    async def open_mailbox(self, name: str = INBOX, read_only: bool = True) -> MailboxInfo:
        self.opened.append((name, read_only))
        if name not in self.mailboxes:
            raise MailboxError(f"Mailbox doesn't exist: {name}")
        self.current_mailbox = name
        return MailboxInfo(name=name, total=len(self.mailboxes[name]), read_only=read_only)

    async def search(self, criterion: SearchTerm) -> list[int]:
        box = self.current_mailbox or INBOX
        if box in self.failing:
            raise self.failing[box]
        return [m.id for m in self.mailboxes[box] if criterion.matches(m)]

    async def fetch_messages(self, ids: list[int]) -> list[Message]:
        box = self.current_mailbox or INBOX
        return [m for m in self.mailboxes[box] if m.id in ids]

    async def delete_message(self, id: int) -> None:
        box = self.current_mailbox or INBOX
        self.mailboxes[box] = [m for m in self.mailboxes[box] if m.id != id]
        self.deleted.append((box, id))

    async def append_message(self, mailbox: str, raw: bytes) -> None:
        if mailbox not in self.mailboxes:
            raise MailboxError(f"Mailbox doesn't exist: {mailbox}")
        self.appended.append((mailbox, raw))


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory for Messages with sensible defaults."""

    def _make(id: int, mailbox: str = INBOX, **overrides: Any) -> Message:
        fields: dict[str, Any] = {
            "subject": "Quarterly report",
            "sender": "alice@example.com",
            "to": ("me@example.com",),
            "date": utc(2025, 1, 15, 10, 0),
            "text": "Please see the attached figures.",
            "size": 1200,
            "message_id": f"<{mailbox.lower().replace(' ', '-')}-{id}@example.com>",
        }
        fields.update(overrides)
        return Message(id=id, mailbox=mailbox, **fields)

    return _make


@pytest.fixture
def fake_client_factory() -> Callable[..., FakeMailClient]:
    return FakeMailClient


@pytest.fixture
def settings() -> Settings:
    return Settings(
        protocol=ReceiveProtocol.IMAP,
        receive=ServerConfig("imap.example.com", 993, True),
        smtp=ServerConfig("smtp.example.com", 465, True),
        username="me@example.com",
        password="secret",
        timeout=5,
    )


@pytest.fixture
def mail_env() -> dict[str, str]:
    """A complete, valid IMAP + SMTP environment."""
    return {
        "IMAP_HOST": "imap.example.com",
        "IMAP_PORT": "993",
        "IMAP_SECURE": "true",
        "SMTP_HOST": "smtp.example.com",
        "SMTP_PORT": "465",
        "SMTP_SECURE": "true",
        "EMAIL_USER": "me@example.com",
        "EMAIL_PASS": "secret",
    }
