"""Data types shared across the mail client, processing and server modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any


@dataclass(frozen=True)
class RawMessage:
    """A message exactly as a protocol client fetched it, before normalization.

    IMAP fills every field; POP3 has no flags or internal date.
    """

    id: int
    mailbox: str
    raw: bytes
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None
    size: int | None = None


@dataclass(frozen=True)
class Message:
    """Canonical representation of one mail item.

    ``id`` is only unique within ``mailbox``; never use it alone as a key
    across the results of a federated search.
    """

    id: int
    mailbox: str
    subject: str
    sender: str
    sender_display: str = ""
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    date: datetime | None = None
    flags: tuple[str, ...] = ()
    text: str | None = None
    html: str | None = None
    size: int = 0
    message_id: str | None = None
    references: str | None = None

    @property
    def is_seen(self) -> bool:
        return "\\Seen" in self.flags

    def to_dict(self, *, include_body: bool = True) -> dict[str, Any]:
        """JSON-serialisable view used by the tool and CLI layers."""
        data: dict[str, Any] = {
            "id": self.id,
            "mailbox": self.mailbox,
            "subject": self.subject,
            "from": self.sender_display or self.sender,
            "from_address": self.sender,
            "to": list(self.to),
            "cc": list(self.cc),
            "date": self.date.isoformat() if self.date else None,
            "flags": list(self.flags),
            "size": self.size,
        }
        if self.bcc:
            data["bcc"] = list(self.bcc)
        if include_body:
            data["text"] = self.text
            data["html"] = self.html
        return data


@dataclass(frozen=True)
class MailboxInfo:
    """Status of a mailbox right after it was opened."""

    name: str
    total: int
    recent: int = 0
    unseen: int | None = None
    uidvalidity: int | None = None
    uidnext: int | None = None
    read_only: bool = True
    permanent_flags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "messages": {"total": self.total, "new": self.recent, "unseen": self.unseen},
            "perm_flags": list(self.permanent_flags),
            "uidvalidity": self.uidvalidity,
            "uidnext": self.uidnext,
            "read_only": self.read_only,
        }


@dataclass(frozen=True)
class MailboxEntry:
    """One row of a server's mailbox listing."""

    name: str
    delimiter: str = "/"
    flags: tuple[str, ...] = ()


@dataclass
class OutgoingMessage:
    """A message ready for SMTP submission.

    Built by ``send_email`` directly or by ``compose_reply``.
    """

    to: list[str]
    subject: str
    text: str | None = None
    html: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    in_reply_to: str | None = None
    references: str | None = None

    @property
    def recipients(self) -> list[str]:
        """Every envelope recipient: to + cc + bcc."""
        return [*self.to, *self.cc, *self.bcc]

    def to_mime(self, sender: str) -> EmailMessage:
        """Render as a MIME message. Bcc is deliberately left out of the headers."""
        if not self.text and not self.html:
            raise ValueError("Either text or html content is required")

        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = ", ".join(self.to)
        if self.cc:
            msg["Cc"] = ", ".join(self.cc)
        msg["Subject"] = self.subject
        msg["Date"] = formatdate(localtime=True)
        domain = sender.rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=domain)
        if self.in_reply_to:
            msg["In-Reply-To"] = self.in_reply_to
        if self.references:
            msg["References"] = self.references

        if self.text and self.html:
            msg.set_content(self.text)
            msg.add_alternative(self.html, subtype="html")
        elif self.html:
            msg.set_content(self.html, subtype="html")
        else:
            msg.set_content(self.text or "")
        return msg


@dataclass(frozen=True)
class SendResult:
    """Outcome of an SMTP submission."""

    message_id: str
    accepted: list[str]
    rejected: list[str]
    response: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "response": self.response,
        }
