"""Multi-mailbox (federated) search over INBOX plus the best-guess sent folder."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from mail_mcp.clients.base import INBOX, MailboxError, MailClient
from mail_mcp.clients.criteria import SearchTerm
from mail_mcp.clients.types import Message
from mail_mcp.processing.dates import DateRange, as_utc

logger = logging.getLogger(__name__)

#: Conventional sent-folder names, probed in order; the first that opens wins.
SENT_FOLDER_NAMES: tuple[str, ...] = (
    "Sent",
    "Sent Messages",
    "Sent Items",
    "Sent Mail",
    "[Gmail]/Sent Mail",
    "[Google Mail]/Sent Mail",
    "INBOX.Sent",
    "INBOX/Sent",
    "已发送",
    "已发送邮件",
    "Gesendet",
    "Gesendete Elemente",
    "Envoyés",
    "Éléments envoyés",
    "Enviados",
    "Elementos enviados",
    "Posta inviata",
    "Verzonden",
    "Отправленные",
    "送信済み",
)

NO_SENT_FOLDER_WARNING = (
    "No sent folder found (tried {n} common names); results cover INBOX only."
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class MailboxOutcome:
    """What happened in one mailbox during a federated search."""

    mailbox: str
    matching_ids: list[int] = field(default_factory=list)
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.matching_ids)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mailbox": self.mailbox,
            "matching_ids": self.matching_ids,
            "count": self.count,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class SearchResult:
    """Aggregate output of a federated search."""

    mailboxes_searched: list[MailboxOutcome]
    messages: list[Message]
    note: str = ""
    warning: str | None = None
    date_range: DateRange | None = None

    @property
    def total_matches(self) -> int:
        return len(self.messages)

    @property
    def sent_folder(self) -> str | None:
        names = [o.mailbox for o in self.mailboxes_searched if o.mailbox != INBOX]
        return names[0] if names else None

    def to_dict(self, *, include_body: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mailboxes_searched": [o.to_dict() for o in self.mailboxes_searched],
            "total_matches": self.total_matches,
            "messages": [m.to_dict(include_body=include_body) for m in self.messages],
            "note": self.note,
        }
        if self.date_range is not None:
            data["date_range"] = {
                "start": self.date_range.start.isoformat() if self.date_range.start else None,
                "end": self.date_range.end.isoformat() if self.date_range.end else None,
            }
        if self.warning:
            data["warning"] = self.warning
        return data


def sort_key(message: Message) -> datetime:
    """Undated messages sort as the epoch (oldest)."""
    return as_utc(message.date) if message.date else _EPOCH


async def discover_sent_folder(
    client: MailClient,
    names: Sequence[str] = SENT_FOLDER_NAMES,
) -> str | None:
    """Probe ``names`` in order and return the first mailbox that opens.

    Probes are sequential because the connection holds one selected mailbox
    at a time.  ``MailConnectionError`` is not caught: a dead connection is
    fatal, a missing folder is not.
    """
    for name in names:
        try:
            await client.open_mailbox(name, read_only=True)
        except MailboxError:
            logger.debug("Sent folder candidate %r not available", name)
            continue
        logger.debug("Using %r as the sent folder", name)
        return name
    return None


async def federated_search(
    client: MailClient,
    criterion: SearchTerm,
    date_range: DateRange | None = None,
    *,
    sent_folder_names: Sequence[str] = SENT_FOLDER_NAMES,
) -> SearchResult:
    """Run ``criterion`` in INBOX and the sent folder and merge the results.

    A mailbox that fails to open, search or fetch is recorded with its error
    and the remaining mailboxes are still searched.  ``MailConnectionError``
    propagates and fails the whole search.
    """
    sent_folder = await discover_sent_folder(client, sent_folder_names)
    mailboxes = [INBOX] if sent_folder is None else [INBOX, sent_folder]
    warning = None
    if sent_folder is None:
        warning = NO_SENT_FOLDER_WARNING.format(n=len(sent_folder_names))
        logger.info("%s", warning)

    outcomes: list[MailboxOutcome] = []
    merged: dict[tuple[str, int], Message] = {}
    for mailbox in mailboxes:
        try:
            await client.open_mailbox(mailbox, read_only=True)
            ids = await client.search(criterion)
            fetched = await client.fetch_messages(ids) if ids else []
        except MailboxError as exc:
            logger.warning("Search in %s failed: %s", mailbox, exc)
            outcomes.append(MailboxOutcome(mailbox=mailbox, error=str(exc)))
            continue

        outcomes.append(MailboxOutcome(mailbox=mailbox, matching_ids=list(ids)))
        for message in fetched:
            tagged = message if message.mailbox == mailbox else replace(message, mailbox=mailbox)
            merged.setdefault((mailbox, tagged.id), tagged)

    messages = list(merged.values())
    if date_range is not None:
        messages = [m for m in messages if date_range.contains(m.date)]
    messages.sort(key=sort_key, reverse=True)

    searched = len(outcomes)
    if messages:
        note = f"Found {len(messages)} message(s) matching {criterion.describe()} across {searched} mailbox(es)."
    else:
        note = f"No messages found matching {criterion.describe()} in {searched} mailbox(es)."
    if date_range is not None:
        note += f" Date range: {date_range.describe()}."
    logger.info("%s", note)

    return SearchResult(
        mailboxes_searched=outcomes,
        messages=messages,
        note=note,
        warning=warning,
        date_range=date_range,
    )
