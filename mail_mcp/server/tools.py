"""MCP tool surface: registers the mail tools on a FastMCP server.

``MailTools`` holds the behaviour and returns plain dicts (easy to test);
``build_server`` wraps each method as an MCP tool that renders JSON on
success and ``"Error: ..."`` on failure.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable
from typing import Any

from mcp.server.fastmcp import FastMCP

from mail_mcp.clients.base import INBOX, MailboxError, MailError
from mail_mcp.clients.criteria import Criterion, SearchField, SearchTerm, all_of, parse_criteria
from mail_mcp.clients.session import MailSession
from mail_mcp.clients.types import MailboxEntry, Message, OutgoingMessage
from mail_mcp.processing.composer import compose_reply
from mail_mcp.processing.dates import DateRange, parse_date
from mail_mcp.processing.replies import find_unreplied
from mail_mcp.processing.search import discover_sent_folder, federated_search

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-mail"


def _require(value: Any, name: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{name} parameter is required")
    return value.strip() if isinstance(value, str) else value


def _split_addresses(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def mailbox_tree(entries: list[MailboxEntry]) -> dict[str, Any]:
    """Nest a flat mailbox listing by its hierarchy delimiter."""
    tree: dict[str, Any] = {}
    for entry in sorted(entries, key=lambda e: e.name):
        parts = entry.name.split(entry.delimiter) if entry.delimiter else [entry.name]
        node = tree
        for part in parts[:-1]:
            node = node.setdefault(part, {"children": {}})["children"]
        leaf = node.setdefault(parts[-1], {"children": {}})
        leaf["path"] = entry.name
        leaf["flags"] = list(entry.flags)
    return tree


class MailTools:
    """Tool implementations bound to one ``MailSession``."""

    def __init__(self, session: MailSession) -> None:
        self._session = session

    # ── Federated search ──────────────────────────────────────────────────────

    async def _federated(
        self,
        search_type: str,
        criterion: SearchTerm,
        query: dict[str, Any],
        start_date: str | None,
        end_date: str | None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        date_range = DateRange.from_inputs(start_date, end_date, start_time, end_time)
        client = await self._session.receiver()
        result = await federated_search(client, criterion, date_range)
        return {
            "search_type": search_type,
            **query,
            "search_criteria": criterion.to_imap(),
            **result.to_dict(include_body=False),
        }

    async def search_by_sender(
        self,
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        sender = _require(sender, "sender")
        return await self._federated(
            "By Sender", Criterion(SearchField.FROM, sender), {"sender": sender},
            start_date, end_date, start_time, end_time,
        )

    async def search_by_subject(
        self,
        subject: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        subject = _require(subject, "subject")
        return await self._federated(
            "By Subject", Criterion(SearchField.SUBJECT, subject), {"subject_keywords": subject},
            start_date, end_date, start_time, end_time,
        )

    async def search_by_recipient(
        self,
        recipient: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        recipient = _require(recipient, "recipient")
        return await self._federated(
            "By Recipient", Criterion(SearchField.TO, recipient), {"recipient": recipient},
            start_date, end_date, start_time, end_time,
        )

    async def search_unread_from_sender(
        self,
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        sender = _require(sender, "sender")
        criterion = all_of(Criterion(SearchField.UNSEEN), Criterion(SearchField.FROM, sender))
        return await self._federated(
            "Unread messages from specific sender", criterion, {"sender": sender},
            start_date, end_date, start_time, end_time,
        )

    async def search_since_date(self, date: str) -> dict[str, Any]:
        date = _require(date, "date")
        parsed = parse_date(date)
        if parsed is None:
            raise ValueError(f"Could not parse date {date!r}; try 2025-01-31 or 31-Jan-2025")
        criterion = Criterion(SearchField.SINCE, parsed.value.date())
        return await self._federated("Since Date", criterion, {"since_date": date}, None, None)

    async def search_by_body(self, text: str) -> dict[str, Any]:
        text = _require(text, "text")
        return await self._federated(
            "By Body Text", Criterion(SearchField.BODY, text), {"body_text": text}, None, None
        )

    async def search_larger_than(self, size: int) -> dict[str, Any]:
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ValueError("size parameter must be a non-negative number")
        return await self._federated(
            "Larger Than Size", Criterion(SearchField.LARGER, size), {"minimum_size": size}, None, None
        )

    async def search_with_keyword(self, keyword: str) -> dict[str, Any]:
        keyword = _require(keyword, "keyword")
        return await self._federated(
            "With Keyword", Criterion(SearchField.KEYWORD, keyword), {"keyword": keyword}, None, None
        )

    async def search_messages(
        self,
        criteria: list[Any] | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> dict[str, Any]:
        criterion = parse_criteria(criteria)
        result = await self._federated("Custom", criterion, {}, start_date, end_date)
        if not criteria:
            result["note"] += ' Showing all messages. Use criteria like ["UNSEEN"] to filter.'
        return result

    async def search_unreplied_from_sender(
        self,
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        sender = _require(sender, "sender")
        date_range = DateRange.from_inputs(start_date, end_date, start_time, end_time)
        client = await self._session.receiver()
        report = await find_unreplied(client, sender, date_range)
        return report.to_dict()

    # ── Single mailbox ────────────────────────────────────────────────────────

    async def get_messages(self, ids: list[int], mailbox: str = INBOX) -> list[dict[str, Any]]:
        if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
            raise ValueError("ids must be an array of numbers")
        client = await self._session.receiver()
        await client.open_mailbox(mailbox, read_only=True)
        return [m.to_dict() for m in await client.fetch_messages(ids)]

    async def get_message(self, id: int, mailbox: str = INBOX) -> dict[str, Any]:
        return (await self._fetch_one(id, mailbox)).to_dict()

    async def _fetch_one(self, id: int, mailbox: str) -> Message:
        if not isinstance(id, int) or isinstance(id, bool):
            raise ValueError("id must be a number")
        client = await self._session.receiver()
        await client.open_mailbox(mailbox, read_only=True)
        messages = await client.fetch_messages([id])
        if not messages:
            raise MailboxError(f"Message with id {id} not found in {mailbox}")
        return messages[0]

    async def delete_message(self, id: int, mailbox: str = INBOX) -> str:
        if not isinstance(id, int) or isinstance(id, bool):
            raise ValueError("id must be a number")
        client = await self._session.receiver()
        await client.open_mailbox(mailbox, read_only=False)
        await client.delete_message(id)
        return f"Message with id {id} deleted successfully from {mailbox}"

    async def get_message_count(self, mailbox: str = INBOX) -> str:
        client = await self._session.receiver()
        info = await client.open_mailbox(mailbox, read_only=True)
        return f"Total messages in {mailbox}: {info.total}"

    async def get_unseen_messages(self, mailbox: str = INBOX) -> list[dict[str, Any]]:
        return await self._search_one(mailbox, Criterion(SearchField.UNSEEN))

    async def get_recent_messages(self, mailbox: str = INBOX) -> list[dict[str, Any]]:
        return await self._search_one(mailbox, Criterion(SearchField.RECENT))

    async def _search_one(self, mailbox: str, criterion: SearchTerm) -> list[dict[str, Any]]:
        client = await self._session.receiver()
        await client.open_mailbox(mailbox, read_only=True)
        ids = await client.search(criterion)
        return [m.to_dict(include_body=False) for m in await client.fetch_messages(ids)]

    async def list_mailboxes(self) -> dict[str, Any]:
        client = await self._session.receiver()
        return mailbox_tree(await client.list_mailboxes())

    async def open_mailbox(self, name: str = INBOX, read_only: bool = False) -> dict[str, Any]:
        client = await self._session.receiver()
        info = await client.open_mailbox(name or INBOX, read_only=read_only)
        return info.to_dict()

    # ── Sending ───────────────────────────────────────────────────────────────

    async def send_email(
        self,
        to: str,
        subject: str,
        text: str | None = None,
        html: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> dict[str, Any]:
        recipients = _split_addresses(_require(to, "to"))
        if not text and not html:
            raise ValueError("Either text or html content is required")
        outgoing = OutgoingMessage(
            to=recipients,
            subject=subject or "",
            text=text,
            html=html,
            cc=_split_addresses(cc),
            bcc=_split_addresses(bcc),
        )
        smtp = await self._session.smtp()
        result, _mime = await smtp.send(outgoing)
        return result.to_dict()

    async def reply_to_email(
        self,
        original_id: int,
        text: str,
        html: str | None = None,
        reply_to_all: bool = False,
        include_original: bool = True,
        mailbox: str = INBOX,
    ) -> dict[str, Any]:
        original = await self._fetch_one(original_id, mailbox)
        outgoing = compose_reply(
            original,
            text,
            account_address=self._session.account_address,
            reply_to_all=reply_to_all,
            include_original=include_original,
            html=html,
        )
        smtp = await self._session.smtp()
        result, mime = await smtp.send(outgoing)
        saved_to = await self._save_sent_copy(mime.as_bytes())
        return {
            **result.to_dict(),
            "reply_info": {
                "original_id": original.id,
                "original_mailbox": original.mailbox,
                "to": outgoing.to,
                "cc": outgoing.cc,
                "subject": outgoing.subject,
                "included_original": include_original,
                "saved_to": saved_to,
            },
        }

    async def _save_sent_copy(self, raw: bytes) -> str | None:
        """Best-effort copy into the sent folder.  Failure is logged, never raised."""
        try:
            client = await self._session.receiver()
            folder = await discover_sent_folder(client)
            if folder is None:
                logger.warning("No sent folder found; reply copy not saved")
                return None
            await client.append_message(folder, raw)
        except MailError as exc:
            logger.warning("Could not save reply to the sent folder: %s", exc)
            return None
        logger.info("Saved reply copy to %s", folder)
        return folder

    # ── Connections ───────────────────────────────────────────────────────────

    async def get_connection_status(self) -> dict[str, Any]:
        return self._session.status()

    async def connect_all(self) -> dict[str, Any]:
        return await self._session.connect_all()

    async def disconnect_all(self) -> str:
        await self._session.disconnect_all()
        return "Disconnected from all mail servers"


async def _respond(call: Awaitable[Any]) -> str:
    """Await a tool call and render it for the MCP host."""
    try:
        result = await call
    except (MailError, ValueError) as exc:
        logger.error("Tool failed: %s", exc)
        return f"Error: {exc}"
    except Exception as exc:  # noqa: BLE001
        logger.error("Unexpected tool failure: %s", exc, exc_info=True)
        return f"Error: {exc}"
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2, ensure_ascii=False, default=str)


def build_server(session: MailSession, name: str = SERVER_NAME) -> FastMCP:
    """Create the FastMCP server with every mail tool registered."""
    mcp = FastMCP(name)
    tools = MailTools(session)

    @mcp.tool()
    async def search_by_sender(
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> str:
        """Search INBOX and the sent folder for messages from a sender.

        Dates accept 2025-01-31, 2025-01-31T09:00, 31-Jan-2025, "yesterday",
        "3 days ago".  A date-only end_date covers the whole day.
        """
        return await _respond(tools.search_by_sender(sender, start_date, end_date, start_time, end_time))

    @mcp.tool()
    async def search_by_subject(
        subject: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> str:
        """Search INBOX and the sent folder for messages whose subject contains text."""
        return await _respond(tools.search_by_subject(subject, start_date, end_date, start_time, end_time))

    @mcp.tool()
    async def search_by_recipient(
        recipient: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> str:
        """Search INBOX and the sent folder for messages addressed to a recipient."""
        return await _respond(tools.search_by_recipient(recipient, start_date, end_date, start_time, end_time))

    @mcp.tool()
    async def search_unread_from_sender(
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> str:
        """Find messages that are both unread AND from the given sender."""
        return await _respond(
            tools.search_unread_from_sender(sender, start_date, end_date, start_time, end_time)
        )

    @mcp.tool()
    async def search_unreplied_from_sender(
        sender: str,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> str:
        """List messages from a sender that have no detectable reply.

        Replies are matched by subject and timing, so results are best-effort.
        """
        return await _respond(
            tools.search_unreplied_from_sender(sender, start_date, end_date, start_time, end_time)
        )

    @mcp.tool()
    async def search_since_date(date: str) -> str:
        """Find messages received on or after a date (e.g. 2025-04-20 or 20-Apr-2025)."""
        return await _respond(tools.search_since_date(date))

    @mcp.tool()
    async def search_by_body(text: str) -> str:
        """Find messages whose body contains the given text."""
        return await _respond(tools.search_by_body(text))

    @mcp.tool()
    async def search_larger_than(size: int) -> str:
        """Find messages larger than the given size in bytes."""
        return await _respond(tools.search_larger_than(size))

    @mcp.tool()
    async def search_with_keyword(keyword: str) -> str:
        """Find messages carrying an IMAP keyword flag."""
        return await _respond(tools.search_with_keyword(keyword))

    @mcp.tool()
    async def search_messages(
        criteria: list[Any] | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> str:
        """Search with AND-combined criteria.

        Each criterion is a field name ("UNSEEN"), a [field, value] pair
        (["FROM", "a@b.com"]) or {"field": ..., "value": ...}.  Fields: ALL,
        FROM, TO, CC, SUBJECT, BODY, TEXT, SINCE, BEFORE, ON, SEEN, UNSEEN,
        RECENT, LARGER, SMALLER, KEYWORD.  Empty criteria returns everything.
        """
        return await _respond(tools.search_messages(criteria, start_date, end_date))

    @mcp.tool()
    async def get_message(id: int, mailbox: str = INBOX) -> str:
        """Fetch one message (headers and body) by id from a mailbox."""
        return await _respond(tools.get_message(id, mailbox))

    @mcp.tool()
    async def get_messages(ids: list[int], mailbox: str = INBOX) -> str:
        """Fetch several messages by id from a mailbox."""
        return await _respond(tools.get_messages(ids, mailbox))

    @mcp.tool()
    async def delete_message(id: int, mailbox: str = INBOX) -> str:
        """Permanently delete a message by id."""
        return await _respond(tools.delete_message(id, mailbox))

    @mcp.tool()
    async def get_message_count(mailbox: str = INBOX) -> str:
        """Count the messages in a mailbox."""
        return await _respond(tools.get_message_count(mailbox))

    @mcp.tool()
    async def get_unseen_messages(mailbox: str = INBOX) -> str:
        """List unread messages in a mailbox."""
        return await _respond(tools.get_unseen_messages(mailbox))

    @mcp.tool()
    async def get_recent_messages(mailbox: str = INBOX) -> str:
        """List messages flagged \\Recent in a mailbox."""
        return await _respond(tools.get_recent_messages(mailbox))

    @mcp.tool()
    async def list_mailboxes() -> str:
        """List the account's mailboxes as a tree."""
        return await _respond(tools.list_mailboxes())

    @mcp.tool()
    async def open_mailbox(name: str = INBOX, read_only: bool = False) -> str:
        """Select a mailbox and report its message counts."""
        return await _respond(tools.open_mailbox(name, read_only))

    @mcp.tool()
    async def send_email(
        to: str,
        subject: str,
        text: str | None = None,
        html: str | None = None,
        cc: str | None = None,
        bcc: str | None = None,
    ) -> str:
        """Send an email.  to/cc/bcc are comma-separated; text or html is required."""
        return await _respond(tools.send_email(to, subject, text, html, cc, bcc))

    @mcp.tool()
    async def reply_to_email(
        original_id: int,
        text: str,
        html: str | None = None,
        reply_to_all: bool = False,
        include_original: bool = True,
        mailbox: str = INBOX,
    ) -> str:
        """Reply to a message, optionally to all recipients and quoting the original."""
        return await _respond(
            tools.reply_to_email(original_id, text, html, reply_to_all, include_original, mailbox)
        )

    @mcp.tool()
    async def get_connection_status() -> str:
        """Show which mail connections are open."""
        return await _respond(tools.get_connection_status())

    @mcp.tool()
    async def connect_all() -> str:
        """Connect to the receive server and the SMTP server."""
        return await _respond(tools.connect_all())

    @mcp.tool()
    async def disconnect_all() -> str:
        """Close every mail connection."""
        return await _respond(tools.disconnect_all())

    return mcp
