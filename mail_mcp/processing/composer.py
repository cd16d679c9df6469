"""Reply composer: builds the outgoing reply for an original message."""

from __future__ import annotations

import html as html_lib
from email.utils import format_datetime

from mail_mcp.clients.types import Message, OutgoingMessage

REPLY_PREFIX = "Re: "

_QUOTE_STYLE = "margin:0 0 0 .8ex;border-left:2px solid #ccc;padding-left:1ex;color:#666"


def reply_subject(subject: str) -> str:
    """Prefix with ``Re: `` unless the subject already starts with ``Re:``.

    The check is case-sensitive, so ``RE: x`` becomes ``Re: RE: x``.
    """
    if subject.startswith(REPLY_PREFIX.strip()):
        return subject
    return f"{REPLY_PREFIX}{subject}"


def attribution(original: Message) -> str:
    when = format_datetime(original.date) if original.date else "an unknown date"
    who = original.sender_display or original.sender
    return f"On {when}, {who} wrote:"


def quote_text(body: str) -> str:
    return "\n".join(f"> {line}" for line in body.splitlines())


def text_to_html(text: str) -> str:
    """Minimal HTML rendition of a plain-text reply."""
    paragraphs = text.replace("\r\n", "\n").split("\n\n")
    return "".join(
        f"<p>{html_lib.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs
    )


def _recipients(
    original: Message,
    account_address: str,
    reply_to_all: bool,
) -> tuple[list[str], list[str]]:
    primary = original.sender
    if not reply_to_all:
        return [primary], []

    skip = {account_address.casefold(), primary.casefold()}
    cc: list[str] = []
    for addr in (*original.to, *original.cc):
        key = addr.casefold()
        if not addr or key in skip:
            continue
        skip.add(key)
        cc.append(addr)
    return [primary], cc


def compose_reply(
    original: Message,
    reply_text: str,
    *,
    account_address: str,
    reply_to_all: bool = False,
    include_original: bool = True,
    html: str | None = None,
) -> OutgoingMessage:
    """Build the reply to ``original``.

    Recipients: the original sender, plus (``reply_to_all``) the original
    To and Cc lists moved to Cc, without the replying account or duplicates.
    When the original has HTML and no HTML reply was given, one is
    synthesised from ``reply_text``.
    """
    if not reply_text and not html:
        raise ValueError("Either text or html content is required")
    if not original.sender:
        raise ValueError(f"Message {original.id} has no sender to reply to")

    to, cc = _recipients(original, account_address, reply_to_all)

    text = reply_text or None
    if html is None and original.html and text:
        html = text_to_html(text)

    if include_original:
        header = attribution(original)
        if text is not None:
            original_body = original.text or ""
            text = f"{text}\n\n{header}\n{quote_text(original_body)}"
        if html is not None:
            quoted = original.html or text_to_html(original.text or "")
            html = (
                f"{html}<br><div>{html_lib.escape(header)}</div>"
                f'<blockquote style="{_QUOTE_STYLE}">{quoted}</blockquote>'
            )

    references = " ".join(r for r in (original.references, original.message_id) if r) or None
    return OutgoingMessage(
        to=to,
        cc=cc,
        subject=reply_subject(original.subject),
        text=text,
        html=html,
        in_reply_to=original.message_id,
        references=references,
    )
