"""Message normalizer: raw protocol bytes to canonical ``Message`` records.

Parsing failures are absorbed here.  A half-parsed message is more useful to
the assistant than an error, so ``normalize`` always returns something built
from whatever headers could be recovered.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from email import message_from_bytes, policy
from email.header import decode_header, make_header
from email.message import Message as MimeMessage
from email.utils import getaddresses, parsedate_to_datetime

import html2text

from mail_mcp.clients.types import Message, RawMessage

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"

_ANGLE_ADDR = re.compile(r"<\s*([^<>\s]+@[^<>\s]+)\s*>")
_BARE_ADDR = re.compile(r"[\w.!#$%&'*+/=?^`{|}~-]+@[\w-]+(?:\.[\w-]+)+")
_HEADER_LINE = re.compile(r"^([A-Za-z][A-Za-z0-9-]*):[ \t]*(.*)$")


# ── Addresses ─────────────────────────────────────────────────────────────────


def extract_address(value: str | None) -> str:
    """Reduce ``"Jane Doe" <jane@x.com>`` (or a bare address) to ``jane@x.com``.

    Falls back to the stripped original when no address can be found, so a
    malformed header is passed through rather than dropped.
    """
    if not value:
        return ""
    m = _ANGLE_ADDR.search(value)
    if m:
        return m.group(1)
    m = _BARE_ADDR.search(value)
    if m:
        return m.group(0)
    return value.strip()


def extract_addresses(value: str | None) -> tuple[str, ...]:
    """Split an address-list header and reduce every entry to a bare address."""
    if not value:
        return ()
    found: list[str] = []
    for name, addr in getaddresses([value]):
        if addr and "@" in addr:
            found.append(addr)
        elif name or addr:
            found.append(extract_address(f"{name} {addr}".strip()))
    if not found:
        # getaddresses gave up entirely (unbalanced quotes etc.)
        found = [extract_address(part) for part in value.split(",") if part.strip()]
    return tuple(found)


# ── Headers and bodies ────────────────────────────────────────────────────────


def decode_header_value(value: object) -> str:
    """Decode RFC 2047 encoded-words; unknown charsets degrade to the raw text."""
    if value is None:
        return ""
    text = str(value)
    try:
        return str(make_header(decode_header(text)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return text


def _parse_header_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def _decode_part(part: MimeMessage) -> str:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _extract_bodies(msg: MimeMessage) -> tuple[str | None, str | None]:
    """Return the first non-attachment text/plain and text/html parts."""
    text: str | None = None
    html: str | None = None
    for part in msg.walk():
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")).lower():
            continue
        ctype = part.get_content_type()
        if ctype == "text/plain" and text is None:
            text = _decode_part(part)
        elif ctype == "text/html" and html is None:
            html = _decode_part(part)
    return text, html


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


# ── Normalization ─────────────────────────────────────────────────────────────


def normalize(raw: RawMessage) -> Message:
    """Convert a fetched message into a ``Message``.  Never raises."""
    try:
        return _normalize_full(raw)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Full parse of message %s in %s failed (%s); using header scan",
            raw.id,
            raw.mailbox,
            exc,
        )
        return _normalize_headers_only(raw)


def _address_header(value: object) -> tuple[str, ...]:
    """Split an address-list header before decoding it.

    Encoded display names may hide commas (``=?utf-8?q?Doe=2C_Jane?=``), so
    only the entries that survive the split are decoded.
    """
    if value is None:
        return ()
    return tuple(decode_header_value(entry) for entry in extract_addresses(str(value)))


def _normalize_full(raw: RawMessage) -> Message:
    msg = message_from_bytes(raw.raw, policy=policy.compat32)

    sender_display = decode_header_value(msg.get("From", ""))
    text, html = _extract_bodies(msg)
    if text is None and html:
        text = html_to_text(html)

    return Message(
        id=raw.id,
        mailbox=raw.mailbox,
        subject=decode_header_value(msg.get("Subject", "")).strip() or NO_SUBJECT,
        sender=extract_address(sender_display),
        sender_display=sender_display,
        to=_address_header(msg.get("To")),
        cc=_address_header(msg.get("Cc")),
        bcc=_address_header(msg.get("Bcc")),
        date=_parse_header_date(msg.get("Date")) or raw.internal_date,
        flags=raw.flags,
        text=text.strip() if text else None,
        html=html or None,
        size=raw.size if raw.size is not None else len(raw.raw),
        message_id=(msg.get("Message-ID") or "").strip() or None,
        references=(msg.get("References") or "").strip() or None,
    )


def _normalize_headers_only(raw: RawMessage) -> Message:
    """Best-effort record from a line-by-line scan of the header block."""
    text = raw.raw.decode("utf-8", errors="replace")
    head, _, body = text.replace("\r\n", "\n").partition("\n\n")

    headers: dict[str, str] = {}
    current = ""
    for line in head.split("\n"):
        if line[:1] in (" ", "\t") and current:
            headers[current] += " " + line.strip()
            continue
        m = _HEADER_LINE.match(line)
        if m:
            current = m.group(1).lower()
            headers.setdefault(current, m.group(2).strip())
        else:
            current = ""

    sender_display = headers.get("from", "")
    return Message(
        id=raw.id,
        mailbox=raw.mailbox,
        subject=headers.get("subject", "").strip() or NO_SUBJECT,
        sender=extract_address(sender_display),
        sender_display=sender_display,
        to=_address_header(headers.get("to")),
        cc=_address_header(headers.get("cc")),
        date=_parse_header_date(headers.get("date")) or raw.internal_date,
        flags=raw.flags,
        text=body.strip() or None,
        size=raw.size if raw.size is not None else len(raw.raw),
        message_id=headers.get("message-id") or None,
        references=headers.get("references") or None,
    )
