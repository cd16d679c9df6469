"""Reply/thread detection: decides whether received messages were answered.

No Message-ID/In-Reply-To threading is assumed to be available across all
servers, so detection works on subjects and timing alone.  Three layered
strategies trade precision for robustness against clients that mangle
subjects:

1. exact-subject: subjects equal once reply markers are stripped
2. thread-prefix: the original subject appears inside the reply subject
3. time-window: within N days, subjects equal, contain each other or share words

This is best-effort.  A reply with an unrelated subject is missed, and an
unrelated message with a similar subject can count as a reply.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from mail_mcp.clients.base import MailClient
from mail_mcp.clients.criteria import Criterion, SearchField
from mail_mcp.clients.types import Message
from mail_mcp.processing.dates import DateRange
from mail_mcp.processing.search import SearchResult, federated_search, sort_key
from mail_mcp.processing.normalizer import extract_address

logger = logging.getLogger(__name__)

# Localised reply markers: "Re:", "RE :", "Re[2]:", "Aw:", "Sv:", "回复：" ...
_REPLY_PREFIX = re.compile(
    r"^\s*(?:re|aw|sv|vs|antw|odp|回复|答复|回覆)\s*(?:\[\d+\])?\s*[:：]\s*",
    re.IGNORECASE,
)
_WORD = re.compile(r"\w+")


class Strategy(str, Enum):
    """Which heuristic recognised the reply."""

    EXACT_SUBJECT = "exact_subject"
    THREAD_PREFIX = "thread_prefix"
    TIME_WINDOW = "time_window"


@dataclass(frozen=True)
class ReplyHeuristics:
    """Tunable constants for the detector.

    The defaults are carried-over heuristics, not values fitted to any
    accuracy target.
    """

    window: timedelta = timedelta(days=7)
    min_thread_prefix_length: int = 3   # original must be longer than this
    min_containment_length: int = 5     # for the time-window containment check
    min_word_length: int = 3            # words must be longer than this to count
    max_required_words: int = 2


DEFAULT_HEURISTICS = ReplyHeuristics()


@dataclass(frozen=True)
class ReplyAnalysis:
    """Per-message verdict."""

    original_id: int
    mailbox: str
    replied: bool
    subject: str = ""
    date: datetime | None = None
    matched_reply_id: int | None = None
    matched_mailbox: str | None = None
    strategy: Strategy | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_id": self.original_id,
            "mailbox": self.mailbox,
            "subject": self.subject,
            "date": self.date.isoformat() if self.date else None,
            "replied": self.replied,
            "matched_reply_id": self.matched_reply_id,
            "matched_mailbox": self.matched_mailbox,
            "strategy": self.strategy.value if self.strategy else None,
        }


@dataclass(frozen=True)
class UnrepliedReport:
    """Result of ``find_unreplied``: the unanswered subset plus context."""

    sender: str
    unreplied: list[ReplyAnalysis]
    received: SearchResult
    sent: SearchResult

    @property
    def total_received(self) -> int:
        return self.received.total_matches

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sender": self.sender,
            "total_received": self.received.total_matches,
            "total_sent_to_sender": self.sent.total_matches,
            "unreplied_count": len(self.unreplied),
            "unreplied": [a.to_dict() for a in self.unreplied],
            "mailboxes_searched": [o.to_dict() for o in self.received.mailboxes_searched],
            "note": (
                f"{len(self.unreplied)} of {self.received.total_matches} message(s) from "
                f"{self.sender} have no detectable reply. Detection is subject-based and best-effort."
            ),
        }
        warning = self.received.warning or self.sent.warning
        if warning:
            data["warning"] = warning
        return data


# ── Subject helpers ────────────────────────────────────────────────────────────


def normalize_subject(subject: str | None) -> str:
    """Strip every leading reply marker, trim and case-fold."""
    text = (subject or "").strip()
    while True:
        stripped = _REPLY_PREFIX.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped
    return text.strip().casefold()


def _significant_words(subject: str, min_length: int) -> set[str]:
    return {w for w in _WORD.findall(subject) if len(w) > min_length}


# ── Strategies ────────────────────────────────────────────────────────────────


def _exact_subject(original: str, reply: str, _h: ReplyHeuristics) -> bool:
    return bool(original) and original == reply


def _thread_prefix(original: str, reply: str, h: ReplyHeuristics) -> bool:
    return len(original) > h.min_thread_prefix_length and original in reply and original != reply


def _similar_subject(original: str, reply: str, h: ReplyHeuristics) -> bool:
    if not original or not reply:
        return False
    if original == reply:
        return True
    if len(original) > h.min_containment_length and (original in reply or reply in original):
        return True
    words = _significant_words(original, h.min_word_length)
    if not words:
        return False
    required = min(h.max_required_words, math.ceil(len(words) / 2))
    return len(words & _significant_words(reply, h.min_word_length)) >= required


def analyze_replies(
    received: list[Message],
    sent: list[Message],
    heuristics: ReplyHeuristics = DEFAULT_HEURISTICS,
) -> list[ReplyAnalysis]:
    """Give a verdict for every received message.  Pure computation.

    Only sent messages dated strictly after the received message are
    considered.  Undated messages order as the epoch, so an undated sent
    message can never count as a reply.
    """
    received_sorted = sorted(received, key=sort_key)
    sent_sorted = sorted(sent, key=sort_key)
    sent_subjects = [(s, normalize_subject(s.subject), sort_key(s)) for s in sent_sorted]

    verdicts: list[ReplyAnalysis] = []
    for original in received_sorted:
        subject = normalize_subject(original.subject)
        when = sort_key(original)
        later = [(s, subj, at) for s, subj, at in sent_subjects if at > when]

        match: tuple[Message, Strategy] | None = None
        for strategy, check in (
            (Strategy.EXACT_SUBJECT, _exact_subject),
            (Strategy.THREAD_PREFIX, _thread_prefix),
        ):
            hit = next((s for s, subj, _at in later if check(subject, subj, heuristics)), None)
            if hit is not None:
                match = (hit, strategy)
                break
        if match is None:
            deadline = when + heuristics.window
            hit = next(
                (s for s, subj, at in later if at <= deadline and _similar_subject(subject, subj, heuristics)),
                None,
            )
            if hit is not None:
                match = (hit, Strategy.TIME_WINDOW)

        if match is None:
            verdicts.append(ReplyAnalysis(
                original_id=original.id,
                mailbox=original.mailbox,
                replied=False,
                subject=original.subject,
                date=original.date,
            ))
        else:
            reply, strategy = match
            logger.debug(
                "Message %s/%s replied by %s/%s (%s)",
                original.mailbox, original.id, reply.mailbox, reply.id, strategy.value,
            )
            verdicts.append(ReplyAnalysis(
                original_id=original.id,
                mailbox=original.mailbox,
                replied=True,
                subject=original.subject,
                date=original.date,
                matched_reply_id=reply.id,
                matched_mailbox=reply.mailbox,
                strategy=strategy,
            ))
    return verdicts


async def find_unreplied(
    client: MailClient,
    from_address: str,
    date_range: DateRange | None = None,
    *,
    heuristics: ReplyHeuristics = DEFAULT_HEURISTICS,
) -> UnrepliedReport:
    """Find messages from ``from_address`` that have no detectable reply.

    Runs two federated searches (FROM and TO the address), both filtered by
    ``date_range``, then applies ``analyze_replies``.
    """
    address = extract_address(from_address)
    if not address:
        raise ValueError("sender parameter is required")

    received = await federated_search(client, Criterion(SearchField.FROM, address), date_range)
    sent = await federated_search(client, Criterion(SearchField.TO, address), date_range)

    received_keys = {(m.mailbox, m.id) for m in received.messages}
    outgoing = [m for m in sent.messages if (m.mailbox, m.id) not in received_keys]

    verdicts = analyze_replies(received.messages, outgoing, heuristics)
    unreplied = [v for v in verdicts if not v.replied]
    logger.info(
        "Reply analysis for %s: %d received, %d sent, %d unreplied",
        address, len(received.messages), len(outgoing), len(unreplied),
    )
    return UnrepliedReport(sender=address, unreplied=unreplied, received=received, sent=sent)
