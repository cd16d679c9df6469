"""Search criteria as a small tagged variant instead of loose IMAP arrays.

A ``Criterion`` is one atomic condition; ``AllOf`` AND-composes several.
Both render to ``imapclient`` search syntax for server-side search and can
evaluate themselves against a ``Message`` for protocols without server-side
search (POP3).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Union

from mail_mcp.clients.types import Message
from mail_mcp.processing.dates import parse_date


class SearchField(str, Enum):
    """IMAP SEARCH keys supported by the tools."""

    ALL = "ALL"
    FROM = "FROM"
    TO = "TO"
    CC = "CC"
    SUBJECT = "SUBJECT"
    BODY = "BODY"
    TEXT = "TEXT"
    SINCE = "SINCE"
    BEFORE = "BEFORE"
    ON = "ON"
    SEEN = "SEEN"
    UNSEEN = "UNSEEN"
    RECENT = "RECENT"
    LARGER = "LARGER"
    SMALLER = "SMALLER"
    KEYWORD = "KEYWORD"


_FLAG_FIELDS = frozenset({SearchField.ALL, SearchField.SEEN, SearchField.UNSEEN, SearchField.RECENT})
_DATE_FIELDS = frozenset({SearchField.SINCE, SearchField.BEFORE, SearchField.ON})
_SIZE_FIELDS = frozenset({SearchField.LARGER, SearchField.SMALLER})


@dataclass(frozen=True)
class Criterion:
    """One atomic search condition, e.g. ``FROM boss@co.com``."""

    field: SearchField
    value: str | int | date | None = None

    def __post_init__(self) -> None:
        if self.field in _FLAG_FIELDS:
            if self.value is not None:
                raise ValueError(f"{self.field.value} takes no value")
        elif self.value is None or self.value == "":
            raise ValueError(f"{self.field.value} requires a value")
        elif self.field in _DATE_FIELDS and not isinstance(self.value, date):
            raise ValueError(f"{self.field.value} requires a date, got {self.value!r}")
        elif self.field in _SIZE_FIELDS and not isinstance(self.value, int):
            raise ValueError(f"{self.field.value} requires an integer size, got {self.value!r}")

    def to_imap(self) -> list[Any]:
        if self.field in _FLAG_FIELDS:
            return [self.field.value]
        value = self.value
        if isinstance(value, datetime):
            value = value.date()
        return [self.field.value, value]

    def matches(self, message: Message) -> bool:
        """Evaluate locally.  Undated messages satisfy every date condition."""
        f = self.field
        if f is SearchField.ALL:
            return True
        if f is SearchField.SEEN:
            return message.is_seen
        if f is SearchField.UNSEEN:
            return not message.is_seen
        if f is SearchField.RECENT:
            return "\\Recent" in message.flags
        if f is SearchField.KEYWORD:
            return str(self.value) in message.flags
        if f in _SIZE_FIELDS:
            size = int(self.value)  # type: ignore[arg-type]
            return message.size > size if f is SearchField.LARGER else message.size < size
        if f in _DATE_FIELDS:
            if message.date is None:
                return True
            wanted = self.value.date() if isinstance(self.value, datetime) else self.value
            got = message.date.date()
            if f is SearchField.SINCE:
                return got >= wanted  # type: ignore[operator]
            if f is SearchField.BEFORE:
                return got < wanted  # type: ignore[operator]
            return got == wanted

        needle = str(self.value).casefold()
        if f is SearchField.FROM:
            haystacks: Iterable[str] = (message.sender, message.sender_display)
        elif f is SearchField.TO:
            haystacks = message.to
        elif f is SearchField.CC:
            haystacks = message.cc
        elif f is SearchField.SUBJECT:
            haystacks = (message.subject,)
        elif f is SearchField.BODY:
            haystacks = (message.text or "", message.html or "")
        else:  # TEXT: headers and body
            haystacks = (
                message.subject,
                message.sender_display,
                message.sender,
                *message.to,
                *message.cc,
                message.text or "",
                message.html or "",
            )
        return any(needle in h.casefold() for h in haystacks)

    def describe(self) -> str:
        if self.value is None:
            return self.field.value
        return f"{self.field.value} {self.value}"


@dataclass(frozen=True)
class AllOf:
    """AND-composition of criteria.  An empty ``AllOf`` matches everything."""

    terms: tuple[Criterion, ...]

    def to_imap(self) -> list[Any]:
        if not self.terms:
            return ["ALL"]
        rendered: list[Any] = []
        for term in self.terms:
            rendered.extend(term.to_imap())
        return rendered

    def matches(self, message: Message) -> bool:
        return all(term.matches(message) for term in self.terms)

    def describe(self) -> str:
        return " AND ".join(t.describe() for t in self.terms) or "ALL"


SearchTerm = Union[Criterion, AllOf]


def all_of(*terms: Criterion) -> AllOf:
    return AllOf(tuple(terms))


def parse_criteria(items: Sequence[Any] | None) -> SearchTerm:
    """Build a search term from loosely-typed tool input.

    Accepts any mix of bare field names (``"UNSEEN"``), ``[field, value]``
    pairs and ``{"field": ..., "value": ...}`` records.  ``None`` or an empty
    list means ``ALL``.

    Raises:
        ValueError: on unknown fields or values of the wrong shape.
    """
    if not items:
        return Criterion(SearchField.ALL)

    terms: list[Criterion] = []
    for item in items:
        if isinstance(item, str):
            name, value = item, None
        elif isinstance(item, dict):
            name, value = item.get("field", ""), item.get("value")
        elif isinstance(item, (list, tuple)) and 1 <= len(item) <= 2:
            name, value = item[0], item[1] if len(item) == 2 else None
        else:
            raise ValueError(f"Unsupported search criterion: {item!r}")
        terms.append(_build(str(name), value))

    return terms[0] if len(terms) == 1 else AllOf(tuple(terms))


def _build(name: str, value: Any) -> Criterion:
    try:
        field = SearchField(name.strip().upper())
    except ValueError:
        allowed = ", ".join(f.value for f in SearchField)
        raise ValueError(f"Unknown search field {name!r}; expected one of: {allowed}") from None

    if field in _DATE_FIELDS and value is not None and not isinstance(value, date):
        parsed = parse_date(str(value))
        if parsed is None:
            raise ValueError(f"Could not parse date {value!r} for {field.value}")
        value = parsed.value.date()
    elif field in _SIZE_FIELDS and value is not None and not isinstance(value, int):
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{field.value} requires an integer size, got {value!r}") from None
    return Criterion(field, value)
