"""Parsing of human-entered dates and the date-range filter used by search."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999000)

# Tried in order after ISO-8601; all are date-only unless they carry %H.
_DATE_FORMATS: list[tuple[str, bool]] = [
    ("%d-%b-%Y", False),      # 20-Apr-2010 (IMAP style)
    ("%d-%B-%Y", False),
    ("%B %d, %Y", False),     # April 20, 2010
    ("%b %d, %Y", False),
    ("%B %d %Y", False),
    ("%d %B %Y", False),
    ("%d %b %Y", False),
    ("%Y/%m/%d", False),
    ("%Y/%m/%d %H:%M", True),
    ("%Y/%m/%d %H:%M:%S", True),
]

_RELATIVE = re.compile(r"^(\d+)\s+(day|week|month|year)s?\s+ago$")
_TIME = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class ParsedDate:
    """A parsed date plus whether the input carried a time of day."""

    value: datetime
    has_time: bool


def as_utc(value: datetime) -> datetime:
    """Make a datetime comparable: naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: str | None, *, now: datetime | None = None) -> ParsedDate | None:
    """Parse ISO dates/datetimes, ``DD-Mon-YYYY``, ``Month DD, YYYY``, RFC 2822
    dates and a little natural language (``today``, ``yesterday``,
    ``3 days ago``, ``last week``).

    Returns None for empty or unparseable input; never raises.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None

    parsed = _parse_iso(text) or _parse_formats(text) or _parse_natural(text, now)
    if parsed is not None:
        return parsed

    try:
        return ParsedDate(parsedate_to_datetime(text), True)
    except (TypeError, ValueError, IndexError):
        return None


def parse_time(value: str | None) -> time | None:
    """Parse ``HH:MM`` or ``HH:MM:SS``; None when absent or malformed."""
    if not value:
        return None
    m = _TIME.match(value.strip())
    if not m:
        return None
    try:
        return time(int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))
    except ValueError:
        return None


def _parse_iso(text: str) -> ParsedDate | None:
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        try:
            return ParsedDate(datetime.combine(date.fromisoformat(text), time()), False)
        except ValueError:
            return None
    if not re.match(r"\d{4}-\d{2}-\d{2}[T ]\d", text):
        return None
    candidate = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return ParsedDate(datetime.fromisoformat(candidate), True)
    except ValueError:
        return None


def _parse_formats(text: str) -> ParsedDate | None:
    for fmt, has_time in _DATE_FORMATS:
        try:
            return ParsedDate(datetime.strptime(text, fmt), has_time)
        except ValueError:
            continue
    return None


def _parse_natural(text: str, now: datetime | None) -> ParsedDate | None:
    current = now or datetime.now(timezone.utc)
    today = datetime.combine(current.date(), time(), tzinfo=current.tzinfo)
    lowered = text.lower()

    if lowered == "now":
        return ParsedDate(current, True)
    if lowered == "today":
        return ParsedDate(today, False)
    if lowered == "yesterday":
        return ParsedDate(today - timedelta(days=1), False)
    if lowered == "tomorrow":
        return ParsedDate(today + timedelta(days=1), False)
    if lowered == "last week":
        return ParsedDate(today - timedelta(weeks=1), False)
    if lowered == "last month":
        return ParsedDate(today - timedelta(days=30), False)
    if lowered == "last year":
        return ParsedDate(today - timedelta(days=365), False)

    m = _RELATIVE.match(lowered)
    if m:
        amount, unit = int(m.group(1)), m.group(2)
        days = {"day": 1, "week": 7, "month": 30, "year": 365}[unit] * amount
        return ParsedDate(today - timedelta(days=days), False)
    return None


@dataclass(frozen=True)
class DateRange:
    """Inclusive [start, end] window.  Either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def from_inputs(
        cls,
        start_date: str | None = None,
        end_date: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
        *,
        now: datetime | None = None,
    ) -> DateRange | None:
        """Build a range from tool arguments.

        An unparseable bound is logged and skipped rather than failing the
        call.  A date-only end bound covers the whole of that day.  Returns
        None when neither bound survives parsing.
        """
        start = _bound(start_date, start_time, end=False, now=now)
        end = _bound(end_date, end_time, end=True, now=now)
        if start is None and end is None:
            return None
        return cls(start=start, end=end)

    def contains(self, value: datetime | None) -> bool:
        """Undated messages are always inside the range."""
        if value is None:
            return True
        moment = as_utc(value)
        if self.start is not None and moment < as_utc(self.start):
            return False
        if self.end is not None and moment > as_utc(self.end):
            return False
        return True

    def describe(self) -> str:
        start = self.start.isoformat() if self.start else "…"
        end = self.end.isoformat() if self.end else "…"
        return f"{start} → {end}"


def _bound(
    date_str: str | None,
    time_str: str | None,
    *,
    end: bool,
    now: datetime | None,
) -> datetime | None:
    if not date_str:
        return None
    parsed = parse_date(date_str, now=now)
    if parsed is None:
        logger.warning("Ignoring unparseable %s date %r", "end" if end else "start", date_str)
        return None

    value = parsed.value
    tod = parse_time(time_str)
    if time_str and tod is None:
        logger.warning("Ignoring unparseable %s time %r", "end" if end else "start", time_str)
    if tod is not None:
        value = datetime.combine(value.date(), tod, tzinfo=value.tzinfo)
    elif end and not parsed.has_time:
        value = datetime.combine(value.date(), END_OF_DAY, tzinfo=value.tzinfo)
    return as_utc(value)
