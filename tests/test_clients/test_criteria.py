"""Tests for search criteria: validation, IMAP rendering, local matching and parsing."""

from collections.abc import Callable
from datetime import date, datetime, timezone

import pytest

from mail_mcp.clients.criteria import AllOf, Criterion, SearchField, all_of, parse_criteria


class TestCriterionValidation:
    def test_flag_field_rejects_value(self) -> None:
        with pytest.raises(ValueError, match="takes no value"):
            Criterion(SearchField.UNSEEN, "x")

    @pytest.mark.parametrize("value", [None, ""])
    def test_value_field_requires_value(self, value: str | None) -> None:
        with pytest.raises(ValueError):
            Criterion(SearchField.FROM, value)

    def test_date_field_requires_date(self) -> None:
        with pytest.raises(ValueError, match="requires a date"):
            Criterion(SearchField.SINCE, "2025-01-01")

    def test_size_field_requires_int(self) -> None:
        with pytest.raises(ValueError, match="integer size"):
            Criterion(SearchField.LARGER, "big")


class TestToImap:
    def test_flag(self) -> None:
        assert Criterion(SearchField.UNSEEN).to_imap() == ["UNSEEN"]

    def test_value(self) -> None:
        assert Criterion(SearchField.FROM, "a@b.com").to_imap() == ["FROM", "a@b.com"]

    def test_datetime_rendered_as_date(self) -> None:
        value = datetime(2025, 1, 2, 13, 0)
        assert Criterion(SearchField.SINCE, value).to_imap() == ["SINCE", date(2025, 1, 2)]

    def test_all_of_flattens(self) -> None:
        term = all_of(Criterion(SearchField.UNSEEN), Criterion(SearchField.FROM, "a@b.com"))
        assert term.to_imap() == ["UNSEEN", "FROM", "a@b.com"]

    def test_empty_all_of_is_all(self) -> None:
        assert AllOf(()).to_imap() == ["ALL"]


class TestMatches:
    def test_from_is_case_insensitive_substring(self, make_message: Callable) -> None:
        message = make_message(1, sender="Alice@Example.com")
        assert Criterion(SearchField.FROM, "alice@example").matches(message)
        assert not Criterion(SearchField.FROM, "bob").matches(message)

    def test_seen_flags(self, make_message: Callable) -> None:
        seen = make_message(1, flags=("\\Seen",))
        unseen = make_message(2)
        assert Criterion(SearchField.SEEN).matches(seen)
        assert Criterion(SearchField.UNSEEN).matches(unseen)
        assert not Criterion(SearchField.UNSEEN).matches(seen)

    def test_dates(self, make_message: Callable) -> None:
        message = make_message(1, date=datetime(2025, 1, 15, 10, tzinfo=timezone.utc))
        assert Criterion(SearchField.SINCE, date(2025, 1, 15)).matches(message)
        assert not Criterion(SearchField.BEFORE, date(2025, 1, 15)).matches(message)
        assert Criterion(SearchField.ON, date(2025, 1, 15)).matches(message)

    def test_undated_passes_date_conditions(self, make_message: Callable) -> None:
        message = make_message(1, date=None)
        assert Criterion(SearchField.BEFORE, date(2000, 1, 1)).matches(message)

    def test_size(self, make_message: Callable) -> None:
        message = make_message(1, size=5000)
        assert Criterion(SearchField.LARGER, 4000).matches(message)
        assert not Criterion(SearchField.SMALLER, 4000).matches(message)

    def test_body_and_text(self, make_message: Callable) -> None:
        message = make_message(1, text="The invoice is attached", subject="Payment")
        assert Criterion(SearchField.BODY, "INVOICE").matches(message)
        assert not Criterion(SearchField.BODY, "payment").matches(message)
        assert Criterion(SearchField.TEXT, "payment").matches(message)

    def test_all_of_requires_every_term(self, make_message: Callable) -> None:
        term = all_of(Criterion(SearchField.UNSEEN), Criterion(SearchField.FROM, "alice"))
        assert term.matches(make_message(1))
        assert not term.matches(make_message(2, flags=("\\Seen",)))


class TestParseCriteria:
    @pytest.mark.parametrize("items", [None, []])
    def test_empty_means_all(self, items) -> None:
        assert parse_criteria(items) == Criterion(SearchField.ALL)

    def test_single_string(self) -> None:
        assert parse_criteria(["unseen"]) == Criterion(SearchField.UNSEEN)

    def test_mixed_shapes(self) -> None:
        term = parse_criteria([
            "UNSEEN",
            ["FROM", "a@b.com"],
            {"field": "since", "value": "2025-01-31"},
            ["LARGER", "1024"],
        ])
        assert isinstance(term, AllOf)
        assert term.to_imap() == ["UNSEEN", "FROM", "a@b.com", "SINCE", date(2025, 1, 31), "LARGER", 1024]

    def test_unknown_field(self) -> None:
        with pytest.raises(ValueError, match="Unknown search field"):
            parse_criteria(["FLAGGED"])

    def test_bad_date(self) -> None:
        with pytest.raises(ValueError, match="Could not parse date"):
            parse_criteria([["SINCE", "someday"]])

    def test_unsupported_shape(self) -> None:
        with pytest.raises(ValueError, match="Unsupported"):
            parse_criteria([42])
