"""Tests for row normalization."""
from datetime import date
from decimal import Decimal

import pytest

from short_harvest.errors import RowError
from short_harvest.models import ShortPosition
from short_harvest.sources.normalizer import (
    fragment_hash,
    normalize,
    normalize_fragments,
    to_fragment,
)
from short_harvest.sources.utils import parse_date, parse_decimal


def _row(holder="FundX", pct="4,50", disclosed="10/01/2024"):
    return {"holder": holder, "position_pct": pct, "date": disclosed}


class TestNormalize:
    def test_portal_formatted_row(self):
        position = normalize(_row(), "IssuerA")

        assert position.issuer == "IssuerA"
        assert position.holder == "FundX"
        assert position.position_pct == Decimal("4.50")
        assert position.date == date(2024, 1, 10)
        assert len(position.source_row_hash) == 64

    def test_percent_sign_and_iso_date(self):
        position = normalize(_row(pct="4.5%", disclosed="2024-01-10"), "IssuerA")

        assert position.position_pct == Decimal("4.5")
        assert position.date == date(2024, 1, 10)

    def test_holder_whitespace_is_collapsed(self):
        position = normalize(_row(holder="  Marshall   Wace LLP "), "IssuerA")
        assert position.holder == "Marshall Wace LLP"

    @pytest.mark.parametrize("pct", ["abc", "101", "-0,5", "4,5,6", "0,12345"])
    def test_bad_percentage_is_rejected(self, pct):
        with pytest.raises(RowError) as excinfo:
            normalize(_row(pct=pct), "IssuerA")
        assert excinfo.value.column == "position_pct"

    def test_trailing_zeros_beyond_four_decimals_are_accepted(self):
        assert normalize(_row(pct="4,500000"), "IssuerA").position_pct == Decimal("4.5")
        assert normalize(_row(pct="0,123400"), "IssuerA").position_pct == Decimal("0.1234")

    def test_percentage_bounds_are_inclusive(self):
        assert normalize(_row(pct="0"), "IssuerA").position_pct == Decimal("0")
        assert normalize(_row(pct="100,00"), "IssuerA").position_pct == Decimal("100.00")

    @pytest.mark.parametrize("value", ["31/02/2024", "sin fecha", "2024-02-30", "10", "2024", "10/01", "Jan 2024"])
    def test_bad_date_is_rejected(self, value):
        with pytest.raises(RowError) as excinfo:
            normalize(_row(disclosed=value), "IssuerA")
        assert excinfo.value.column == "date"

    def test_missing_mandatory_column(self):
        fragment = {"holder": "FundX", "position_pct": "1,2"}
        with pytest.raises(RowError) as excinfo:
            normalize(fragment, "IssuerA")
        assert excinfo.value.column == "date"
        assert excinfo.value.fragment == fragment

    def test_blank_holder_is_missing(self):
        with pytest.raises(RowError) as excinfo:
            normalize(_row(holder="   "), "IssuerA")
        assert excinfo.value.column == "holder"


class TestFragmentHash:
    def test_stable_across_whitespace(self):
        assert fragment_hash(_row()) == fragment_hash(_row(holder=" FundX ", pct="4,50\n"))

    def test_sensitive_to_values(self):
        assert fragment_hash(_row()) != fragment_hash(_row(pct="4,51"))
        assert fragment_hash(_row()) != fragment_hash(_row(disclosed="11/01/2024"))


class TestRoundTrip:
    def test_text_form_round_trips_pct_and_date(self):
        originals = [
            ShortPosition("IssuerA", "FundX", Decimal("4.5"), date(2024, 1, 10), "h"),
            ShortPosition("IssuerA", "FundY", Decimal("0.5012"), date(2023, 12, 31), "h"),
            ShortPosition("IssuerA", "FundZ", Decimal("12"), date(2024, 2, 29), "h"),
        ]
        for original in originals:
            fragment = to_fragment(original)
            restored = normalize(fragment, original.issuer)
            assert restored.position_pct == original.position_pct
            assert restored.date == original.date
            assert restored.holder == original.holder

    def test_rendered_in_portal_format(self):
        position = ShortPosition("IssuerA", "FundX", Decimal("4.50"), date(2024, 1, 10), "h")
        assert to_fragment(position) == {"holder": "FundX", "position_pct": "4,50", "date": "10/01/2024"}


def test_batch_normalization_collects_row_errors():
    fragments = [_row(holder=f"Fund{i}") for i in range(7)]
    fragments[2:2] = [_row(pct="n/d"), _row(disclosed=""), _row(pct="250")]

    positions, errors = normalize_fragments(fragments, "IssuerA")

    assert len(positions) == 7
    assert len(errors) == 3
    assert [p.holder for p in positions] == [f"Fund{i}" for i in range(7)]


class TestParsers:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("0,52", Decimal("0.52")),
            ("1.234,5", Decimal("1234.5")),
            ("1,234.5", Decimal("1234.5")),
            ("  4,5 % ", Decimal("4.5")),
            ("", None),
            ("n/d", None),
        ],
    )
    def test_parse_decimal(self, text, expected):
        assert parse_decimal(text) == expected

    def test_parse_date_day_first(self):
        assert parse_date("03/04/2024") == date(2024, 4, 3)
        assert parse_date("03.04.2024") == date(2024, 4, 3)
        assert parse_date("3 Apr 2024") == date(2024, 4, 3)
        assert parse_date(None) is None

    @pytest.mark.parametrize("text", ["10", "2024", "10/01", "March 2024"])
    def test_parse_date_rejects_partial_dates(self, text):
        assert parse_date(text) is None
