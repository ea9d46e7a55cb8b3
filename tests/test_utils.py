"""Tests for payload decoding and symbol helpers."""

import pytest

from fundamentals_engine.exceptions import InvalidArgumentError
from fundamentals_engine.utils import (
    clamp,
    first_number,
    iso_date_from_timestamp,
    normalize_symbol,
    number_from,
    safe_divide,
    scraped_path_symbol,
    string_from,
)


class TestNumberFrom:
    """Test numeric coercion of provider values."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (1.5, 1.5),
            (3, 3.0),
            ("2.5", 2.5),
            ({"raw": 7, "fmt": "7.00"}, 7.0),
            ({"fmt": "7.00"}, None),
            (None, None),
            (True, None),
            ("n/a", None),
            (float("nan"), None),
            (float("inf"), None),
            ({"raw": float("-inf")}, None),
        ],
    )
    def test_values(self, value, expected):
        assert number_from(value) == expected

    def test_first_number(self):
        """The first decodable value wins."""
        assert first_number(None, {"raw": None}, "x", 4, 5) == 4
        assert first_number(None) is None


class TestHelpers:
    def test_string_from(self):
        assert string_from("Apple") == "Apple"
        assert string_from("   ") is None
        assert string_from(12) is None

    def test_safe_divide(self):
        assert safe_divide(1, 4) == 0.25
        assert safe_divide(1, 0) is None
        assert safe_divide(None, 4) is None
        assert safe_divide(float("inf"), 4) is None

    def test_clamp(self):
        assert clamp(150, 0, 100) == 100
        assert clamp(-1, 0, 100) == 0
        assert clamp(42, 0, 100) == 42

    def test_iso_date_from_timestamp(self):
        """Out-of-range timestamps give None instead of raising."""
        assert iso_date_from_timestamp(1704067200) == "2024-01-01"
        assert iso_date_from_timestamp(1e20) is None
        assert iso_date_from_timestamp(-1e20) is None


class TestSymbols:
    """Test ticker normalization."""

    def test_normalize_trims_and_uppercases(self):
        assert normalize_symbol("  brk.b ") == "BRK.B"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_blank_rejected(self, value):
        """Blank input raises InvalidArgumentError, which is also a ValueError."""
        with pytest.raises(InvalidArgumentError, match="required"):
            normalize_symbol(value)
        with pytest.raises(ValueError):
            normalize_symbol(value)

    def test_scraped_path_symbol(self):
        """Every dot becomes a hyphen."""
        assert scraped_path_symbol("BRK.B") == "BRK-B"
        assert scraped_path_symbol("A.B.C") == "A-B-C"
        assert scraped_path_symbol("AAPL") == "AAPL"
