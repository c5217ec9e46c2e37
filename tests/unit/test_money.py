"""
test_money.py - Unit tests for fixed-point money helpers

Tests:
- to_decimal: accepted inputs, float conversion, rejected inputs
- round_money / sum_money: cent quantization, banker's rounding
- format_money: human rendering
"""

import pytest
from decimal import Decimal

from freight_ledger import to_decimal, round_money, sum_money, format_money, is_positive_finite


class TestToDecimal:

    def test_int_and_str(self):
        assert to_decimal(5) == Decimal("5")
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(" 7 ") == Decimal("7")

    def test_float_goes_through_str(self):
        """3.5 is Decimal('3.5'), not its binary expansion."""
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(3.5) == Decimal("3.5")

    def test_decimal_passes_through(self):
        value = Decimal("1.23")
        assert to_decimal(value) is value

    @pytest.mark.parametrize("bad", [True, False, None, "abc", ""])
    def test_rejects_non_numbers(self, bad):
        with pytest.raises(ValueError, match="Not a monetary value"):
            to_decimal(bad)

    def test_nan_passes_through(self):
        assert to_decimal("NaN").is_nan()


class TestPositiveFinite:

    @pytest.mark.parametrize("value,expected", [
        (Decimal("0.01"), True),
        (Decimal("0"), False),
        (Decimal("-1"), False),
        (Decimal("NaN"), False),
        (Decimal("Infinity"), False),
    ])
    def test_cases(self, value, expected):
        assert is_positive_finite(value) is expected


class TestRounding:

    def test_quantizes_to_cents(self):
        assert round_money("10.005") == Decimal("10.00")
        assert round_money("10.015") == Decimal("10.02")
        assert round_money(3) == Decimal("3.00")

    def test_bankers_rounding(self):
        """Half-even: ties go to the even cent."""
        assert round_money("0.125") == Decimal("0.12")
        assert round_money("0.135") == Decimal("0.14")

    def test_sum_rounds_once(self):
        # Rounding each term first would give 0.00 + 0.00 + 0.00
        assert sum_money(["0.004", "0.004", "0.004"]) == Decimal("0.01")

    def test_sum_empty(self):
        assert sum_money([]) == Decimal("0.00")


class TestFormat:

    def test_thousands_separator_and_currency(self):
        assert format_money(Decimal("3000")) == "3,000.00 ETB"

    def test_custom_currency(self):
        assert format_money("12.5", "USD") == "12.50 USD"
