"""Unit tests for minor-unit money helpers."""

from decimal import Decimal

import pytest

from utils.money import amounts_match, format_amount, from_minor_units, to_decimal, to_minor_units


class TestConversion:

    def test_major_to_minor(self):
        assert to_minor_units("1234.5") == 123450
        assert to_minor_units(Decimal("300")) == 30000

    def test_float_input_keeps_its_decimal_value(self):
        assert to_minor_units(0.1) == 10
        assert to_minor_units(19.99) == 1999

    def test_rounds_half_up_to_cents(self):
        assert to_minor_units("10.005") == 1001
        assert to_minor_units("10.004") == 1000

    def test_minor_to_major(self):
        assert from_minor_units(123450) == Decimal("1234.50")
        assert str(from_minor_units(5)) == "0.05"

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_decimal("abc")

    @pytest.mark.parametrize("raw", ["NaN", "sNaN", "Infinity", "-inf", Decimal("NaN"), float("inf")])
    def test_rejects_non_finite(self, raw):
        with pytest.raises(ValueError):
            to_decimal(raw)

    def test_non_finite_never_matches(self):
        with pytest.raises(ValueError):
            amounts_match("NaN", 30000)


class TestAmountsMatch:

    def test_exact_total(self):
        assert amounts_match("300.00", 30000)

    def test_within_one_cent(self):
        assert amounts_match("300.01", 30000)
        assert amounts_match(Decimal("299.99"), 30000)

    def test_two_cents_off_is_rejected(self):
        assert not amounts_match("300.02", 30000)
        assert not amounts_match("299.98", 30000)


def test_format_amount_uses_currency_symbol():
    assert format_amount(123450, "PHP") == "₱1,234.50"
    assert format_amount(500, "USD") == "$5.00"
    assert format_amount(500, "EUR") == "EUR 5.00"
