"""
Tests for money helpers
"""

import pytest
from decimal import Decimal

from lending_core.money import (
    Currency, PaymentMethod, decimal_from_string, format_money, quantize_money, to_decimal
)


class TestToDecimal:

    def test_passthrough(self):
        value = Decimal('12.345')
        assert to_decimal(value) is value

    def test_int_and_string(self):
        assert to_decimal(1000) == Decimal('1000')
        assert to_decimal(" 99.95 ") == Decimal('99.95')

    def test_float_keeps_written_value(self):
        assert to_decimal(0.1) == Decimal('0.1')

    @pytest.mark.parametrize("value", ["abc", "", True, "NaN", "-Infinity"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            to_decimal(value)


class TestQuantize:

    @pytest.mark.parametrize("value,expected", [
        ("4666.665", "4666.67"),
        ("4666.664", "4666.66"),
        ("0.005", "0.01"),
        ("-0.005", "-0.01"),
        (10, "10.00"),
    ])
    def test_half_up(self, value, expected):
        assert quantize_money(value) == Decimal(expected)
        assert str(quantize_money(value)) == expected

    def test_explicit_currency(self):
        assert quantize_money("1234.565", Currency.PHP) == Decimal('1234.57')
        assert Currency.PHP.minor_unit == Decimal('0.01')


class TestParsing:

    @pytest.mark.parametrize("text,expected", [
        ("1000", "1000"),
        ("1,000.50", "1000.50"),
        ("₱50,000.00", "50000.00"),
        ("1500,75", "1500.75"),
        ("1,500", "1500"),
        ("-₱5.50", "-5.50"),
        (" 12,5 ", "12.5"),
    ])
    def test_decimal_from_string(self, text, expected):
        assert decimal_from_string(text) == Decimal(expected)

    @pytest.mark.parametrize("text", [
        "", "abc", None, "5e2", "1.5e3", "12O0", "1-2", "1,2,3", "1.2.3", "₱", "100 PHP",
    ])
    def test_invalid_strings(self, text):
        with pytest.raises(ValueError):
            decimal_from_string(text)


class TestFormatting:

    def test_format_peso(self):
        assert format_money(Decimal('1000')) == "₱1,000.00"
        assert format_money(Decimal('1234567.891')) == "₱1,234,567.89"

    def test_format_negative(self):
        assert format_money(Decimal('-5.5')) == "-₱5.50"
        assert format_money(Decimal('20'), Currency.PHP) == "₱20.00"


class TestPaymentMethod:

    def test_values(self):
        assert PaymentMethod("GCASH") is PaymentMethod.GCASH
        assert {m.value for m in PaymentMethod} == {
            "CASH", "BANK_TRANSFER", "GCASH", "PAYMAYA", "CHECK", "ONLINE_BANKING"
        }
