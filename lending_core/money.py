"""
Money Handling Module

Fixed-point Decimal helpers for every monetary value in the lending core.
NEVER uses float for monetary values; amounts are quantized to the minor unit
of the fund's currency with ROUND_HALF_UP.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """Fund currency: ISO 4217 code, minor-unit precision and display symbol"""
    PHP = ("PHP", 2, "₱")  # Philippine Peso

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def minor_unit(self) -> Decimal:
        return Decimal('0.1') ** self.precision


DEFAULT_CURRENCY = Currency.PHP

ZERO = Decimal('0.00')
CENT = Decimal('0.01')

MoneyLike = Union[Decimal, int, str]


def to_decimal(value: MoneyLike) -> Decimal:
    """
    Convert a value to Decimal without going through binary floating point.

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    if isinstance(value, float):
        # Route through str so 0.1 stays 0.1
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"'{value}' is not a finite amount")
    return result


def quantize_money(value: MoneyLike, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Round a value to the currency's minor unit"""
    return to_decimal(value).quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


_AMOUNT_TEXT = re.compile(r'^([+-]?)\s*₱?\s*([\d.,]+)$', re.ASCII)
_GROUPED = re.compile(r'^\d{1,3}(,\d{3})+(\.\d+)?$', re.ASCII)
_DECIMAL_COMMA = re.compile(r'^\d+,\d{1,2}$', re.ASCII)
_PLAIN = re.compile(r'^(\d+(\.\d*)?|\.\d+)$', re.ASCII)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Accepts an optional sign and peso symbol, thousands separators
    (``1,000.50``) and a decimal comma (``1500,75``). Anything else, such as
    letters, exponents or a sign inside the digits, is rejected rather than
    stripped.

    Args:
        value: String representation of the amount

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    match = _AMOUNT_TEXT.match(value.strip())
    if not match:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    sign, body = match.groups()

    if _GROUPED.match(body):
        body = body.replace(',', '')
    elif _DECIMAL_COMMA.match(body):
        body = body.replace(',', '.')

    if not _PLAIN.match(body):
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return Decimal(sign + body)


def format_money(amount: MoneyLike, currency: Currency = DEFAULT_CURRENCY) -> str:
    """Format for display, e.g. ``₱1,234.50``"""
    rounded = quantize_money(amount, currency)
    sign = "-" if rounded < 0 else ""
    return f"{sign}{currency.symbol}{abs(rounded):,.{currency.precision}f}"


class PaymentMethod(Enum):
    """Channels through which money reaches the fund"""
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    GCASH = "GCASH"
    PAYMAYA = "PAYMAYA"
    CHECK = "CHECK"
    ONLINE_BANKING = "ONLINE_BANKING"
