"""
Amount Handling Module

All amounts are Decimal whole currency units. NEVER uses float for money.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Union

getcontext().prec = 28

WHOLE_UNIT = Decimal('1')
ZERO = Decimal('0')

Numeric = Union[Decimal, int, str, float]


def to_decimal(value: Numeric) -> Decimal:
    """Convert a value to Decimal without going through binary float"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_amount(value: Numeric) -> Decimal:
    """Round to the nearest whole unit, halves away from zero"""
    return to_decimal(value).quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def format_amount(value: Numeric) -> str:
    """Format for display with thousands separators"""
    return f"Rs. {round_amount(value):,.0f}"
