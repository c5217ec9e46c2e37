"""
money.py - Fixed-point currency arithmetic

All fee, commission and balance math in the package goes through Decimal.
Native floats are accepted at the boundary but converted through str() so a
value such as 3.5 becomes Decimal("3.5") rather than its binary expansion.
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, getcontext
from typing import Iterable, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Deterministic Decimal arithmetic is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
#   - prec=50: far beyond any fare or balance, so only quantize() rounds
#   - rounding=ROUND_HALF_EVEN: banker's rounding (unbiased across many loads)
#
_MONEY_DECIMAL_CONTEXT = getcontext()
_MONEY_DECIMAL_CONTEXT.prec = 50
_MONEY_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

MONEY_PLACES = 2
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)
MONEY_ROUNDING = ROUND_HALF_EVEN

ZERO = Decimal("0")
HUNDRED = Decimal("100")

DEFAULT_CURRENCY = "ETB"

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a numeric input to Decimal without float drift.

    Args:
        value: Decimal, int, float or numeric string.

    Returns:
        The Decimal value. NaN and infinities pass through unchanged so callers
        can decide how to treat them (see is_positive_finite).

    Raises:
        ValueError: If value is a bool, None, or not parseable as a number.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a monetary value: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a monetary value: {value!r}") from None


def is_positive_finite(value: Decimal) -> bool:
    """True if value is a finite number strictly greater than zero."""
    return value.is_finite() and value > ZERO


def round_money(amount: Numeric, rounding: str = MONEY_ROUNDING) -> Decimal:
    """Quantize an amount to cents."""
    return to_decimal(amount).quantize(MONEY_QUANTUM, rounding=rounding)


def sum_money(amounts: Iterable[Numeric]) -> Decimal:
    """
    Sum amounts exactly, then quantize the total to cents.

    Summation happens at full context precision; only the final result is
    rounded.
    """
    total = ZERO
    for amount in amounts:
        total += to_decimal(amount)
    return round_money(total)


def percent_of(amount: Numeric, pct: Numeric) -> Decimal:
    """Return pct percent of amount, unrounded."""
    return to_decimal(amount) * to_decimal(pct) / HUNDRED


def format_money(amount: Numeric, currency: str = DEFAULT_CURRENCY) -> str:
    """Render an amount for humans, e.g. '3,000.00 ETB'."""
    return f"{round_money(amount):,.2f} {currency}"
