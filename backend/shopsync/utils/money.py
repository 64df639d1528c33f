"""Money normalization helpers.

WHAT:
    Converts Shopify money amounts (always strings in the Admin GraphQL API)
    into fixed-point Decimal values with two decimal places.

WHY:
    Every monetary field goes through one parsing function before it reaches
    persistence, so stored values never depend on vendor string formatting.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

MoneyInput = Optional[Union[str, int, float, Decimal]]

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def round_money(value: MoneyInput) -> Decimal:
    """Round a monetary value to 2 decimal places (half-up).

    None, NaN, infinities and amounts too large to quantize round to 0.
    """
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold
        return ZERO


def parse_money(raw: MoneyInput, default: Decimal = ZERO) -> Decimal:
    """Parse a vendor amount into a rounded Decimal.

    Returns ``default`` for None, empty strings and anything unparseable.
    Never raises.

    Examples:
        parse_money("12.50") -> Decimal("12.50")
        parse_money(None)    -> Decimal("0")
        parse_money("abc")   -> Decimal("0")
    """
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return default
    try:
        amount = raw if isinstance(raw, Decimal) else Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return default
    if not amount.is_finite():
        return default
    try:
        return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return default


def sum_money(values) -> Decimal:
    """Sum monetary values, treating None as 0, and round the result."""
    total = ZERO
    for value in values:
        if value is not None:
            total += value if isinstance(value, Decimal) else Decimal(str(value))
    return round_money(total)
