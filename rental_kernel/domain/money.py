"""
Money helpers -- Decimal parsing and cent rounding.

Invariants enforced:
    - Amounts are ``Decimal``; floats are converted through ``str`` so that
      0.1 becomes Decimal("0.1"), not its binary expansion.
    - Monetary results are rounded to cents with ROUND_HALF_UP.
    - NaN and infinity are rejected at the boundary.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal:
    """
    Parse a number-like value into a finite Decimal.

    None (and blank strings) return ``default`` when given, else raise.

    Raises:
        ValueError: If the value is missing without a default, or is not
            a finite number.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return default
        raise ValueError("missing numeric value")
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a numeric value: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"non-finite numeric value: {value!r}")
    return result


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, rate_percent: Decimal) -> Decimal:
    """``amount × rate/100`` rounded to cents."""
    return round_money(amount * rate_percent / HUNDRED)
