"""
rental_kernel.domain -- Pure helpers: clock, money, calendar periods.

ZERO I/O (SystemClock excepted).
"""

from rental_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from rental_kernel.domain.money import percent_of, round_money, to_decimal
from rental_kernel.domain.periods import (
    add_months,
    month_end,
    month_start,
    parse_period,
    period_bounds,
    previous_period,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "add_months",
    "month_end",
    "month_start",
    "parse_period",
    "percent_of",
    "period_bounds",
    "previous_period",
    "round_money",
    "to_decimal",
]
