"""
Calendar helpers for billing periods and ``YYYY-MM`` settlement periods.

Pure functions, zero I/O.
"""

from __future__ import annotations

import calendar
import re
from datetime import date

from rental_kernel.exceptions import InvalidPeriodError

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def add_months(day: date, months: int) -> date:
    """Shift by whole calendar months, clamping to the target month's end.

    2024-01-31 + 1 month -> 2024-02-29.
    """
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


def parse_period(period: str) -> tuple[int, int]:
    """Parse ``YYYY-MM`` into (year, month)."""
    match = _PERIOD_RE.match(period or "")
    if match is None:
        raise InvalidPeriodError(period)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidPeriodError(period)
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def period_bounds(period: str) -> tuple[date, date]:
    """First and last day of a ``YYYY-MM`` period."""
    year, month = parse_period(period)
    first = date(year, month, 1)
    return first, month_end(first)


def period_of(day: date) -> str:
    return format_period(day.year, day.month)


def previous_period(today: date) -> str:
    """The calendar month before ``today``'s month."""
    return period_of(add_months(month_start(today), -1))
