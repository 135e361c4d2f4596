"""
Typed parsing helpers used by ``to_dto()`` at the row -> record boundary.

Each helper names the entity and field so a bad row surfaces as an
InvalidRecordError pointing at the exact column.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from rental_kernel.domain.money import to_decimal
from rental_kernel.exceptions import InvalidRecordError

E = TypeVar("E", bound=Enum)


def money(entity: str, field: str, value: Any, default: Decimal | None = None) -> Decimal:
    try:
        return to_decimal(value, default)
    except ValueError as exc:
        raise InvalidRecordError(entity, field, value, str(exc)) from exc


def optional_money(entity: str, field: str, value: Any) -> Decimal | None:
    if value is None:
        return None
    return money(entity, field, value)


def enum_value(entity: str, field: str, enum_cls: type[E], value: Any) -> E:
    parse = getattr(enum_cls, "parse", None)
    try:
        return parse(value) if parse is not None else enum_cls(value)
    except (ValueError, KeyError) as exc:
        raise InvalidRecordError(entity, field, value, str(exc)) from exc
