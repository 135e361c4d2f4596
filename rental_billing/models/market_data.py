"""
ORM models for cached market data: inflation index points and FX rates.

Invariants enforced:
    - At most one index point per (index_type, period_date); period_date is
      always the first day of its month.
    - At most one rate per (from_currency, to_currency, rate_date, source).
    - Rates carry 18 decimal places; index values 9.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase

from rental_billing.models._mapping import enum_value, money

if TYPE_CHECKING:
    from rental_billing.domain.types import IndexPoint, RatePoint


class InflationIndexModel(TrackedBase):
    """One monthly observation of a published index."""

    __tablename__ = "inflation_indices"

    __table_args__ = (
        UniqueConstraint(
            "index_type", "period_date", name="uq_inflation_indices_type_period",
        ),
    )

    index_type: Mapped[str] = mapped_column(String(30), nullable=False)
    period_date: Mapped[date] = mapped_column(Date, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    source_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    published_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> IndexPoint:
        from rental_billing.domain.types import IndexPoint, IndexType

        return IndexPoint(
            index_type=enum_value("inflation_index", "index_type", IndexType, self.index_type),
            period_date=self.period_date,
            value=money("inflation_index", "value", self.value),
            source=self.source,
            source_url=self.source_url,
            published_at=self.published_at,
        )


class ExchangeRateModel(TrackedBase):
    """Cached conversion rate: 1 ``from_currency`` = ``rate`` ``to_currency``."""

    __tablename__ = "exchange_rates"

    __table_args__ = (
        UniqueConstraint(
            "from_currency", "to_currency", "rate_date", "source",
            name="uq_exchange_rates_pair_date_source",
        ),
        Index("ix_exchange_rates_pair_date", "from_currency", "to_currency", "rate_date"),
    )

    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> RatePoint:
        from rental_billing.domain.types import RatePoint

        return RatePoint(
            from_currency=self.from_currency,
            to_currency=self.to_currency,
            rate=money("exchange_rate", "rate", self.rate),
            rate_date=self.rate_date,
            source=self.source,
        )
