"""
ORM model for owner settlements (payouts net of commission and withholdings).

Invariants enforced:
    - One settlement per (owner_id, period).
    - A ``completed`` row is never overwritten; rows are never deleted.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase, UUIDString

from rental_billing.models._mapping import enum_value, money

if TYPE_CHECKING:
    from rental_billing.domain.types import SettlementRecord


class SettlementModel(TrackedBase):
    __tablename__ = "settlements"

    __table_args__ = (
        UniqueConstraint("owner_id", "period", name="uq_settlements_owner_period"),
    )

    owner_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("owners.id"), nullable=False,
    )
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    withholdings_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    transfer_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> SettlementRecord:
        from rental_billing.domain.types import SettlementRecord, SettlementStatus

        entity = "settlement"
        return SettlementRecord(
            settlement_id=self.id,
            owner_id=self.owner_id,
            period=self.period,
            gross_amount=money(entity, "gross_amount", self.gross_amount),
            commission_amount=money(entity, "commission_amount", self.commission_amount),
            withholdings_amount=money(
                entity, "withholdings_amount", self.withholdings_amount
            ),
            net_amount=money(entity, "net_amount", self.net_amount),
            currency=self.currency,
            status=enum_value(entity, "status", SettlementStatus, self.status),
            scheduled_date=self.scheduled_date,
            processed_at=self.processed_at,
            transfer_reference=self.transfer_reference,
            notes=self.notes,
        )
