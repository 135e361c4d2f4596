"""
ORM model for leases.

The lease table is owned by the platform's contract management side.  The
billing engine reads it and writes only the billing cursor
(``next_billing_date``/``last_billing_date``) and the adjustment trackers.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase, UUIDString

from rental_billing.models._mapping import enum_value, money, optional_money

if TYPE_CHECKING:
    from rental_billing.domain.types import LeaseRecord, ReminderContact


class LeaseModel(TrackedBase):
    __tablename__ = "leases"

    __table_args__ = (
        Index("ix_leases_status_next_billing", "status", "next_billing_date"),
        Index("ix_leases_owner", "owner_id"),
    )

    owner_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("owners.id"), nullable=False,
    )
    tenant_account_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    company_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("companies.id"), nullable=True,
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    rent_amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    payment_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)

    adjustment_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    adjustment_rate: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    next_adjustment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_adjustment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    billing_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    tenant_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    tenant_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tenant_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    property_label: Mapped[str | None] = mapped_column(String(300), nullable=True)

    def to_dto(self) -> LeaseRecord:
        from rental_billing.domain.types import (
            AdjustmentType,
            LeaseRecord,
            PaymentFrequency,
        )

        entity = "lease"
        return LeaseRecord(
            lease_id=self.id,
            owner_id=self.owner_id,
            tenant_account_id=self.tenant_account_id,
            company_id=self.company_id,
            status=self.status,
            rent_amount=money(entity, "rent_amount", self.rent_amount),
            currency=(self.currency or "ARS").upper(),
            payment_frequency=enum_value(
                entity, "payment_frequency", PaymentFrequency, self.payment_frequency
            ),
            adjustment_type=enum_value(
                entity, "adjustment_type", AdjustmentType, self.adjustment_type
            ),
            adjustment_rate=optional_money(entity, "adjustment_rate", self.adjustment_rate),
            start_date=self.start_date,
            end_date=self.end_date,
            next_adjustment_date=self.next_adjustment_date,
            last_adjustment_date=self.last_adjustment_date,
            billing_day=self.billing_day,
            next_billing_date=self.next_billing_date,
            last_billing_date=self.last_billing_date,
        )

    def to_contact(self) -> ReminderContact:
        from rental_billing.domain.types import ReminderContact

        return ReminderContact(
            tenant_name=self.tenant_name,
            tenant_phone=self.tenant_phone,
            tenant_email=self.tenant_email,
        )
