"""
ORM models for tenant invoices, their payments, and the per-owner invoice
number counter.

Invariants enforced:
    - ``invoice_number`` is unique per owner (``uq_invoices_owner_number``).
    - ``invoice_sequences`` holds one counter row per (owner_id, year); it is
      only advanced under a row lock.
    - Payments are written by the payments side of the platform; the engine
      reads them to date settlements.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase, UUIDString

from rental_billing.models._mapping import enum_value, money, optional_money

if TYPE_CHECKING:
    from rental_billing.domain.types import InvoiceRecord

_ZERO = Decimal("0")


class InvoiceModel(TrackedBase):
    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("owner_id", "invoice_number", name="uq_invoices_owner_number"),
        Index("ix_invoices_status_due", "status", "due_date"),
        Index("ix_invoices_owner_period", "owner_id", "period_start"),
        Index("ix_invoices_lease", "lease_id"),
    )

    lease_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("leases.id"), nullable=False,
    )
    owner_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("owners.id"), nullable=False,
    )
    tenant_account_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(20), nullable=False)

    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    late_fee: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=_ZERO, nullable=False)
    adjustments: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )
    total: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="issued")
    issued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    paid_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Multi-currency trail
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(38, 9), nullable=True)
    original_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    exchange_rate_used: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 18), nullable=True,
    )
    exchange_rate_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    withholding_iibb: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )
    withholding_iva: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )
    withholding_ganancias: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )
    withholdings_total: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )

    adjustment_applied: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), default=_ZERO, nullable=False,
    )
    adjustment_index_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    adjustment_index_value: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True,
    )

    # Electronic invoice authorization
    cae: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cae_expires_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    def to_dto(self) -> InvoiceRecord:
        from rental_billing.domain.types import InvoiceRecord, InvoiceStatus

        entity = "invoice"
        return InvoiceRecord(
            invoice_id=self.id,
            lease_id=self.lease_id,
            owner_id=self.owner_id,
            tenant_account_id=self.tenant_account_id,
            invoice_number=self.invoice_number,
            period_start=self.period_start,
            period_end=self.period_end,
            subtotal=money(entity, "subtotal", self.subtotal),
            late_fee=money(entity, "late_fee", self.late_fee, _ZERO),
            adjustments=money(entity, "adjustments", self.adjustments, _ZERO),
            total=money(entity, "total", self.total),
            currency_code=self.currency_code,
            amount_paid=money(entity, "amount_paid", self.amount_paid, _ZERO),
            due_date=self.due_date,
            status=enum_value(entity, "status", InvoiceStatus, self.status),
            issued_at=self.issued_at,
            paid_at=self.paid_at,
            original_amount=optional_money(entity, "original_amount", self.original_amount),
            original_currency=self.original_currency,
            exchange_rate_used=optional_money(
                entity, "exchange_rate_used", self.exchange_rate_used
            ),
            exchange_rate_date=self.exchange_rate_date,
            withholding_iibb=money(entity, "withholding_iibb", self.withholding_iibb, _ZERO),
            withholding_iva=money(entity, "withholding_iva", self.withholding_iva, _ZERO),
            withholding_ganancias=money(
                entity, "withholding_ganancias", self.withholding_ganancias, _ZERO
            ),
            withholdings_total=money(
                entity, "withholdings_total", self.withholdings_total, _ZERO
            ),
            adjustment_applied=money(
                entity, "adjustment_applied", self.adjustment_applied, _ZERO
            ),
            adjustment_index_type=self.adjustment_index_type,
            adjustment_index_value=optional_money(
                entity, "adjustment_index_value", self.adjustment_index_value
            ),
            cae=self.cae,
        )


class PaymentModel(TrackedBase):
    __tablename__ = "payments"

    __table_args__ = (
        Index("ix_payments_invoice_status", "invoice_id", "status"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="completed")


class InvoiceSequenceModel(TrackedBase):
    """Per-(owner, year) invoice number counter."""

    __tablename__ = "invoice_sequences"

    __table_args__ = (
        UniqueConstraint("owner_id", "year", name="uq_invoice_sequences_owner_year"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
