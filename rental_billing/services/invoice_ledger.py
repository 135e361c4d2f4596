"""
InvoiceLedger -- creation, numbering, queries and guarded transitions of
tenant invoices; billing-cursor source of truth for leases.

Contract:
    ``create()`` numbers and inserts an ``issued`` invoice.
    ``find_*`` queries return typed ``InvoiceRecord`` values.
    ``mark_overdue()`` and ``apply_late_fee_once()`` are single guarded
    UPDATE statements, safe to re-run after a crash or concurrently.

Invariants enforced:
    - Invoice numbers are ``{year}-{seq:06d}`` where ``seq`` comes from a
      locked per-(owner, year) counter row in ``invoice_sequences``; the
      counter is seeded from the owner's existing invoices for that year
      on first use.  COUNT(*)+1 is never used on the hot path.
    - Soft-deleted invoices (``deleted_at`` set) are invisible to every
      query and transition here.
    - A late fee is applied at most once per invoice
      (``UPDATE ... WHERE late_fee = 0``).
    - All "today" values come from the injected Clock unless passed in.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
    - Does NOT record payments; that belongs to the payments side.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.periods import month_end
from rental_kernel.exceptions import InvoiceNotFoundError, LeaseBillingError
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import (
    OPEN_INVOICE_STATUSES,
    InvoiceRecord,
    InvoiceStatus,
    LeaseRecord,
    NewInvoice,
    ReminderContact,
)
from rental_billing.models.invoice import InvoiceModel, InvoiceSequenceModel
from rental_billing.models.lease import LeaseModel

logger = get_logger("billing.invoice_ledger")

_OPEN = tuple(s.value for s in OPEN_INVOICE_STATUSES)
_LATE_FEE_ELIGIBLE = _OPEN + (InvoiceStatus.OVERDUE.value,)
_ZERO = Decimal("0")


class InvoiceLedger:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(self, data: NewInvoice) -> InvoiceRecord:
        now = self._clock.now()
        invoice_number = self._next_invoice_number(data.owner_id, now.year)
        withholdings_total = (
            data.withholding_iibb + data.withholding_iva + data.withholding_ganancias
        )

        model = InvoiceModel(
            lease_id=data.lease_id,
            owner_id=data.owner_id,
            tenant_account_id=data.tenant_account_id,
            invoice_number=invoice_number,
            period_start=data.period_start,
            period_end=data.period_end,
            subtotal=data.subtotal,
            late_fee=_ZERO,
            adjustments=_ZERO,
            total=data.total,
            currency_code=data.currency_code,
            amount_paid=_ZERO,
            due_date=data.due_date,
            status=InvoiceStatus.ISSUED.value,
            issued_at=now,
            original_amount=data.original_amount,
            original_currency=data.original_currency,
            exchange_rate_used=data.exchange_rate_used,
            exchange_rate_date=data.exchange_rate_date,
            withholding_iibb=data.withholding_iibb,
            withholding_iva=data.withholding_iva,
            withholding_ganancias=data.withholding_ganancias,
            withholdings_total=withholdings_total,
            adjustment_applied=data.adjustment_applied,
            adjustment_index_type=data.adjustment_index_type,
            adjustment_index_value=data.adjustment_index_value,
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(model.id),
                "invoice_number": invoice_number,
                "lease_id": str(data.lease_id),
                "total": data.total,
            },
        )
        return model.to_dto()

    def record_einvoice(self, invoice_id: UUID, cae: str, expires_on: date | None) -> None:
        """Store the electronic invoice authorization code."""
        self._session.execute(
            update(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .values(cae=cae, cae_expires_on=expires_on)
            .execution_options(synchronize_session="fetch")
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, invoice_id: UUID) -> InvoiceRecord:
        model = self._session.get(InvoiceModel, invoice_id, populate_existing=True)
        if model is None or model.deleted_at is not None:
            raise InvoiceNotFoundError(str(invoice_id))
        return model.to_dto()

    def find_pending_due_soon(
        self, days_before: int, today: date | None = None,
    ) -> list[InvoiceRecord]:
        """Open invoices with ``today <= due_date <= today + days_before``."""
        today = today or self._clock.today()
        return self._find(
            InvoiceModel.status.in_(_OPEN),
            InvoiceModel.due_date >= today,
            InvoiceModel.due_date <= today + timedelta(days=days_before),
        )

    def find_overdue(self, today: date | None = None) -> list[InvoiceRecord]:
        """Open invoices whose due date has passed."""
        today = today or self._clock.today()
        return self._find(
            InvoiceModel.status.in_(_OPEN),
            InvoiceModel.due_date < today,
        )

    def find_late_fee_candidates(self, today: date | None = None) -> list[InvoiceRecord]:
        """Past-due invoices (open or already overdue) without a late fee."""
        today = today or self._clock.today()
        return self._find(
            InvoiceModel.status.in_(_LATE_FEE_ELIGIBLE),
            InvoiceModel.due_date < today,
            InvoiceModel.late_fee == 0,
        )

    def find_for_owner_period(
        self,
        owner_id: UUID,
        year: int,
        month: int,
        status: InvoiceStatus | None = None,
    ) -> list[InvoiceRecord]:
        """Invoices of an owner whose billing period starts in the month."""
        first = date(year, month, 1)
        criteria = [
            InvoiceModel.owner_id == owner_id,
            InvoiceModel.period_start >= first,
            InvoiceModel.period_start <= month_end(first),
        ]
        if status is not None:
            criteria.append(InvoiceModel.status == InvoiceStatus(status).value)
        return self._find(*criteria)

    def get_reminder_contact(self, invoice_id: UUID) -> ReminderContact:
        lease = self._session.execute(
            select(LeaseModel)
            .join(InvoiceModel, InvoiceModel.lease_id == LeaseModel.id)
            .where(InvoiceModel.id == invoice_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if lease is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return lease.to_contact()

    # -------------------------------------------------------------------------
    # Guarded transitions
    # -------------------------------------------------------------------------

    def mark_overdue(self, today: date | None = None) -> int:
        """Move every past-due open invoice to ``overdue`` in one statement."""
        today = today or self._clock.today()
        result = self._session.execute(
            update(InvoiceModel)
            .where(
                InvoiceModel.status.in_(_OPEN),
                InvoiceModel.deleted_at.is_(None),
                InvoiceModel.due_date < today,
            )
            .values(status=InvoiceStatus.OVERDUE.value)
            .execution_options(synchronize_session="fetch")
        )
        count = result.rowcount or 0
        if count:
            logger.info("invoices_marked_overdue", extra={"count": count})
        return count

    def apply_late_fee(self, invoice_id: UUID, fee: Decimal) -> InvoiceRecord:
        """Add ``fee`` to both ``late_fee`` and ``total`` (unguarded)."""
        result = self._session.execute(
            update(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .values(
                late_fee=InvoiceModel.late_fee + fee,
                total=InvoiceModel.total + fee,
            )
            .execution_options(synchronize_session="fetch")
        )
        if not result.rowcount:
            raise InvoiceNotFoundError(str(invoice_id))
        logger.info(
            "late_fee_applied",
            extra={"invoice_id": str(invoice_id), "late_fee": fee},
        )
        return self._refresh(invoice_id)

    def apply_late_fee_once(self, invoice_id: UUID, fee: Decimal) -> bool:
        """Apply ``fee`` only if the invoice has no late fee yet.

        Returns True if this call applied it.
        """
        result = self._session.execute(
            update(InvoiceModel)
            .where(
                InvoiceModel.id == invoice_id,
                InvoiceModel.late_fee == 0,
                InvoiceModel.deleted_at.is_(None),
            )
            .values(
                late_fee=InvoiceModel.late_fee + fee,
                total=InvoiceModel.total + fee,
            )
            .execution_options(synchronize_session="fetch")
        )
        applied = bool(result.rowcount)
        if applied:
            logger.info(
                "late_fee_applied",
                extra={"invoice_id": str(invoice_id), "late_fee": fee},
            )
        return applied

    # -------------------------------------------------------------------------
    # Leases
    # -------------------------------------------------------------------------

    def find_lease_ids_for_billing(
        self, billing_date: date, lease_id: UUID | None = None,
    ) -> list[UUID]:
        criteria = [
            LeaseModel.status == "active",
            LeaseModel.deleted_at.is_(None),
            or_(
                LeaseModel.next_billing_date.is_(None),
                LeaseModel.next_billing_date <= billing_date,
            ),
            or_(
                LeaseModel.billing_day.is_(None),
                LeaseModel.billing_day == billing_date.day,
            ),
            LeaseModel.start_date <= billing_date,
            LeaseModel.end_date >= billing_date,
        ]
        if lease_id is not None:
            criteria.append(LeaseModel.id == lease_id)
        return list(
            self._session.execute(
                select(LeaseModel.id).where(*criteria).order_by(LeaseModel.start_date)
            ).scalars()
        )

    def get_lease(self, lease_id: UUID) -> LeaseRecord:
        model = self._session.get(LeaseModel, lease_id, populate_existing=True)
        if model is None:
            raise LeaseBillingError(str(lease_id), "lease not found")
        return model.to_dto()

    def get_leases_for_billing(
        self, billing_date: date, lease_id: UUID | None = None,
    ) -> list[LeaseRecord]:
        """Active leases due for an invoice on ``billing_date``."""
        return [
            self.get_lease(found)
            for found in self.find_lease_ids_for_billing(billing_date, lease_id)
        ]

    def update_lease_next_billing_date(
        self, lease_id: UUID, next_billing_date: date, last_billing_date: date,
    ) -> None:
        result = self._session.execute(
            update(LeaseModel)
            .where(LeaseModel.id == lease_id)
            .values(
                next_billing_date=next_billing_date,
                last_billing_date=last_billing_date,
            )
            .execution_options(synchronize_session="fetch")
        )
        if not result.rowcount:
            raise LeaseBillingError(str(lease_id), "lease not found")

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _find(self, *criteria) -> list[InvoiceRecord]:
        models = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.deleted_at.is_(None), *criteria)
            .order_by(InvoiceModel.due_date, InvoiceModel.invoice_number)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def _refresh(self, invoice_id: UUID) -> InvoiceRecord:
        model = self._session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id == invoice_id)
            .execution_options(populate_existing=True)
        ).scalar_one()
        return model.to_dto()

    def _next_invoice_number(self, owner_id: UUID, year: int) -> str:
        counter = self._lock_counter(owner_id, year)

        if counter is None:
            seed = self._session.execute(
                select(func.count(InvoiceModel.id)).where(
                    InvoiceModel.owner_id == owner_id,
                    InvoiceModel.invoice_number.like(f"{year}-%"),
                )
            ).scalar_one()
            savepoint = self._session.begin_nested()
            try:
                counter = InvoiceSequenceModel(
                    owner_id=owner_id, year=year, current_value=seed,
                )
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
            except IntegrityError:
                # Another writer created the counter first
                logger.debug(
                    "invoice_sequence_race_retry",
                    extra={"owner_id": str(owner_id), "year": year},
                )
                savepoint.rollback()
                counter = self._lock_counter(owner_id, year)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        return f"{year}-{counter.current_value:06d}"

    def _lock_counter(self, owner_id: UUID, year: int) -> InvoiceSequenceModel | None:
        return self._session.execute(
            select(InvoiceSequenceModel)
            .where(
                InvoiceSequenceModel.owner_id == owner_id,
                InvoiceSequenceModel.year == year,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
