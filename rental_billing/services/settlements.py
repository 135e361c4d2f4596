"""
SettlementEngine -- owner payouts net of commission and withholdings.

Contract:
    ``calculate_settlement(owner_id, period)`` is a pure read: it sums the
    owner's paid invoices billed in the month and derives commission, net
    amount and the scheduled payout date.
    ``process_settlement()`` persists the settlement, asks the payout
    collaborator for a transfer and records the outcome.
    ``get_pending_settlements(today)`` lists the (owner, period) pairs that
    are due for settlement.

Settlement-date rule:
    For each invoice, paid before due -> the due date; paid on or after
    due -> the payment date.  The settlement date is the latest of these,
    or the last day of the period when there are no invoices.

Invariants enforced:
    - One settlement per (owner, period); a ``completed`` row is never
      overwritten and never paid twice.
    - Settlement rows are never deleted.  The ``processing`` row is written
      before the payout call, so a failed or raising transfer leaves it
      ``failed`` with the error in ``notes``.
    - Completion is a guarded UPDATE (``WHERE status <> 'completed'``).

Failure modes:
    - OwnerNotFoundError / InvalidPeriodError from ``calculate_settlement``.
    - ``process_settlement`` never raises for business failures; it
      returns ``SettlementResult(success=False, error=...)``.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.money import ZERO, percent_of
from rental_kernel.domain.periods import period_bounds, period_of
from rental_kernel.exceptions import OwnerNotFoundError
from rental_kernel.logging_config import LogContext, get_logger

from rental_billing.collaborators import (
    LoggingNotificationClient,
    LoggingPayoutClient,
    NotificationClient,
    PayoutClient,
)
from rental_billing.domain.types import (
    Deduction,
    InvoiceStatus,
    OwnerRecord,
    PendingSettlement,
    SettlementCalculation,
    SettlementInvoice,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
)
from rental_billing.models.invoice import InvoiceModel, PaymentModel
from rental_billing.models.lease import LeaseModel
from rental_billing.models.party import OwnerModel
from rental_billing.models.settlement import SettlementModel

logger = get_logger("billing.settlements")

DEFAULT_COMMISSION_PERCENTAGE = Decimal("5")
PAYMENT_COMPLETED = "completed"

_BLOCKING_STATUSES = (SettlementStatus.COMPLETED.value, SettlementStatus.PROCESSING.value)


def _latest_payments():
    """Latest completed payment date per invoice."""
    return (
        select(
            PaymentModel.invoice_id.label("invoice_id"),
            func.max(PaymentModel.payment_date).label("paid_on"),
        )
        .where(PaymentModel.status == PAYMENT_COMPLETED)
        .group_by(PaymentModel.invoice_id)
        .subquery("latest_payment")
    )


def scheduled_date_for(invoices: Iterable[SettlementInvoice], period: str) -> date:
    """Latest per-invoice scheduling date, or the period's last day."""
    dates = [invoice.scheduling_date for invoice in invoices]
    if not dates:
        return period_bounds(period)[1]
    return max(dates)


class SettlementEngine:
    def __init__(
        self,
        session: Session,
        payout: PayoutClient | None = None,
        notifier: NotificationClient | None = None,
        clock: Clock | None = None,
        default_commission: Decimal = DEFAULT_COMMISSION_PERCENTAGE,
        currency: str = "ARS",
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._payout = payout or LoggingPayoutClient(self._clock)
        self._notifier = notifier or LoggingNotificationClient()
        self._default_commission = default_commission
        self._currency = currency

    # -------------------------------------------------------------------------
    # Calculation
    # -------------------------------------------------------------------------

    def get_owner(self, owner_id: UUID) -> OwnerRecord:
        model = self._session.get(OwnerModel, owner_id)
        if model is None:
            raise OwnerNotFoundError(str(owner_id))
        return model.to_dto()

    def calculate_settlement(self, owner_id: UUID, period: str) -> SettlementCalculation:
        first, last = period_bounds(period)
        owner = self.get_owner(owner_id)
        # Unset or zero falls back to the platform default
        rate = owner.commission_rate or self._default_commission

        logger.info(
            "settlement_calculation_started",
            extra={"owner_id": str(owner_id), "period": period},
        )

        invoices = self._paid_invoices(owner_id, first, last)
        gross = sum((invoice.amount for invoice in invoices), ZERO)
        commission = percent_of(gross, rate)
        withholdings: tuple[Deduction, ...] = ()
        net = gross - commission - sum((w.amount for w in withholdings), ZERO)

        return SettlementCalculation(
            owner_id=owner_id,
            owner_name=owner.full_name,
            period=period,
            invoices=tuple(invoices),
            gross_amount=gross,
            commission_rate=rate,
            commission_amount=commission,
            withholdings=withholdings,
            net_amount=net,
            scheduled_date=scheduled_date_for(invoices, period),
            currency=self._currency,
        )

    def _paid_invoices(
        self, owner_id: UUID, first: date, last: date,
    ) -> list[SettlementInvoice]:
        latest = _latest_payments()
        rows = self._session.execute(
            select(InvoiceModel, LeaseModel, latest.c.paid_on)
            .join(LeaseModel, LeaseModel.id == InvoiceModel.lease_id)
            .outerjoin(latest, latest.c.invoice_id == InvoiceModel.id)
            .where(
                InvoiceModel.owner_id == owner_id,
                InvoiceModel.period_start >= first,
                InvoiceModel.period_start <= last,
                InvoiceModel.status == InvoiceStatus.PAID.value,
                InvoiceModel.deleted_at.is_(None),
            )
            .order_by(InvoiceModel.invoice_number)
        ).all()

        today = self._clock.today()
        result: list[SettlementInvoice] = []
        for invoice, lease, paid_on in rows:
            record = invoice.to_dto()
            result.append(
                SettlementInvoice(
                    invoice_id=record.invoice_id,
                    invoice_number=record.invoice_number,
                    amount=record.total,
                    paid_at=paid_on or record.paid_at or today,
                    due_date=record.due_date,
                    tenant=lease.tenant_name,
                    property_label=lease.property_label or "N/A",
                )
            )
        return result

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process_settlement(
        self, owner_id: UUID, period: str, dry_run: bool = False,
    ) -> SettlementResult:
        with LogContext.bind(owner_id=owner_id):
            logger.info(
                "settlement_processing_started",
                extra={"owner_id": str(owner_id), "period": period, "dry_run": dry_run},
            )
            try:
                calculation = self.calculate_settlement(owner_id, period)
            except Exception as exc:
                logger.error(
                    "settlement_processing_failed",
                    extra={"owner_id": str(owner_id), "period": period, "error": str(exc)},
                )
                return SettlementResult(success=False, error=str(exc))

            if not calculation.invoices:
                logger.info(
                    "settlement_no_invoices",
                    extra={"owner_id": str(owner_id), "period": period},
                )
                return SettlementResult(success=True)

            if calculation.net_amount <= 0:
                logger.warning(
                    "settlement_non_positive_net",
                    extra={
                        "owner_id": str(owner_id),
                        "period": period,
                        "net_amount": calculation.net_amount,
                    },
                )
                return SettlementResult(success=True)

            if dry_run:
                logger.info(
                    "settlement_dry_run",
                    extra={
                        "owner_id": str(owner_id),
                        "period": period,
                        "gross_amount": calculation.gross_amount,
                        "commission_amount": calculation.commission_amount,
                        "net_amount": calculation.net_amount,
                        "scheduled_date": calculation.scheduled_date,
                        "invoice_count": len(calculation.invoices),
                    },
                )
                return SettlementResult(success=True)

            savepoint = self._session.begin_nested()
            try:
                existing = self._find(owner_id, period)
                if existing is not None and existing.status == SettlementStatus.COMPLETED.value:
                    savepoint.commit()
                    logger.info(
                        "settlement_already_completed",
                        extra={"settlement_id": str(existing.id), "period": period},
                    )
                    return SettlementResult(success=True, settlement_id=existing.id)
                settlement = self._upsert_processing(calculation, existing)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                logger.error(
                    "settlement_processing_failed",
                    extra={"owner_id": str(owner_id), "period": period, "error": str(exc)},
                )
                return SettlementResult(success=False, error=str(exc))
            return self._pay_out(calculation, settlement)

    def _pay_out(
        self, calculation: SettlementCalculation, settlement: SettlementModel,
    ) -> SettlementResult:
        # The processing row is already written; a payout failure only moves it to failed
        try:
            transfer = self._payout.initiate_transfer(
                settlement.id,
                calculation.owner_id,
                calculation.net_amount,
                calculation.currency,
            )
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            error = None if transfer.success else (transfer.error or "Unknown error")

        if error is not None:
            self._session.execute(
                update(SettlementModel)
                .where(
                    SettlementModel.id == settlement.id,
                    SettlementModel.status != SettlementStatus.COMPLETED.value,
                )
                .values(status=SettlementStatus.FAILED.value, notes=error)
                .execution_options(synchronize_session="fetch")
            )
            logger.error(
                "settlement_transfer_failed",
                extra={"settlement_id": str(settlement.id), "error": error},
            )
            return SettlementResult(success=False, settlement_id=settlement.id, error=error)

        completed = self._session.execute(
            update(SettlementModel)
            .where(
                SettlementModel.id == settlement.id,
                SettlementModel.status != SettlementStatus.COMPLETED.value,
            )
            .values(
                status=SettlementStatus.COMPLETED.value,
                transfer_reference=transfer.reference,
                processed_at=self._clock.now(),
            )
            .execution_options(synchronize_session="fetch")
        )
        if not completed.rowcount:
            logger.warning(
                "settlement_completed_concurrently",
                extra={"settlement_id": str(settlement.id)},
            )

        self._notify_owner(calculation)
        logger.info(
            "settlement_completed",
            extra={
                "settlement_id": str(settlement.id),
                "period": calculation.period,
                "net_amount": calculation.net_amount,
                "transfer_reference": transfer.reference,
            },
        )
        return SettlementResult(
            success=True,
            settlement_id=settlement.id,
            transfer_reference=transfer.reference,
        )

    def _upsert_processing(
        self,
        calculation: SettlementCalculation,
        existing: SettlementModel | None,
    ) -> SettlementModel:
        if existing is None:
            savepoint = self._session.begin_nested()
            try:
                model = SettlementModel(
                    owner_id=calculation.owner_id,
                    period=calculation.period,
                    status=SettlementStatus.PROCESSING.value,
                )
                self._apply_amounts(model, calculation)
                self._session.add(model)
                self._session.flush()
                savepoint.commit()
                return model
            except IntegrityError:
                savepoint.rollback()
                existing = self._find(calculation.owner_id, calculation.period)
                if existing is None:
                    raise
                if existing.status == SettlementStatus.COMPLETED.value:
                    raise

        existing.status = SettlementStatus.PROCESSING.value
        self._apply_amounts(existing, calculation)
        self._session.flush()
        return existing

    @staticmethod
    def _apply_amounts(model: SettlementModel, calculation: SettlementCalculation) -> None:
        model.gross_amount = calculation.gross_amount
        model.commission_amount = calculation.commission_amount
        model.withholdings_amount = calculation.withholdings_amount
        model.net_amount = calculation.net_amount
        model.currency = calculation.currency
        model.scheduled_date = calculation.scheduled_date

    def _notify_owner(self, calculation: SettlementCalculation) -> None:
        try:
            owner = self.get_owner(calculation.owner_id)
            delivery = self._notifier.notify_settlement(owner, calculation)
            if not delivery.success:
                logger.warning(
                    "settlement_notification_failed",
                    extra={"owner_id": str(calculation.owner_id), "error": delivery.error},
                )
        except Exception as exc:
            logger.warning(
                "settlement_notification_failed",
                extra={"owner_id": str(calculation.owner_id), "error": str(exc)},
            )

    def _find(self, owner_id: UUID, period: str) -> SettlementModel | None:
        return self._session.execute(
            select(SettlementModel)
            .where(SettlementModel.owner_id == owner_id, SettlementModel.period == period)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_pending_settlements(self, today: date | None = None) -> list[PendingSettlement]:
        """(owner, period) pairs with at least one invoice due for settlement."""
        today = today or self._clock.today()
        latest = _latest_payments()
        rows = self._session.execute(
            select(
                InvoiceModel.owner_id,
                InvoiceModel.period_start,
                InvoiceModel.due_date,
                InvoiceModel.paid_at,
                latest.c.paid_on,
            )
            .outerjoin(latest, latest.c.invoice_id == InvoiceModel.id)
            .where(
                InvoiceModel.status == InvoiceStatus.PAID.value,
                InvoiceModel.deleted_at.is_(None),
            )
        ).all()

        blocked = {
            (owner_id, period)
            for owner_id, period in self._session.execute(
                select(SettlementModel.owner_id, SettlementModel.period).where(
                    SettlementModel.status.in_(_BLOCKING_STATUSES)
                )
            ).all()
        }

        pending: set[tuple[UUID, str]] = set()
        for owner_id, period_start, due_date, invoice_paid_at, paid_on in rows:
            paid = paid_on or invoice_paid_at
            if paid is None:
                continue
            key = (owner_id, period_of(period_start))
            if key in blocked:
                continue
            early_and_due = paid < due_date and due_date <= today
            late_and_paid = paid >= due_date and paid <= today
            if early_and_due or late_and_paid:
                pending.add(key)

        return [
            PendingSettlement(owner_id=owner_id, period=period)
            for owner_id, period in sorted(pending, key=lambda k: (k[1], str(k[0])))
        ]

    def process_pending_settlements(
        self, dry_run: bool = False, today: date | None = None,
    ) -> list[tuple[PendingSettlement, SettlementResult]]:
        outcomes = []
        for pending in self.get_pending_settlements(today):
            outcomes.append(
                (pending, self.process_settlement(pending.owner_id, pending.period, dry_run))
            )
        return outcomes

    def get_settlement_history(self, owner_id: UUID, limit: int = 12) -> list[SettlementRecord]:
        models = self._session.execute(
            select(SettlementModel)
            .where(SettlementModel.owner_id == owner_id)
            .order_by(SettlementModel.period.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [m.to_dto() for m in models]
