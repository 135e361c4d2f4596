"""
BillingOrchestrator -- SAVEPOINT-per-lease invoice generation and the
overdue, late-fee and reminder sweeps.

Contract:
    ``run_billing()`` bills every lease returned by the ledger for the
    billing date.  Each lease runs in its own SAVEPOINT: a failure rolls
    back that lease only, is recorded in ``errors``, and the run goes on.
    ``process_overdue()``, ``process_late_fees()`` and ``send_reminders()``
    are independent sweeps over the invoice ledger.

Per lease:
    1. period = calendar month of the billing date; due = date + grace days
    2. adjusted rent (AdjustmentCalculator, fail-open)
    3. conversion to the company base currency when the lease differs
    4. withholdings on the converted subtotal when the lease has a company
    5. total = subtotal - withholdings
    6. persist the invoice and advance the lease cursor (not in dry-run)
    7. electronic invoice emission, best effort

Invariants enforced:
    - One lease's failure never aborts the run.
    - A late fee is charged at most once per invoice (ledger guard).
    - E-invoice failures never undo issuance.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

import time
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.money import ZERO, round_money, to_decimal
from rental_kernel.domain.periods import add_months, month_end, month_start
from rental_kernel.exceptions import LeaseBillingError
from rental_kernel.logging_config import LogContext, get_logger

from rental_billing.collaborators import (
    DisabledEInvoiceClient,
    EInvoiceClient,
    LoggingNotificationClient,
    NotificationClient,
)
from rental_billing.domain.types import (
    AdjustmentType,
    BillingRunResult,
    Currency,
    InvoiceRecord,
    LateFeesRunResult,
    LeaseFailure,
    LeaseRecord,
    NewInvoice,
    OverdueRunResult,
    PaymentFrequency,
    ReminderRunResult,
)
from rental_billing.models.party import CompanyModel
from rental_billing.services.adjustment import AdjustmentCalculator
from rental_billing.services.exchange_rates import ExchangeRateResolver
from rental_billing.services.invoice_ledger import InvoiceLedger
from rental_billing.services.withholdings import WithholdingCalculator

logger = get_logger("billing.orchestrator")

DEFAULT_GRACE_DAYS = 10
DEFAULT_LATE_FEE_RATE = Decimal("0.02")
DEFAULT_REMINDER_DAYS = 3


def next_billing_date(frequency: PaymentFrequency, current: date) -> date:
    """Advance a billing cursor by one payment period."""
    if frequency is PaymentFrequency.WEEKLY:
        return current + timedelta(days=7)
    if frequency is PaymentFrequency.BIWEEKLY:
        return current + timedelta(days=14)
    return add_months(current, 1)


class BillingOrchestrator:
    def __init__(
        self,
        session: Session,
        ledger: InvoiceLedger,
        adjustment: AdjustmentCalculator,
        exchange_rates: ExchangeRateResolver,
        withholdings: WithholdingCalculator,
        einvoice: EInvoiceClient | None = None,
        notifier: NotificationClient | None = None,
        clock: Clock | None = None,
        base_currency: str = "ARS",
        grace_days: int = DEFAULT_GRACE_DAYS,
        late_fee_rate: Decimal = DEFAULT_LATE_FEE_RATE,
    ):
        self._session = session
        self._ledger = ledger
        self._adjustment = adjustment
        self._exchange_rates = exchange_rates
        self._withholdings = withholdings
        self._einvoice = einvoice or DisabledEInvoiceClient()
        self._notifier = notifier or LoggingNotificationClient()
        self._clock = clock or SystemClock()
        self._base_currency = Currency.parse(base_currency).value
        self._grace_days = grace_days
        self._late_fee_rate = late_fee_rate

    # -------------------------------------------------------------------------
    # Billing run
    # -------------------------------------------------------------------------

    def run_billing(
        self,
        billing_date: date | None = None,
        dry_run: bool = False,
        lease_id: UUID | None = None,
    ) -> BillingRunResult:
        billing_date = billing_date or self._clock.today()
        start_time = time.monotonic()
        logger.info(
            "billing_run_started",
            extra={
                "billing_date": billing_date,
                "dry_run": dry_run,
                "lease_id": str(lease_id) if lease_id else None,
            },
        )

        lease_ids = self._ledger.find_lease_ids_for_billing(billing_date, lease_id)
        created = 0
        total_amount = ZERO
        failures: list[LeaseFailure] = []

        for current_id in lease_ids:
            with LogContext.bind(lease_id=current_id):
                savepoint = self._session.begin_nested()
                try:
                    lease = self._ledger.get_lease(current_id)
                    draft, invoice = self._bill_lease(lease, billing_date, dry_run)
                    savepoint.commit()
                except Exception as exc:
                    savepoint.rollback()
                    failures.append(LeaseFailure(lease_id=current_id, error=str(exc)))
                    logger.error(
                        "lease_billing_failed",
                        extra={"lease_id": str(current_id), "error": str(exc)},
                    )
                    continue

                if invoice is not None:
                    created += 1
                    total_amount += draft.total
                    self._emit_einvoice(invoice)

        result = BillingRunResult(
            processed_leases=len(lease_ids),
            invoices_created=created,
            invoices_failed=len(failures),
            total_amount=total_amount,
            errors=tuple(failures),
        )
        logger.info(
            "billing_run_completed",
            extra={
                "processed_leases": result.processed_leases,
                "invoices_created": result.invoices_created,
                "invoices_failed": result.invoices_failed,
                "total_amount": result.total_amount,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return result

    def _bill_lease(
        self,
        lease: LeaseRecord,
        billing_date: date,
        dry_run: bool,
    ) -> tuple[NewInvoice, InvoiceRecord | None]:
        if lease.rent_amount <= 0:
            raise LeaseBillingError(str(lease.lease_id), "rent amount must be positive")

        adjustment = self._adjustment.calculate_adjusted_rent(lease)
        subtotal = round_money(adjustment.adjusted_amount)

        lease_currency = Currency.parse(lease.currency).value
        base_currency = self._base_currency_for(lease.company_id)
        original_amount = original_currency = rate_used = rate_date = None
        if lease_currency != base_currency:
            conversion = self._exchange_rates.convert_amount(
                subtotal, lease_currency, base_currency, billing_date,
            )
            original_amount = subtotal
            original_currency = lease_currency
            rate_used = conversion.rate
            rate_date = conversion.rate_date
            subtotal = conversion.amount

        iibb = iva = ganancias = ZERO
        if lease.company_id is not None:
            withheld = self._withholdings.calculate_withholdings(
                lease.company_id, lease.owner_id, subtotal,
            )
            iibb, iva, ganancias = withheld.iibb, withheld.iva, withheld.ganancias

        adjusted = adjustment.adjustment_type is not AdjustmentType.NONE
        draft = NewInvoice(
            lease_id=lease.lease_id,
            owner_id=lease.owner_id,
            tenant_account_id=lease.tenant_account_id,
            period_start=month_start(billing_date),
            period_end=month_end(billing_date),
            subtotal=subtotal,
            total=subtotal - iibb - iva - ganancias,
            currency_code=base_currency,
            due_date=billing_date + timedelta(days=self._grace_days),
            original_amount=original_amount,
            original_currency=original_currency,
            exchange_rate_used=rate_used,
            exchange_rate_date=rate_date,
            withholding_iibb=iibb,
            withholding_iva=iva,
            withholding_ganancias=ganancias,
            adjustment_applied=round_money(adjustment.applied_delta),
            adjustment_index_type=adjustment.adjustment_type.value if adjusted else None,
            adjustment_index_value=adjustment.current_index_value,
        )

        if dry_run:
            logger.info(
                "invoice_dry_run",
                extra={
                    "lease_id": str(lease.lease_id),
                    "subtotal": draft.subtotal,
                    "total": draft.total,
                },
            )
            return draft, None

        invoice = self._ledger.create(draft)
        self._ledger.update_lease_next_billing_date(
            lease.lease_id,
            next_billing_date(lease.payment_frequency, billing_date),
            billing_date,
        )
        return draft, invoice

    def _base_currency_for(self, company_id: UUID | None) -> str:
        if company_id is None:
            return self._base_currency
        company = self._session.get(CompanyModel, company_id)
        if company is None or not company.base_currency:
            return self._base_currency
        return Currency.parse(company.base_currency).value

    def _emit_einvoice(self, invoice: InvoiceRecord) -> None:
        try:
            result = self._einvoice.emit(invoice)
        except Exception as exc:
            logger.warning(
                "einvoice_emit_failed",
                extra={"invoice_id": str(invoice.invoice_id), "error": str(exc)},
            )
            return

        if not result.success or not result.cae:
            if result.error != "disabled":
                logger.warning(
                    "einvoice_rejected",
                    extra={"invoice_id": str(invoice.invoice_id), "error": result.error},
                )
            return

        savepoint = self._session.begin_nested()
        try:
            self._ledger.record_einvoice(invoice.invoice_id, result.cae, result.cae_expires_on)
            savepoint.commit()
        except Exception as exc:
            savepoint.rollback()
            logger.warning(
                "einvoice_record_failed",
                extra={"invoice_id": str(invoice.invoice_id), "error": str(exc)},
            )

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    def process_overdue(self, today: date | None = None) -> OverdueRunResult:
        logger.info("overdue_run_started")
        marked = self._ledger.mark_overdue(today or self._clock.today())
        result = OverdueRunResult(processed=marked, marked_overdue=marked)
        logger.info("overdue_run_completed", extra={"marked_overdue": marked})
        return result

    def process_late_fees(
        self,
        rate: Decimal | None = None,
        today: date | None = None,
    ) -> LateFeesRunResult:
        """Charge ``subtotal × rate`` once on every past-due invoice.

        ``rate`` is a fraction (0.02 is 2%).
        """
        rate = to_decimal(rate, self._late_fee_rate)
        today = today or self._clock.today()
        logger.info("late_fees_run_started", extra={"rate": rate})

        candidates = self._ledger.find_late_fee_candidates(today)
        applied = 0
        total_fees = ZERO
        for invoice in candidates:
            fee = round_money(invoice.subtotal * rate)
            if fee <= 0:
                continue
            if self._ledger.apply_late_fee_once(invoice.invoice_id, fee):
                applied += 1
                total_fees += fee

        result = LateFeesRunResult(
            processed=len(candidates), fees_applied=applied, total_fees=total_fees,
        )
        logger.info(
            "late_fees_run_completed",
            extra={
                "processed": result.processed,
                "fees_applied": applied,
                "total_fees": total_fees,
            },
        )
        return result

    def send_reminders(
        self,
        days_before: int = DEFAULT_REMINDER_DAYS,
        dry_run: bool = False,
        today: date | None = None,
    ) -> ReminderRunResult:
        today = today or self._clock.today()
        invoices = self._ledger.find_pending_due_soon(days_before, today)
        sent = 0
        failed = 0

        for invoice in invoices:
            days_until_due = (invoice.due_date - today).days
            if dry_run:
                logger.info(
                    "reminder_dry_run",
                    extra={
                        "invoice_number": invoice.invoice_number,
                        "days_until_due": days_until_due,
                    },
                )
                sent += 1
                continue

            contact = self._ledger.get_reminder_contact(invoice.invoice_id)
            if not contact.tenant_phone:
                logger.warning(
                    "reminder_skipped_no_phone",
                    extra={
                        "invoice_id": str(invoice.invoice_id),
                        "invoice_number": invoice.invoice_number,
                    },
                )
                failed += 1
                continue

            try:
                delivery = self._notifier.send_payment_reminder(
                    contact, invoice, days_until_due,
                )
            except Exception as exc:
                logger.error(
                    "reminder_delivery_failed",
                    extra={"invoice_id": str(invoice.invoice_id), "error": str(exc)},
                )
                failed += 1
                continue

            if delivery.success:
                sent += 1
            else:
                failed += 1

        result = ReminderRunResult(total=len(invoices), sent=sent, failed=failed)
        logger.info(
            "reminders_run_completed",
            extra={"total": result.total, "sent": sent, "failed": failed},
        )
        return result
