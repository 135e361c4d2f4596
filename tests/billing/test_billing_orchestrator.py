"""
Tests for BillingOrchestrator.

Covers:
- invoice generation with period, due date and cursor advance
- per-lease SAVEPOINT isolation: one bad lease never aborts the run
- dry-run writes nothing
- currency conversion and withholdings flow into the invoice
- overdue, late-fee and reminder sweeps
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from rental_billing.collaborators import DeliveryResult, EInvoiceResult
from rental_billing.domain.types import InvoiceStatus, PaymentFrequency
from rental_billing.models.invoice import InvoiceModel
from rental_billing.models.lease import LeaseModel
from rental_billing.services.adjustment import AdjustmentCalculator
from rental_billing.services.billing import BillingOrchestrator, next_billing_date
from rental_billing.services.exchange_rates import ExchangeRateResolver
from rental_billing.services.index_store import IndexStore
from rental_billing.services.invoice_ledger import InvoiceLedger
from rental_billing.services.withholdings import WithholdingCalculator

BILLING_DATE = date(2024, 3, 1)


class NoRates:
    def fetch_fx(self, *args):
        return []

    def fetch_usd_brl(self, *args):
        return []


class RecordingEInvoice:
    def __init__(self, result=None, error=None):
        self.result = result or EInvoiceResult(success=True, cae="74123456789012")
        self.error = error
        self.emitted = []

    def emit(self, invoice):
        self.emitted.append(invoice.invoice_number)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingNotifier:
    def __init__(self):
        self.reminders = []

    def send_payment_reminder(self, contact, invoice, days_until_due):
        self.reminders.append((contact.tenant_phone, invoice.invoice_number, days_until_due))
        return DeliveryResult(success=True, channel="test")

    def notify_settlement(self, owner, calculation):
        return DeliveryResult(success=True, channel="test")


@pytest.fixture
def build_orchestrator(session, clock):
    def _build(**overrides) -> BillingOrchestrator:
        ledger = InvoiceLedger(session, clock)
        kwargs = {
            "session": session,
            "ledger": ledger,
            "adjustment": AdjustmentCalculator(IndexStore(session, clock), clock),
            "exchange_rates": ExchangeRateResolver(session, NoRates(), NoRates(), clock),
            "withholdings": WithholdingCalculator(session),
            "clock": clock,
        }
        kwargs.update(overrides)
        return BillingOrchestrator(**kwargs)

    return _build


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()


def invoices(session) -> list[InvoiceModel]:
    return session.execute(
        select(InvoiceModel).order_by(InvoiceModel.invoice_number)
    ).scalars().all()


class TestNextBillingDate:
    @pytest.mark.parametrize("frequency,expected", [
        (PaymentFrequency.MONTHLY, date(2024, 2, 29)),
        (PaymentFrequency.BIWEEKLY, date(2024, 2, 14)),
        (PaymentFrequency.WEEKLY, date(2024, 2, 7)),
    ])
    def test_advance(self, frequency, expected):
        assert next_billing_date(frequency, date(2024, 1, 31)) == expected


class TestRunBilling:
    def test_bills_due_leases(self, orchestrator, session, make_owner, make_lease):
        owner = make_owner()
        lease = make_lease(owner.id, rent_amount=Decimal("150000"))

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.processed_leases == 1
        assert result.invoices_created == 1
        assert result.total_amount == Decimal("150000.00")
        [invoice] = invoices(session)
        assert invoice.invoice_number == "2024-000001"
        assert invoice.period_start == date(2024, 3, 1)
        assert invoice.period_end == date(2024, 3, 31)
        assert invoice.due_date == date(2024, 3, 11)
        assert invoice.status == InvoiceStatus.ISSUED.value
        session.refresh(lease)
        assert lease.next_billing_date == date(2024, 4, 1)
        assert lease.last_billing_date == BILLING_DATE

    def test_second_run_same_day_bills_nothing(self, orchestrator, make_owner, make_lease):
        make_lease(make_owner().id)
        orchestrator.run_billing(BILLING_DATE)

        again = orchestrator.run_billing(BILLING_DATE)

        assert again.processed_leases == 0
        assert again.invoices_created == 0

    def test_failing_lease_is_isolated(
        self, orchestrator, session, make_owner, make_lease, captured_logs,
    ):
        owner = make_owner()
        good = make_lease(owner.id, start_date=date(2023, 1, 1))
        bad = make_lease(owner.id, start_date=date(2023, 6, 1), rent_amount=Decimal("0"))

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.processed_leases == 2
        assert result.invoices_created == 1
        assert result.invoices_failed == 1
        assert result.errors[0].lease_id == bad.id
        assert "rent amount must be positive" in result.errors[0].error
        assert [i.lease_id for i in invoices(session)] == [good.id]
        session.refresh(bad)
        assert bad.next_billing_date is None
        failure = [r for r in captured_logs() if r["message"] == "lease_billing_failed"][0]
        assert failure["lease_id"] == str(bad.id)

    def test_unsupported_currency_fails_only_that_lease(
        self, orchestrator, make_owner, make_lease,
    ):
        owner = make_owner()
        make_lease(owner.id)
        make_lease(owner.id, currency="EUR")

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.invoices_created == 1
        assert result.invoices_failed == 1

    def test_dry_run_writes_nothing(self, orchestrator, session, make_owner, make_lease):
        lease = make_lease(make_owner().id)

        result = orchestrator.run_billing(BILLING_DATE, dry_run=True)

        assert result.processed_leases == 1
        assert result.invoices_created == 0
        assert invoices(session) == []
        session.refresh(lease)
        assert lease.next_billing_date is None

    def test_single_lease(self, orchestrator, session, make_owner, make_lease):
        owner = make_owner()
        target = make_lease(owner.id)
        make_lease(owner.id)

        result = orchestrator.run_billing(BILLING_DATE, lease_id=target.id)

        assert result.processed_leases == 1
        assert [i.lease_id for i in invoices(session)] == [target.id]

    def test_fixed_adjustment_recorded(self, orchestrator, session, make_owner, make_lease):
        make_lease(
            make_owner().id,
            rent_amount=Decimal("100000"),
            adjustment_type="fixed",
            adjustment_rate=Decimal("15"),
        )

        orchestrator.run_billing(BILLING_DATE)

        [invoice] = invoices(session)
        assert invoice.subtotal == Decimal("115000.00")
        assert invoice.adjustment_applied == Decimal("15000.00")
        assert invoice.adjustment_index_type == "fixed"

    def test_conversion_and_withholdings(
        self, orchestrator, session, make_owner, make_lease, make_company, make_rate,
    ):
        owner = make_owner()
        company = make_company({
            "version": 2,
            "is_withholding_agent": True,
            "iibb_rate": "3",
            "iibb_jurisdiction": "CABA",
        })
        make_rate("USD", "ARS", date(2024, 2, 29), "850.5")
        make_lease(
            owner.id,
            company_id=company.id,
            rent_amount=Decimal("100"),
            currency="USD",
        )

        orchestrator.run_billing(BILLING_DATE)

        [invoice] = invoices(session)
        assert invoice.currency_code == "ARS"
        assert invoice.original_amount == Decimal("100.00")
        assert invoice.original_currency == "USD"
        assert invoice.exchange_rate_used == Decimal("850.5")
        assert invoice.subtotal == Decimal("85050.00")
        assert invoice.withholding_iibb == Decimal("2551.50")
        assert invoice.total == Decimal("82498.50")

    def test_missing_rate_fails_the_lease(self, orchestrator, make_owner, make_lease):
        make_lease(make_owner().id, currency="USD")

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.invoices_failed == 1
        assert "No exchange rate available for USD/ARS" in result.errors[0].error

    def test_usd_company_bills_ars_lease(
        self, orchestrator, session, make_owner, make_lease, make_company, make_rate,
    ):
        company = make_company(base_currency="USD")
        make_rate("USD", "ARS", date(2024, 2, 29), "1000")
        make_lease(make_owner().id, company_id=company.id, rent_amount=Decimal("500000"))

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.invoices_failed == 0
        [invoice] = invoices(session)
        assert invoice.currency_code == "USD"
        assert invoice.original_currency == "ARS"
        assert invoice.exchange_rate_used == Decimal("0.001")
        assert invoice.subtotal == Decimal("500.00")

    def test_einvoice_cae_recorded(self, build_orchestrator, session, make_owner, make_lease):
        einvoice = RecordingEInvoice()
        orchestrator = build_orchestrator(einvoice=einvoice)
        make_lease(make_owner().id)

        orchestrator.run_billing(BILLING_DATE)

        [invoice] = invoices(session)
        session.refresh(invoice)
        assert einvoice.emitted == ["2024-000001"]
        assert invoice.cae == "74123456789012"

    def test_einvoice_failure_keeps_invoice(
        self, build_orchestrator, session, make_owner, make_lease, captured_logs,
    ):
        orchestrator = build_orchestrator(einvoice=RecordingEInvoice(error=RuntimeError("AFIP down")))
        make_lease(make_owner().id)

        result = orchestrator.run_billing(BILLING_DATE)

        assert result.invoices_created == 1
        assert len(invoices(session)) == 1
        assert any(r["message"] == "einvoice_emit_failed" for r in captured_logs())


class TestSweeps:
    def test_process_overdue(self, orchestrator, make_owner, make_lease, make_invoice):
        lease = make_lease(make_owner().id)
        make_invoice(lease, due_date=date(2024, 2, 20))
        make_invoice(lease, due_date=date(2024, 2, 25))
        make_invoice(lease, due_date=date(2024, 3, 11))

        result = orchestrator.process_overdue()

        assert result.marked_overdue == 2
        assert result.processed == 2

    def test_late_fees_once_per_invoice(
        self, orchestrator, session, make_owner, make_lease, make_invoice,
    ):
        lease = make_lease(make_owner().id)
        invoice = make_invoice(lease, due_date=date(2024, 2, 20), subtotal=Decimal("80000"))

        first = orchestrator.process_late_fees()
        second = orchestrator.process_late_fees()

        assert first.fees_applied == 1
        assert first.total_fees == Decimal("1600.00")
        assert second.processed == 0
        assert second.fees_applied == 0
        session.refresh(invoice)
        assert invoice.late_fee == Decimal("1600.00")
        assert invoice.total == Decimal("81600.00")

    def test_late_fee_custom_rate(self, orchestrator, make_owner, make_lease, make_invoice):
        lease = make_lease(make_owner().id)
        make_invoice(lease, due_date=date(2024, 2, 20), subtotal=Decimal("80000"))

        result = orchestrator.process_late_fees(rate=Decimal("0.05"))

        assert result.total_fees == Decimal("4000.00")

    def test_late_fees_reach_already_overdue_invoices(
        self, orchestrator, make_owner, make_lease, make_invoice,
    ):
        lease = make_lease(make_owner().id)
        make_invoice(lease, due_date=date(2024, 2, 20), status="overdue")

        assert orchestrator.process_late_fees().fees_applied == 1


class TestReminders:
    def test_sends_for_invoices_due_soon(
        self, build_orchestrator, make_owner, make_lease, make_invoice,
    ):
        notifier = RecordingNotifier()
        orchestrator = build_orchestrator(notifier=notifier)
        lease = make_lease(make_owner().id)
        invoice = make_invoice(lease, due_date=date(2024, 3, 3))
        make_invoice(lease, due_date=date(2024, 3, 10))

        result = orchestrator.send_reminders(days_before=3)

        assert result.total == 1
        assert result.sent == 1
        assert notifier.reminders == [("+5491155550000", invoice.invoice_number, 2)]

    def test_missing_phone_counts_as_failed(
        self, build_orchestrator, make_owner, make_lease, make_invoice,
    ):
        notifier = RecordingNotifier()
        orchestrator = build_orchestrator(notifier=notifier)
        lease = make_lease(make_owner().id, tenant_phone=None)
        make_invoice(lease, due_date=date(2024, 3, 2))

        result = orchestrator.send_reminders()

        assert result.failed == 1
        assert result.sent == 0
        assert notifier.reminders == []

    def test_dry_run_counts_without_sending(
        self, build_orchestrator, make_owner, make_lease, make_invoice,
    ):
        notifier = RecordingNotifier()
        orchestrator = build_orchestrator(notifier=notifier)
        lease = make_lease(make_owner().id, tenant_phone=None)
        make_invoice(lease, due_date=date(2024, 3, 2))

        result = orchestrator.send_reminders(dry_run=True)

        assert result.sent == 1
        assert notifier.reminders == []
