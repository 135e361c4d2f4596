"""
Outbound collaborators of the billing engine.

The engine never renders PDFs, sends messages, signs electronic invoices
or moves money itself.  It calls these interfaces, and their failures are
reported back as result values (never as exceptions the engine must
understand).

Default implementations log what they would have done.  They let the
batch run end-to-end in environments where the real integrations are not
wired in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import (
    InvoiceRecord,
    OwnerRecord,
    ReminderContact,
    SettlementCalculation,
)

logger = get_logger("billing.collaborators")


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class EInvoiceResult:
    success: bool
    cae: str | None = None
    cae_expires_on: date | None = None
    error: str | None = None


@dataclass(frozen=True)
class TransferResult:
    success: bool
    reference: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    channel: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReportResult:
    success: bool
    location: str | None = None
    error: str | None = None


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class EInvoiceClient(Protocol):
    def emit(self, invoice: InvoiceRecord) -> EInvoiceResult: ...


@runtime_checkable
class PayoutClient(Protocol):
    def initiate_transfer(
        self,
        settlement_id: UUID,
        owner_id: UUID,
        amount: Decimal,
        currency: str,
    ) -> TransferResult: ...


@runtime_checkable
class NotificationClient(Protocol):
    def send_payment_reminder(
        self,
        contact: ReminderContact,
        invoice: InvoiceRecord,
        days_until_due: int,
    ) -> DeliveryResult: ...

    def notify_settlement(
        self,
        owner: OwnerRecord,
        calculation: SettlementCalculation,
    ) -> DeliveryResult: ...


@runtime_checkable
class ReportRenderer(Protocol):
    def render(self, report: dict[str, Any]) -> ReportResult: ...


# =============================================================================
# Logging defaults
# =============================================================================


class DisabledEInvoiceClient:
    """Electronic invoicing is not configured."""

    def emit(self, invoice: InvoiceRecord) -> EInvoiceResult:
        logger.debug(
            "einvoice_skipped",
            extra={"invoice_id": str(invoice.invoice_id)},
        )
        return EInvoiceResult(success=False, error="disabled")


class LoggingPayoutClient:
    """Records the transfer request and returns a synthetic reference.

    References look like ``TRF-<epoch ms>-<first 8 chars of owner id>``.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def initiate_transfer(
        self,
        settlement_id: UUID,
        owner_id: UUID,
        amount: Decimal,
        currency: str,
    ) -> TransferResult:
        stamp = int(self._clock.now().timestamp() * 1000)
        reference = f"TRF-{stamp}-{str(owner_id)[:8]}"
        logger.info(
            "transfer_initiated",
            extra={
                "settlement_id": str(settlement_id),
                "owner_id": str(owner_id),
                "amount": amount,
                "currency": currency,
                "transfer_reference": reference,
            },
        )
        return TransferResult(success=True, reference=reference)


class LoggingNotificationClient:
    def send_payment_reminder(
        self,
        contact: ReminderContact,
        invoice: InvoiceRecord,
        days_until_due: int,
    ) -> DeliveryResult:
        if not contact.tenant_phone:
            return DeliveryResult(success=False, error="tenant has no phone")
        logger.info(
            "payment_reminder_sent",
            extra={
                "invoice_id": str(invoice.invoice_id),
                "invoice_number": invoice.invoice_number,
                "days_until_due": days_until_due,
            },
        )
        return DeliveryResult(success=True, channel="log")

    def notify_settlement(
        self,
        owner: OwnerRecord,
        calculation: SettlementCalculation,
    ) -> DeliveryResult:
        logger.info(
            "settlement_notification_sent",
            extra={
                "owner_id": str(owner.owner_id),
                "period": calculation.period,
                "net_amount": calculation.net_amount,
            },
        )
        return DeliveryResult(success=True, channel="log")


class LoggingReportRenderer:
    def render(self, report: dict[str, Any]) -> ReportResult:
        logger.info(
            "report_rendered",
            extra={
                "report_type": report.get("type"),
                "owner_id": report.get("owner_id"),
                "period": report.get("period"),
            },
        )
        return ReportResult(success=True, location=None)
