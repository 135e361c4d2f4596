"""
rental_billing.domain.types -- Pure frozen dataclasses for the billing engine.

ZERO I/O.  Every record the engine reads from the store is mapped into one
of these types by the owning ORM model's ``to_dto()``; services never pass
ORM rows or raw dicts across component boundaries.

Invariants enforced:
    - All DTOs are frozen; collections are tuples.
    - Money and rates are ``Decimal``; calendar values are ``date``.
    - Status and type fields are str Enums; unknown values fail at the
      mapping boundary, not deep in a service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from rental_kernel.exceptions import UnsupportedCurrencyError


# =============================================================================
# Enums
# =============================================================================


class JobType(str, Enum):
    """Batch job kinds, one per CLI command."""

    BILLING = "billing"
    OVERDUE = "overdue"
    REMINDERS = "reminders"
    LATE_FEES = "late_fees"
    SYNC_INDICES = "sync_indices"
    REPORTS = "reports"
    EXCHANGE_RATES = "exchange_rates"
    PROCESS_SETTLEMENTS = "process_settlements"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"  # Created by start_job
    COMPLETED = "completed"  # No failed records
    FAILED = "failed"  # Run aborted
    PARTIAL_FAILURE = "partial_failure"  # Some records failed

    @property
    def is_terminal(self) -> bool:
        return self in (
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.PARTIAL_FAILURE,
        )


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Statuses that still expect a payment from the tenant
OPEN_INVOICE_STATUSES = (InvoiceStatus.ISSUED, InvoiceStatus.PARTIALLY_PAID)


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentFrequency(str, Enum):
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"
    WEEKLY = "weekly"

    @classmethod
    def parse(cls, raw: str | None) -> PaymentFrequency:
        """Unset frequencies bill monthly."""
        if not raw:
            return cls.MONTHLY
        return cls(raw.strip().lower())


class IndexType(str, Enum):
    """Published inflation / rent-adjustment index series."""

    ICL = "icl"  # Índice para Contratos de Locación (BCRA)
    IGPM = "igpm"  # Índice Geral de Preços do Mercado (FGV, via BCB)
    IPC = "ipc"  # Índice de Precios al Consumidor (INDEC, via datos.gob.ar)
    CASA_PROPIA = "casa_propia"

    @classmethod
    def parse(cls, raw: str) -> IndexType:
        value = raw.strip().lower()
        return cls(_INDEX_ALIASES.get(value, value))


_INDEX_ALIASES = {"igp_m": "igpm", "igp-m": "igpm"}


class AdjustmentType(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    ICL = "icl"
    IGPM = "igpm"
    IPC = "ipc"
    CASA_PROPIA = "casa_propia"

    @classmethod
    def parse(cls, raw: str | None) -> AdjustmentType:
        """Map stored values (including legacy aliases) to a member.

        Unset or blank means NONE.  ``igp_m`` and ``igpm`` both map to IGPM.
        """
        if raw is None or not raw.strip():
            return cls.NONE
        value = raw.strip().lower()
        return cls(_INDEX_ALIASES.get(value, value))

    @property
    def index_type(self) -> IndexType | None:
        if self in (AdjustmentType.NONE, AdjustmentType.FIXED):
            return None
        return IndexType(self.value)


class Currency(str, Enum):
    ARS = "ARS"
    USD = "USD"
    BRL = "BRL"

    @classmethod
    def parse(cls, raw: str) -> Currency:
        code = (raw or "").strip().upper()
        try:
            return cls(code)
        except ValueError:
            raise UnsupportedCurrencyError(
                raw, tuple(c.value for c in cls)
            ) from None


class WithholdingType(str, Enum):
    IIBB = "iibb"  # Ingresos Brutos (gross receipts)
    IVA = "iva"  # VAT
    GANANCIAS = "ganancias"  # Income tax


# =============================================================================
# Job ledger
# =============================================================================


@dataclass(frozen=True)
class JobCounts:
    """Counts reported by a run when it completes."""

    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    error_log: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class BillingJob:
    """Immutable snapshot of a billing_jobs row."""

    job_id: UUID
    job_type: JobType
    status: JobStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    records_skipped: int = 0
    error_log: tuple[dict[str, Any], ...] = ()
    error_message: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False


# =============================================================================
# Market data
# =============================================================================


@dataclass(frozen=True)
class IndexPoint:
    index_type: IndexType
    period_date: date  # Always the first of the month
    value: Decimal
    source: str
    source_url: str | None = None
    published_at: date | None = None


@dataclass(frozen=True)
class RatePoint:
    from_currency: str
    to_currency: str
    rate: Decimal
    rate_date: date
    source: str


@dataclass(frozen=True)
class SeriesObservation:
    """Raw (date, value) pair returned by an index/rate source adapter."""

    observed_on: date
    value: Decimal


@dataclass(frozen=True)
class SyncResult:
    """Outcome of syncing one index type."""

    index_type: IndexType
    records_processed: int = 0
    records_inserted: int = 0
    records_skipped: int = 0
    latest_period: date | None = None
    error: str | None = None


@dataclass(frozen=True)
class RateSyncResult:
    processed: int
    inserted: int
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversionResult:
    amount: Decimal
    rate: Decimal
    original_amount: Decimal
    from_currency: str
    to_currency: str
    rate_date: date


# =============================================================================
# Leases, owners, adjustments
# =============================================================================


@dataclass(frozen=True)
class LeaseRecord:
    """Lease fields the engine reads for billing and adjustment."""

    lease_id: UUID
    owner_id: UUID
    tenant_account_id: UUID | None
    company_id: UUID | None
    status: str
    rent_amount: Decimal
    currency: str
    payment_frequency: PaymentFrequency
    adjustment_type: AdjustmentType
    adjustment_rate: Decimal | None
    start_date: date
    end_date: date
    next_adjustment_date: date | None = None
    last_adjustment_date: date | None = None
    billing_day: int | None = None
    next_billing_date: date | None = None
    last_billing_date: date | None = None


@dataclass(frozen=True)
class OwnerRecord:
    owner_id: UUID
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    cuit: str | None = None
    commission_rate: Decimal | None = None
    iibb_exempt: bool = False
    iva_exempt: bool = False
    ganancias_exempt: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class AdjustmentResult:
    original_amount: Decimal
    adjusted_amount: Decimal
    adjustment_type: AdjustmentType
    adjustment_rate: Decimal  # Percent, e.g. Decimal("20")
    base_index_value: Decimal | None = None
    current_index_value: Decimal | None = None

    @property
    def applied_delta(self) -> Decimal:
        return self.adjusted_amount - self.original_amount


# =============================================================================
# Withholdings
# =============================================================================


@dataclass(frozen=True)
class WithholdingLine:
    withholding_type: WithholdingType
    rate: Decimal
    base: Decimal
    amount: Decimal
    description: str


@dataclass(frozen=True)
class WithholdingResult:
    iibb: Decimal = Decimal("0")
    iva: Decimal = Decimal("0")
    ganancias: Decimal = Decimal("0")
    iibb_jurisdiction: str | None = None
    breakdown: tuple[WithholdingLine, ...] = ()

    @property
    def total(self) -> Decimal:
        return self.iibb + self.iva + self.ganancias


@dataclass(frozen=True)
class ConfigValidation:
    valid: bool
    issues: tuple[str, ...] = ()


# =============================================================================
# Invoices
# =============================================================================


@dataclass(frozen=True)
class NewInvoice:
    """Input to InvoiceLedger.create()."""

    lease_id: UUID
    owner_id: UUID
    tenant_account_id: UUID | None
    period_start: date
    period_end: date
    subtotal: Decimal
    total: Decimal
    currency_code: str
    due_date: date
    original_amount: Decimal | None = None
    original_currency: str | None = None
    exchange_rate_used: Decimal | None = None
    exchange_rate_date: date | None = None
    withholding_iibb: Decimal = Decimal("0")
    withholding_iva: Decimal = Decimal("0")
    withholding_ganancias: Decimal = Decimal("0")
    adjustment_applied: Decimal = Decimal("0")
    adjustment_index_type: str | None = None
    adjustment_index_value: Decimal | None = None


@dataclass(frozen=True)
class InvoiceRecord:
    invoice_id: UUID
    lease_id: UUID
    owner_id: UUID
    tenant_account_id: UUID | None
    invoice_number: str
    period_start: date
    period_end: date
    subtotal: Decimal
    late_fee: Decimal
    adjustments: Decimal
    total: Decimal
    currency_code: str
    amount_paid: Decimal
    due_date: date
    status: InvoiceStatus
    issued_at: datetime | None = None
    paid_at: date | None = None
    original_amount: Decimal | None = None
    original_currency: str | None = None
    exchange_rate_used: Decimal | None = None
    exchange_rate_date: date | None = None
    withholding_iibb: Decimal = Decimal("0")
    withholding_iva: Decimal = Decimal("0")
    withholding_ganancias: Decimal = Decimal("0")
    withholdings_total: Decimal = Decimal("0")
    adjustment_applied: Decimal = Decimal("0")
    adjustment_index_type: str | None = None
    adjustment_index_value: Decimal | None = None
    cae: str | None = None


@dataclass(frozen=True)
class ReminderContact:
    tenant_name: str | None
    tenant_phone: str | None
    tenant_email: str | None


# =============================================================================
# Run results
# =============================================================================


@dataclass(frozen=True)
class LeaseFailure:
    lease_id: UUID
    error: str


@dataclass(frozen=True)
class BillingRunResult:
    processed_leases: int
    invoices_created: int
    invoices_failed: int
    total_amount: Decimal
    errors: tuple[LeaseFailure, ...] = ()


@dataclass(frozen=True)
class OverdueRunResult:
    processed: int
    marked_overdue: int


@dataclass(frozen=True)
class LateFeesRunResult:
    processed: int
    fees_applied: int
    total_fees: Decimal


@dataclass(frozen=True)
class ReminderRunResult:
    total: int
    sent: int
    failed: int


# =============================================================================
# Settlements
# =============================================================================


@dataclass(frozen=True)
class SettlementInvoice:
    invoice_id: UUID
    invoice_number: str
    amount: Decimal
    paid_at: date
    due_date: date
    tenant: str | None = None
    property_label: str | None = None

    @property
    def scheduling_date(self) -> date:
        """Paid before due: wait for due.  Paid on/after due: settle same day."""
        if self.paid_at < self.due_date:
            return self.due_date
        return self.paid_at


@dataclass(frozen=True)
class Deduction:
    description: str
    amount: Decimal


@dataclass(frozen=True)
class SettlementCalculation:
    owner_id: UUID
    owner_name: str
    period: str
    invoices: tuple[SettlementInvoice, ...]
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    withholdings: tuple[Deduction, ...]
    net_amount: Decimal
    scheduled_date: date
    currency: str = "ARS"

    @property
    def withholdings_amount(self) -> Decimal:
        return sum((w.amount for w in self.withholdings), Decimal("0"))

    @property
    def total_deductions(self) -> Decimal:
        return self.commission_amount + self.withholdings_amount


@dataclass(frozen=True)
class SettlementRecord:
    settlement_id: UUID
    owner_id: UUID
    period: str
    gross_amount: Decimal
    commission_amount: Decimal
    withholdings_amount: Decimal
    net_amount: Decimal
    currency: str
    status: SettlementStatus
    scheduled_date: date
    processed_at: datetime | None = None
    transfer_reference: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    settlement_id: UUID | None = None
    transfer_reference: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PendingSettlement:
    owner_id: UUID
    period: str
