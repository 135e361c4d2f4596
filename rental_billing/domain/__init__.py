"""
rental_billing.domain -- Pure types and value objects for the billing engine.

ZERO I/O.  All types are frozen dataclasses.
"""

from rental_billing.domain.types import (
    AdjustmentResult,
    AdjustmentType,
    BillingJob,
    BillingRunResult,
    ConversionResult,
    Currency,
    IndexPoint,
    IndexType,
    InvoiceRecord,
    InvoiceStatus,
    JobCounts,
    JobStatus,
    JobType,
    LeaseRecord,
    NewInvoice,
    OwnerRecord,
    PaymentFrequency,
    SettlementCalculation,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
    SyncResult,
    WithholdingResult,
)
from rental_billing.domain.withholding_config import WithholdingConfig

__all__ = [
    "AdjustmentResult",
    "AdjustmentType",
    "BillingJob",
    "BillingRunResult",
    "ConversionResult",
    "Currency",
    "IndexPoint",
    "IndexType",
    "InvoiceRecord",
    "InvoiceStatus",
    "JobCounts",
    "JobStatus",
    "JobType",
    "LeaseRecord",
    "NewInvoice",
    "OwnerRecord",
    "PaymentFrequency",
    "SettlementCalculation",
    "SettlementRecord",
    "SettlementResult",
    "SettlementStatus",
    "SyncResult",
    "WithholdingConfig",
    "WithholdingResult",
]
