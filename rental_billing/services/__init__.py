"""
rental_billing.services -- Stateful components of the billing engine.

Every service receives its Session (or Database) and Clock through the
constructor; none of them commits.
"""

from rental_billing.services.adjustment import AdjustmentCalculator
from rental_billing.services.billing import BillingOrchestrator
from rental_billing.services.exchange_rates import ExchangeRateResolver
from rental_billing.services.index_store import IndexStore
from rental_billing.services.invoice_ledger import InvoiceLedger
from rental_billing.services.job_ledger import JobHandle, JobLedger
from rental_billing.services.job_metrics import JobMetrics
from rental_billing.services.reports import ReportService
from rental_billing.services.settlements import SettlementEngine
from rental_billing.services.withholdings import WithholdingCalculator

__all__ = [
    "AdjustmentCalculator",
    "BillingOrchestrator",
    "ExchangeRateResolver",
    "IndexStore",
    "InvoiceLedger",
    "JobHandle",
    "JobLedger",
    "JobMetrics",
    "ReportService",
    "SettlementEngine",
    "WithholdingCalculator",
]
