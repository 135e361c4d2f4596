"""
ORM models for the billing engine.

Importing this package registers every mapper on ``rental_kernel.db.Base``.
"""

from rental_billing.models.billing_job import BillingJobModel
from rental_billing.models.invoice import (
    InvoiceModel,
    InvoiceSequenceModel,
    PaymentModel,
)
from rental_billing.models.lease import LeaseModel
from rental_billing.models.market_data import ExchangeRateModel, InflationIndexModel
from rental_billing.models.party import CompanyModel, OwnerModel
from rental_billing.models.settlement import SettlementModel

__all__ = [
    "BillingJobModel",
    "CompanyModel",
    "ExchangeRateModel",
    "InflationIndexModel",
    "InvoiceModel",
    "InvoiceSequenceModel",
    "LeaseModel",
    "OwnerModel",
    "PaymentModel",
    "SettlementModel",
]
