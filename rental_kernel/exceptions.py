"""
Typed exception hierarchy for the rental billing engine.

Every error has a typed class (catch by type, not message), a machine
readable ``code`` class attribute, and structured attributes that the
JSON log formatter exports as ``exc_<name>`` fields.

    RentalBillingError (base)
    |
    +-- InvalidRecordError
    |
    +-- JobError
    |   +-- JobAlreadyRunningError
    |   +-- JobNotFoundError
    |   +-- JobAlreadyFinishedError
    |
    +-- CurrencyError
    |   +-- UnsupportedCurrencyError
    |   +-- ExchangeRateNotFoundError
    |
    +-- SourceError
    |   +-- SourceFetchError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- LeaseBillingError
    |
    +-- SettlementError
    |   +-- OwnerNotFoundError
    |   +-- InvalidPeriodError
    |
    +-- ConfigError
        +-- InvalidWithholdingConfigError
        +-- ConfigurationError

Category    | Code                         | When Raised
------------|------------------------------|-----------------------------------
Record      | INVALID_RECORD               | Row value fails typed parsing
Job         | JOB_ALREADY_RUNNING          | Another run of the type is active
            | JOB_NOT_FOUND                | Job id doesn't exist
            | JOB_ALREADY_FINISHED         | Second completion of a job
Currency    | UNSUPPORTED_CURRENCY         | Pair outside ARS/USD/BRL
            | EXCHANGE_RATE_NOT_FOUND      | No cached or fetched rate
Source      | SOURCE_FETCH_FAILED          | HTTP / parse failure upstream
Invoice     | INVOICE_NOT_FOUND            | Invoice id doesn't exist
            | LEASE_BILLING_FAILED         | Lease data can't be billed
Settlement  | OWNER_NOT_FOUND              | Owner id doesn't exist
            | INVALID_PERIOD               | Period is not YYYY-MM
Config      | INVALID_WITHHOLDING_CONFIG   | Withholding settings unparseable
            | CONFIGURATION_ERROR          | Engine config invalid
"""

from __future__ import annotations

from typing import Any


class RentalBillingError(Exception):
    """Base exception for all engine errors."""

    code: str = "RENTAL_BILLING_ERROR"


class InvalidRecordError(RentalBillingError):
    """A persisted row could not be mapped into its typed record."""

    code: str = "INVALID_RECORD"

    def __init__(self, entity: str, field: str, value: Any, reason: str):
        self.entity = entity
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {entity}.{field} value {value!r}: {reason}")


# Job ledger


class JobError(RentalBillingError):
    """Base exception for job ledger errors."""

    code: str = "JOB_ERROR"


class JobAlreadyRunningError(JobError):
    """A job of the same type is already running."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_type: str, running_job_id: str):
        self.job_type = job_type
        self.running_job_id = running_job_id
        super().__init__(
            f"Job type {job_type} already has a running job: {running_job_id}"
        )


class JobNotFoundError(JobError):
    """Job id does not exist."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Billing job not found: {job_id}")


class JobAlreadyFinishedError(JobError):
    """Job has already reached a terminal status."""

    code: str = "JOB_ALREADY_FINISHED"

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Billing job {job_id} is already {status}")


# Currency


class CurrencyError(RentalBillingError):
    """Base exception for currency errors."""

    code: str = "CURRENCY_ERROR"


class UnsupportedCurrencyError(CurrencyError):
    """Currency outside the supported set."""

    code: str = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: str, supported: tuple[str, ...]):
        self.currency = currency
        self.supported = supported
        super().__init__(
            f"Unsupported currency {currency!r}; expected one of {', '.join(supported)}"
        )


class ExchangeRateNotFoundError(CurrencyError):
    """No exchange rate found for the currency pair."""

    code: str = "EXCHANGE_RATE_NOT_FOUND"

    def __init__(self, from_currency: str, to_currency: str, as_of: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.as_of = as_of
        super().__init__(
            f"No exchange rate available for {from_currency}/{to_currency} on {as_of}"
        )


# External sources


class SourceError(RentalBillingError):
    """Base exception for external data source errors."""

    code: str = "SOURCE_ERROR"


class SourceFetchError(SourceError):
    """Fetching or parsing an external series failed."""

    code: str = "SOURCE_FETCH_FAILED"

    def __init__(
        self,
        source: str,
        endpoint: str,
        reason: str,
        status_code: int | None = None,
    ):
        self.source = source
        self.endpoint = endpoint
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{source} request to {endpoint} failed: {reason}")


# Invoices


class InvoiceError(RentalBillingError):
    """Base exception for invoice ledger errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice id does not exist."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class LeaseBillingError(InvoiceError):
    """Lease data is insufficient to produce an invoice."""

    code: str = "LEASE_BILLING_FAILED"

    def __init__(self, lease_id: str, reason: str):
        self.lease_id = lease_id
        self.reason = reason
        super().__init__(f"Lease {lease_id} cannot be billed: {reason}")


# Settlements


class SettlementError(RentalBillingError):
    """Base exception for settlement errors."""

    code: str = "SETTLEMENT_ERROR"


class OwnerNotFoundError(SettlementError):
    """Owner id does not exist."""

    code: str = "OWNER_NOT_FOUND"

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        super().__init__(f"Owner not found: {owner_id}")


class InvalidPeriodError(SettlementError):
    """Period string is not a valid YYYY-MM month."""

    code: str = "INVALID_PERIOD"

    def __init__(self, period: str):
        self.period = period
        super().__init__(f"Invalid period {period!r}; expected YYYY-MM")


# Configuration


class ConfigError(RentalBillingError):
    """Base exception for configuration errors."""

    code: str = "CONFIG_ERROR"


class InvalidWithholdingConfigError(ConfigError):
    """Stored withholding settings cannot be migrated or parsed."""

    code: str = "INVALID_WITHHOLDING_CONFIG"

    def __init__(self, company_id: str | None, reason: str):
        self.company_id = company_id
        self.reason = reason
        super().__init__(
            f"Invalid withholding settings for company {company_id}: {reason}"
        )


class ConfigurationError(ConfigError):
    """Engine configuration value is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}")
