"""
Pytest fixtures for the rental billing test suite.

Provides:
- Structured logging configured once per session, plus a log capture helper
- An in-memory SQLite ``Database`` with every table created
- A session bound to that database and a DeterministicClock
- Small factories that insert owners, companies, leases, invoices,
  payments and index points with sensible defaults
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from uuid import UUID

import pytest

from rental_kernel.db.engine import Database
from rental_kernel.domain.clock import DeterministicClock
from rental_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

from rental_billing.domain.types import InvoiceStatus
from rental_billing.models import (
    CompanyModel,
    ExchangeRateModel,
    InflationIndexModel,
    InvoiceModel,
    LeaseModel,
    OwnerModel,
    PaymentModel,
)

TODAY = date(2024, 3, 1)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture rental_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.run_billing(...)
            logs = captured_logs()
            assert any(r["message"] == "billing_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("rental_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def database():
    """Fresh in-memory database per test."""
    db = Database.from_url("sqlite://")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    session = database.session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def clock():
    return DeterministicClock.on(TODAY)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_owner(session):
    def _make(**overrides) -> OwnerModel:
        fields = {
            "first_name": "Ana",
            "last_name": "García",
            "email": "ana@example.com",
            "phone": "+5491100000000",
            "cuit": "27-12345678-9",
            "commission_rate": None,
        }
        fields.update(overrides)
        owner = OwnerModel(**fields)
        session.add(owner)
        session.flush()
        return owner

    return _make


@pytest.fixture
def make_company(session):
    def _make(withholding_settings=None, **overrides) -> CompanyModel:
        fields = {
            "name": "Inmobiliaria Sur",
            "base_currency": "ARS",
            "withholding_settings": withholding_settings,
        }
        fields.update(overrides)
        company = CompanyModel(**fields)
        session.add(company)
        session.flush()
        return company

    return _make


@pytest.fixture
def make_lease(session):
    def _make(owner_id: UUID, **overrides) -> LeaseModel:
        fields = {
            "owner_id": owner_id,
            "status": "active",
            "start_date": date(2023, 1, 1),
            "end_date": date(2026, 12, 31),
            "rent_amount": Decimal("100000"),
            "currency": "ARS",
            "payment_frequency": "monthly",
            "tenant_name": "Juan Pérez",
            "tenant_phone": "+5491155550000",
            "tenant_email": "juan@example.com",
            "property_label": "Av. Corrientes 1234, 5B",
        }
        fields.update(overrides)
        lease = LeaseModel(**fields)
        session.add(lease)
        session.flush()
        return lease

    return _make


@pytest.fixture
def make_invoice(session):
    counter = {"n": 0}

    def _make(lease: LeaseModel, **overrides) -> InvoiceModel:
        counter["n"] += 1
        subtotal = overrides.pop("subtotal", Decimal("100000"))
        period_start = overrides.pop("period_start", date(2024, 3, 1))
        fields = {
            "lease_id": lease.id,
            "owner_id": lease.owner_id,
            "invoice_number": f"TEST-{counter['n']:06d}",
            "period_start": period_start,
            "period_end": period_start.replace(day=28),
            "subtotal": subtotal,
            "total": subtotal,
            "currency_code": "ARS",
            "due_date": period_start + timedelta(days=10),
            "status": InvoiceStatus.ISSUED.value,
            "issued_at": datetime(
                period_start.year, period_start.month, period_start.day,
                tzinfo=timezone.utc,
            ),
        }
        fields.update(overrides)
        invoice = InvoiceModel(**fields)
        session.add(invoice)
        session.flush()
        return invoice

    return _make


@pytest.fixture
def make_payment(session):
    def _make(invoice: InvoiceModel, payment_date: date, **overrides) -> PaymentModel:
        fields = {
            "invoice_id": invoice.id,
            "amount": invoice.total,
            "payment_date": payment_date,
            "status": "completed",
        }
        fields.update(overrides)
        payment = PaymentModel(**fields)
        session.add(payment)
        session.flush()
        return payment

    return _make


@pytest.fixture
def make_index_point(session):
    def _make(index_type: str, period_date: date, value: str, source: str = "BCRA"):
        point = InflationIndexModel(
            index_type=index_type,
            period_date=period_date,
            value=Decimal(value),
            source=source,
        )
        session.add(point)
        session.flush()
        return point

    return _make


@pytest.fixture
def make_rate(session):
    def _make(from_currency: str, to_currency: str, rate_date: date, rate: str,
              source: str = "BCRA"):
        model = ExchangeRateModel(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=Decimal(rate),
            rate_date=rate_date,
            source=source,
        )
        session.add(model)
        session.flush()
        return model

    return _make
