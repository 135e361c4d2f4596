"""
Tests for ExchangeRateResolver.

Covers:
- identical pairs short-circuit at rate 1
- cache hit, cache miss with fetch-and-store, and not-found
- conversion rounds to cents
- sync_rates isolates a failing pair
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from rental_kernel.exceptions import (
    ExchangeRateNotFoundError,
    SourceFetchError,
    UnsupportedCurrencyError,
)

from rental_billing.domain.types import SeriesObservation
from rental_billing.models.market_data import ExchangeRateModel
from rental_billing.services.exchange_rates import API_SOURCE, ExchangeRateResolver


class FakeBcra:
    def __init__(self, observations=None, error=None):
        self.observations = observations or {}
        self.error = error
        self.calls = []

    def fetch_fx(self, from_currency, to_currency, start, end):
        self.calls.append((from_currency, to_currency, start, end))
        if self.error is not None:
            raise self.error
        return list(self.observations.get((from_currency, to_currency), []))


class FakeBcb:
    def __init__(self, observations=None, error=None):
        self.observations = observations or []
        self.error = error
        self.calls = []

    def fetch_usd_brl(self, start, end):
        self.calls.append((start, end))
        if self.error is not None:
            raise self.error
        return list(self.observations)


def obs(day: date, value: str) -> SeriesObservation:
    return SeriesObservation(observed_on=day, value=Decimal(value))


class TestGetRate:
    def test_same_currency_is_one(self, session, clock):
        bcra = FakeBcra()
        resolver = ExchangeRateResolver(session, bcra, FakeBcb(), clock)
        assert resolver.get_rate("ars", "ARS", date(2024, 3, 1)) == Decimal("1")
        assert bcra.calls == []

    def test_unsupported_currency(self, session, clock):
        resolver = ExchangeRateResolver(session, FakeBcra(), FakeBcb(), clock)
        with pytest.raises(UnsupportedCurrencyError):
            resolver.get_rate("EUR", "ARS", date(2024, 3, 1))

    def test_cache_hit_uses_latest_on_or_before(self, session, clock, make_rate):
        make_rate("USD", "ARS", date(2024, 2, 27), "830.5")
        make_rate("USD", "ARS", date(2024, 2, 29), "835.25")
        make_rate("USD", "ARS", date(2024, 3, 5), "900")
        bcra = FakeBcra()
        resolver = ExchangeRateResolver(session, bcra, FakeBcb(), clock)

        assert resolver.get_rate("USD", "ARS", date(2024, 3, 1)) == Decimal("835.25")
        assert bcra.calls == []

    def test_cache_miss_fetches_and_stores(self, session, clock):
        day = date(2024, 3, 1)
        bcra = FakeBcra({("USD", "ARS"): [
            obs(day - timedelta(days=2), "830"),
            obs(day - timedelta(days=1), "832.5"),
        ]})
        resolver = ExchangeRateResolver(session, bcra, FakeBcb(), clock)

        rate = resolver.get_rate("USD", "ARS", day)

        assert rate == Decimal("832.5")
        assert bcra.calls == [("USD", "ARS", day - timedelta(days=7), day)]
        stored = session.execute(select(ExchangeRateModel)).scalars().all()
        assert len(stored) == 1
        assert stored[0].source == API_SOURCE
        assert stored[0].rate_date == day - timedelta(days=1)

    def test_usd_brl_comes_from_bcb(self, session, clock):
        bcb = FakeBcb([obs(date(2024, 2, 29), "4.75")])
        resolver = ExchangeRateResolver(session, FakeBcra(), bcb, clock)
        assert resolver.get_rate("USD", "BRL", date(2024, 3, 1)) == Decimal("4.75")
        assert len(bcb.calls) == 1

    def test_no_rate_anywhere(self, session, clock):
        resolver = ExchangeRateResolver(session, FakeBcra(), FakeBcb(), clock)
        with pytest.raises(ExchangeRateNotFoundError):
            resolver.get_rate("BRL", "ARS", date(2024, 3, 1))

    def test_inverse_pair_without_data_is_not_found(self, session, clock):
        bcra = FakeBcra()
        resolver = ExchangeRateResolver(session, bcra, FakeBcb(), clock)
        with pytest.raises(ExchangeRateNotFoundError) as excinfo:
            resolver.get_rate("ARS", "USD", date(2024, 3, 1))
        assert "ARS/USD" in str(excinfo.value)
        assert [call[:2] for call in bcra.calls] == [("USD", "ARS")]

    def test_inverse_of_cached_rate(self, session, clock, make_rate):
        make_rate("USD", "ARS", date(2024, 3, 1), "1000")
        bcra = FakeBcra()
        resolver = ExchangeRateResolver(session, bcra, FakeBcb(), clock)

        assert resolver.get_rate("ARS", "USD", date(2024, 3, 1)) == Decimal("0.001")
        assert bcra.calls == []

    def test_inverse_fetched_from_source(self, session, clock):
        bcb = FakeBcb([obs(date(2024, 2, 29), "5")])
        resolver = ExchangeRateResolver(session, FakeBcra(), bcb, clock)

        assert resolver.get_rate("BRL", "USD", date(2024, 3, 1)) == Decimal("0.2")
        stored = session.execute(select(ExchangeRateModel)).scalars().one()
        assert (stored.from_currency, stored.to_currency) == ("USD", "BRL")


class TestConvertAmount:
    def test_rounds_to_cents(self, session, clock, make_rate):
        make_rate("USD", "ARS", date(2024, 3, 1), "833.25")
        resolver = ExchangeRateResolver(session, FakeBcra(), FakeBcb(), clock)

        result = resolver.convert_amount(Decimal("10.01"), "USD", "ARS", date(2024, 3, 1))

        assert result.amount == Decimal("8340.83")
        assert result.rate == Decimal("833.25")
        assert result.original_amount == Decimal("10.01")

    def test_converts_into_a_quoted_currency(self, session, clock, make_rate):
        make_rate("USD", "ARS", date(2024, 3, 1), "1000")
        resolver = ExchangeRateResolver(session, FakeBcra(), FakeBcb(), clock)

        result = resolver.convert_amount(Decimal("500000"), "ARS", "USD", date(2024, 3, 1))

        assert result.amount == Decimal("500.00")
        assert result.rate == Decimal("0.001")

    def test_same_currency_is_identity(self, session, clock):
        resolver = ExchangeRateResolver(session, FakeBcra(), FakeBcb(), clock)
        result = resolver.convert_amount(Decimal("1234.56"), "ARS", "ars", date(2024, 3, 1))
        assert result.amount == Decimal("1234.56")
        assert result.rate == Decimal("1")


class TestSyncRates:
    def test_failing_pair_does_not_block_others(self, session, clock, captured_logs):
        bcra = FakeBcra(error=SourceFetchError("BCRA", "/x", "HTTP 503", status_code=503))
        bcb = FakeBcb([obs(date(2024, 2, 28), "4.5"), obs(date(2024, 2, 29), "4.75")])
        resolver = ExchangeRateResolver(session, bcra, bcb, clock)

        result = resolver.sync_rates()

        assert result.processed == 2
        assert result.inserted == 2
        assert len(result.errors) == 2
        assert result.errors[0].startswith("USD/ARS sync failed")
        assert bcb.calls == [(date(2024, 2, 1), date(2024, 3, 1))]
        failures = [r for r in captured_logs() if r["message"] == "exchange_rate_sync_failed"]
        assert {f["pair"] for f in failures} == {"USD/ARS", "BRL/ARS"}

    def test_resync_updates_instead_of_duplicating(self, session, clock):
        bcb = FakeBcb([obs(date(2024, 2, 29), "4.75")])
        resolver = ExchangeRateResolver(session, FakeBcra(), bcb, clock)
        resolver.sync_rates()

        bcb.observations = [obs(date(2024, 2, 29), "5.25")]
        result = resolver.sync_rates()

        assert result.inserted == 0
        rows = session.execute(
            select(ExchangeRateModel).where(ExchangeRateModel.to_currency == "BRL")
        ).scalars().all()
        assert len(rows) == 1
        assert rows[0].rate == Decimal("5.25")
