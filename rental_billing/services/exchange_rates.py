"""
ExchangeRateResolver -- cached FX rates for ARS, USD and BRL.

Contract:
    ``get_rate(from, to, on_date)`` returns how many ``to`` units one
    ``from`` unit buys.  The cache (``exchange_rates``) is read first;
    on a miss the rate is fetched (USD/ARS and BRL/ARS from the BCRA,
    USD/BRL from the BCB) and cached with source ``API``.  Pairs quoted
    only the other way round (ARS -> USD, for example) resolve through the
    inverse rate, ``1 / rate``.
    ``convert_amount()`` converts and rounds to cents.
    ``sync_rates()`` refreshes the trailing month of every supported pair.

Invariants enforced:
    - One cached rate per (from, to, rate_date, source).
    - Identical pairs short-circuit at rate 1 without touching the cache.
    - Pair failures in ``sync_rates()`` are isolated.

Failure modes:
    - UnsupportedCurrencyError: a currency outside ARS/USD/BRL.
    - ExchangeRateNotFoundError: no cached rate and no source rate.
    - SourceFetchError: the upstream call itself failed (from the adapter).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.money import round_money
from rental_kernel.domain.periods import add_months
from rental_kernel.exceptions import ExchangeRateNotFoundError
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import (
    ConversionResult,
    Currency,
    RateSyncResult,
    SeriesObservation,
)
from rental_billing.models.market_data import ExchangeRateModel

logger = get_logger("billing.exchange_rates")

API_SOURCE = "API"

# Days searched back from the requested date on a cache miss; the
# central banks publish nothing on weekends and holidays.
_LOOKBACK_DAYS = 7

# Matches the scale of exchange_rates.rate
_RATE_QUANTUM = Decimal("1e-18")

Fetcher = Callable[[date, date], list[SeriesObservation]]


class ExchangeRateResolver:
    def __init__(
        self,
        session: Session,
        bcra_client,
        bcb_client,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        # (from, to) -> (source name, fetcher)
        self._sources: dict[tuple[str, str], tuple[str, Fetcher]] = {
            ("USD", "ARS"): (
                "BCRA",
                lambda start, end: bcra_client.fetch_fx("USD", "ARS", start, end),
            ),
            ("BRL", "ARS"): (
                "BCRA",
                lambda start, end: bcra_client.fetch_fx("BRL", "ARS", start, end),
            ),
            ("USD", "BRL"): ("BCB", bcb_client.fetch_usd_brl),
        }

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    def get_rate(self, from_currency: str, to_currency: str, on_date: date) -> Decimal:
        source_currency = Currency.parse(from_currency).value
        target_currency = Currency.parse(to_currency).value
        if source_currency == target_currency:
            return Decimal("1")

        rate = self._cached_rate(source_currency, target_currency, on_date)
        if rate is not None:
            return rate
        if (source_currency, target_currency) in self._sources:
            return self._fetch_rate(source_currency, target_currency, on_date)

        # Quoted the other way round (ARS -> USD, BRL -> USD, ARS -> BRL)
        inverse = self._cached_rate(target_currency, source_currency, on_date)
        if inverse is None and (target_currency, source_currency) in self._sources:
            try:
                inverse = self._fetch_rate(target_currency, source_currency, on_date)
            except ExchangeRateNotFoundError:
                inverse = None
        if not inverse:
            raise ExchangeRateNotFoundError(
                source_currency, target_currency, on_date.isoformat(),
            )
        rate = (Decimal("1") / inverse).quantize(_RATE_QUANTUM, rounding=ROUND_HALF_UP)
        logger.debug(
            "exchange_rate_inverted",
            extra={
                "from_currency": source_currency,
                "to_currency": target_currency,
                "inverse_rate": inverse,
                "rate": rate,
            },
        )
        return rate

    def _cached_rate(
        self, source_currency: str, target_currency: str, on_date: date,
    ) -> Decimal | None:
        cached = self._session.execute(
            select(ExchangeRateModel)
            .where(
                ExchangeRateModel.from_currency == source_currency,
                ExchangeRateModel.to_currency == target_currency,
                ExchangeRateModel.rate_date <= on_date,
            )
            .order_by(ExchangeRateModel.rate_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        return cached.to_dto().rate if cached is not None else None

    def _fetch_rate(self, source_currency: str, target_currency: str, on_date: date) -> Decimal:
        source_name, fetch = self._sources[(source_currency, target_currency)]
        logger.info(
            "exchange_rate_cache_miss",
            extra={
                "from_currency": source_currency,
                "to_currency": target_currency,
                "on_date": on_date,
                "source": source_name,
            },
        )
        observations = [
            o for o in fetch(on_date - timedelta(days=_LOOKBACK_DAYS), on_date)
            if o.observed_on <= on_date
        ]
        if not observations:
            raise ExchangeRateNotFoundError(
                source_currency, target_currency, on_date.isoformat(),
            )

        latest = max(observations, key=lambda o: o.observed_on)
        self.upsert_rate(
            source_currency, target_currency, latest.observed_on, latest.value, API_SOURCE,
        )
        return latest.value

    def convert_amount(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        on_date: date,
    ) -> ConversionResult:
        if from_currency.strip().upper() == to_currency.strip().upper():
            return ConversionResult(
                amount=amount,
                rate=Decimal("1"),
                original_amount=amount,
                from_currency=from_currency,
                to_currency=to_currency,
                rate_date=on_date,
            )

        rate = self.get_rate(from_currency, to_currency, on_date)
        return ConversionResult(
            amount=round_money(amount * rate),
            rate=rate,
            original_amount=amount,
            from_currency=from_currency,
            to_currency=to_currency,
            rate_date=on_date,
        )

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync_rates(self) -> RateSyncResult:
        """Refresh the trailing month for every supported pair."""
        today = self._clock.today()
        start = add_months(today, -1)
        processed = 0
        inserted = 0
        errors: list[str] = []

        for (source_currency, target_currency), (source_name, fetch) in self._sources.items():
            pair = f"{source_currency}/{target_currency}"
            savepoint = self._session.begin_nested()
            try:
                pair_processed = 0
                pair_inserted = 0
                for observation in fetch(start, today):
                    pair_processed += 1
                    if self.upsert_rate(
                        source_currency,
                        target_currency,
                        observation.observed_on,
                        observation.value,
                        source_name,
                    ):
                        pair_inserted += 1
                savepoint.commit()
                processed += pair_processed
                inserted += pair_inserted
            except Exception as exc:
                savepoint.rollback()
                message = f"{pair} sync failed: {exc}"
                errors.append(message)
                logger.error(
                    "exchange_rate_sync_failed",
                    extra={"pair": pair, "error": str(exc)},
                )

        logger.info(
            "exchange_rates_synced",
            extra={"processed": processed, "inserted": inserted, "errors": len(errors)},
        )
        return RateSyncResult(processed=processed, inserted=inserted, errors=tuple(errors))

    def upsert_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: Decimal,
        source: str,
    ) -> bool:
        """Insert or overwrite a cached rate.  Returns True if inserted."""
        existing = self._find(from_currency, to_currency, rate_date, source)
        if existing is not None:
            existing.rate = rate
            existing.fetched_at = self._clock.now()
            self._session.flush()
            return False

        savepoint = self._session.begin_nested()
        try:
            self._session.add(
                ExchangeRateModel(
                    from_currency=from_currency,
                    to_currency=to_currency,
                    rate=rate,
                    rate_date=rate_date,
                    source=source,
                    fetched_at=self._clock.now(),
                )
            )
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self._find(from_currency, to_currency, rate_date, source)
            if existing is None:
                raise
            existing.rate = rate
            existing.fetched_at = self._clock.now()
            self._session.flush()
            return False
        return True

    def _find(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        source: str,
    ) -> ExchangeRateModel | None:
        return self._session.execute(
            select(ExchangeRateModel).where(
                ExchangeRateModel.from_currency == from_currency,
                ExchangeRateModel.to_currency == to_currency,
                ExchangeRateModel.rate_date == rate_date,
                ExchangeRateModel.source == source,
            )
        ).scalar_one_or_none()
