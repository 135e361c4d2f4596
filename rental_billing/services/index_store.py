"""
IndexStore -- persisted monthly index points (ICL, IGP-M, IPC, Casa Propia).

Contract:
    ``upsert()`` writes one point keyed on (index_type, first-of-month).
    ``latest()`` / ``latest_on_or_before()`` read typed ``IndexPoint`` values.

Invariants enforced:
    - ``period_date`` is always normalized to the first day of its month.
    - A re-sync of an existing key overwrites value and source and keeps
      the key; it never creates a second row.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.periods import month_start
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import IndexPoint, IndexType
from rental_billing.models.market_data import InflationIndexModel

logger = get_logger("billing.index_store")


class IndexStore:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def upsert(
        self,
        index_type: IndexType,
        period_date: date,
        value: Decimal,
        source: str,
        source_url: str | None = None,
        published_at: date | None = None,
    ) -> bool:
        """Insert or overwrite one point.  Returns True if a row was inserted."""
        index_type = IndexType(index_type)
        period = month_start(period_date)

        existing = self._find(index_type, period)
        if existing is not None:
            self._overwrite(existing, value, source, source_url, published_at)
            return False

        # Savepoint so a concurrent insert of the same key only costs a retry
        savepoint = self._session.begin_nested()
        try:
            self._session.add(
                InflationIndexModel(
                    index_type=index_type.value,
                    period_date=period,
                    value=value,
                    source=source,
                    source_url=source_url,
                    published_at=published_at,
                    fetched_at=self._clock.now(),
                )
            )
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug(
                "index_upsert_race_retry",
                extra={"index_type": index_type.value, "period_date": str(period)},
            )
            existing = self._find(index_type, period)
            if existing is None:
                raise
            self._overwrite(existing, value, source, source_url, published_at)
            return False
        return True

    def latest(self, index_type: IndexType) -> IndexPoint | None:
        model = self._session.execute(
            select(InflationIndexModel)
            .where(InflationIndexModel.index_type == IndexType(index_type).value)
            .order_by(InflationIndexModel.period_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def latest_on_or_before(self, index_type: IndexType, day: date) -> IndexPoint | None:
        """Most recent point whose period starts on or before ``day``."""
        model = self._session.execute(
            select(InflationIndexModel)
            .where(
                InflationIndexModel.index_type == IndexType(index_type).value,
                InflationIndexModel.period_date <= day,
            )
            .order_by(InflationIndexModel.period_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def history(self, index_type: IndexType, start: date, end: date) -> list[IndexPoint]:
        """Points with ``start <= period_date <= end``, oldest first."""
        models = self._session.execute(
            select(InflationIndexModel)
            .where(
                InflationIndexModel.index_type == IndexType(index_type).value,
                InflationIndexModel.period_date >= month_start(start),
                InflationIndexModel.period_date <= end,
            )
            .order_by(InflationIndexModel.period_date)
        ).scalars().all()
        return [m.to_dto() for m in models]

    # -------------------------------------------------------------------------

    def _find(self, index_type: IndexType, period: date) -> InflationIndexModel | None:
        return self._session.execute(
            select(InflationIndexModel).where(
                InflationIndexModel.index_type == index_type.value,
                InflationIndexModel.period_date == period,
            )
        ).scalar_one_or_none()

    def _overwrite(
        self,
        model: InflationIndexModel,
        value: Decimal,
        source: str,
        source_url: str | None,
        published_at: date | None,
    ) -> None:
        model.value = value
        model.source = source
        if source_url is not None:
            model.source_url = source_url
        if published_at is not None:
            model.published_at = published_at
        model.fetched_at = self._clock.now()
        self._session.flush()
