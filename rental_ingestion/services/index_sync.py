"""
IndexSyncService -- pull the trailing year of each index series into the
``inflation_indices`` table.

Contract:
    ``sync_icl()``, ``sync_igpm()`` and ``sync_ipc()`` fetch, upsert and
    return a ``SyncResult``; they raise on a source or storage failure.
    ``sync_all()`` never raises for a single index: the failure is written
    into that index's ``SyncResult.error`` and the others still run.

Invariants enforced:
    - Each index is written inside its own savepoint, so a failed index
      leaves no partial rows behind.
    - Daily observations collapse onto their month; the last one fetched
      for a month wins.

Non-goals:
    - Does NOT call ``session.commit()``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import date

from sqlalchemy.orm import Session

from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.periods import add_months, month_start
from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import IndexType, SeriesObservation, SyncResult
from rental_billing.services.index_store import IndexStore
from rental_ingestion.adapters.bcb import BcbClient
from rental_ingestion.adapters.bcra import BcraClient
from rental_ingestion.adapters.datos_ar import DatosArClient

logger = get_logger("ingestion.index_sync")

SYNC_WINDOW_MONTHS = 12

Fetcher = Callable[[date, date], list[SeriesObservation]]


class IndexSyncService:
    def __init__(
        self,
        session: Session,
        bcra: BcraClient,
        bcb: BcbClient,
        datos_ar: DatosArClient,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._store = IndexStore(session, self._clock)
        self._sources: dict[IndexType, tuple[str, Fetcher]] = {
            IndexType.ICL: (bcra.source_name, bcra.fetch_icl),
            IndexType.IGPM: (bcb.source_name, bcb.fetch_igpm),
            IndexType.IPC: (datos_ar.source_name, datos_ar.fetch_ipc),
        }

    @property
    def index_types(self) -> tuple[IndexType, ...]:
        return tuple(self._sources)

    def sync_icl(self) -> SyncResult:
        return self.sync(IndexType.ICL)

    def sync_igpm(self) -> SyncResult:
        return self.sync(IndexType.IGPM)

    def sync_ipc(self) -> SyncResult:
        return self.sync(IndexType.IPC)

    def sync(self, index_type: IndexType) -> SyncResult:
        index_type = IndexType.parse(index_type) if isinstance(index_type, str) else index_type
        if index_type not in self._sources:
            raise ValueError(f"No source configured for index {index_type.value!r}")
        source_name, fetch = self._sources[index_type]

        today = self._clock.today()
        start = add_months(today, -SYNC_WINDOW_MONTHS)
        t0 = time.monotonic()
        logger.info(
            "index_sync_started",
            extra={"index_type": index_type.value, "start": start.isoformat()},
        )

        observations = fetch(start, today)

        inserted = 0
        savepoint = self._session.begin_nested()
        try:
            for observation in observations:
                if self._store.upsert(
                    index_type,
                    observation.observed_on,
                    observation.value,
                    source_name,
                ):
                    inserted += 1
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise

        latest = max((o.observed_on for o in observations), default=None)
        result = SyncResult(
            index_type=index_type,
            records_processed=len(observations),
            records_inserted=inserted,
            records_skipped=len(observations) - inserted,
            latest_period=month_start(latest) if latest is not None else None,
        )
        logger.info(
            "index_sync_completed",
            extra={
                "index_type": index_type.value,
                "processed": result.records_processed,
                "inserted": result.records_inserted,
                "skipped": result.records_skipped,
                "latest_period": result.latest_period,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return result

    def sync_all(self) -> list[SyncResult]:
        results = []
        for index_type in self._sources:
            try:
                results.append(self.sync(index_type))
            except Exception as exc:
                logger.error(
                    "index_sync_failed",
                    extra={"index_type": index_type.value, "error": str(exc)},
                )
                results.append(SyncResult(index_type=index_type, error=str(exc)))
        return results
