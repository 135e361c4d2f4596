"""
JobLedger -- audit trail and run guard for batch jobs.

Contract:
    Every batch run is wrapped by ``JobLedger.run()``, which records a
    ``running`` row on entry and moves it to exactly one terminal status
    on exit.  ``start_job()`` / ``complete_job()`` / ``fail_job()`` are the
    underlying primitives.

Architecture: rental_billing/services.  Owns its own short transactions
    through the injected ``Database`` so that a failed run's rollback never
    erases the row describing that failure.

Invariants enforced:
    - At most one ``running`` job per job type.  ``start_job()`` locks the
      running rows of the type (SELECT ... FOR UPDATE) and inserts in the
      same transaction.
    - A terminal row is never modified again (JobAlreadyFinishedError).
    - ``run()`` finalizes exactly once: completed / partial_failure on a
      clean exit, failed on any exception (which is re-raised).
    - With ``metrics`` set, every finalized run is reported once to
      ``JobMetrics`` after its row is terminal.
    - All timestamps from the injected Clock.

Failure modes:
    - JobAlreadyRunningError: another run of the type is active.
    - JobNotFoundError: unknown job id.
    - JobAlreadyFinishedError: second completion of the same job.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_kernel.db.engine import Database
from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.exceptions import (
    JobAlreadyFinishedError,
    JobAlreadyRunningError,
    JobNotFoundError,
)
from rental_kernel.logging_config import LogContext, get_logger

from rental_billing.domain.types import BillingJob, JobCounts, JobStatus, JobType
from rental_billing.models.billing_job import BillingJobModel
from rental_billing.services.job_metrics import JobMetrics

logger = get_logger("billing.job_ledger")

ABANDONED_MESSAGE = "abandoned"


class JobHandle:
    """Mutable counters for one in-flight run.

    Services report into the handle; ``JobLedger.run()`` turns it into a
    ``JobCounts`` when the block exits.
    """

    def __init__(self, job_id: UUID, job_type: JobType, dry_run: bool):
        self.job_id = job_id
        self.job_type = job_type
        self.dry_run = dry_run
        self.records_total = 0
        self.records_processed = 0
        self.records_failed = 0
        self.records_skipped = 0
        self.error_log: list[dict[str, Any]] = []
        self.finished = False

    def record(
        self,
        *,
        total: int | None = None,
        processed: int = 0,
        failed: int = 0,
        skipped: int = 0,
    ) -> None:
        if total is not None:
            self.records_total = total
        self.records_processed += processed
        self.records_failed += failed
        self.records_skipped += skipped

    def add_error(self, record_id: Any, error: str, **details: Any) -> None:
        entry: dict[str, Any] = {"record_id": str(record_id), "error": error}
        entry.update({k: str(v) for k, v in details.items()})
        self.error_log.append(entry)

    def counts(self) -> JobCounts:
        return JobCounts(
            records_total=self.records_total,
            records_processed=self.records_processed,
            records_failed=self.records_failed,
            records_skipped=self.records_skipped,
            error_log=tuple(self.error_log),
        )


class JobLedger:
    """Job lifecycle persistence with a one-running-job-per-type guard."""

    def __init__(
        self,
        database: Database,
        clock: Clock | None = None,
        metrics: JobMetrics | None = None,
    ):
        self._db = database
        self._clock = clock or SystemClock()
        self._metrics = metrics

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_job(
        self,
        job_type: JobType,
        parameters: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> UUID:
        """Insert a ``running`` job and return its id.

        Raises:
            JobAlreadyRunningError: If a job of the same type is running.
        """
        job_type = JobType(job_type)
        with self._db.session_scope() as session:
            running = session.execute(
                select(BillingJobModel)
                .where(
                    BillingJobModel.job_type == job_type.value,
                    BillingJobModel.status == JobStatus.RUNNING.value,
                )
                .with_for_update()
            ).scalars().first()

            if running is not None:
                logger.warning(
                    "job_start_rejected",
                    extra={
                        "job_type": job_type.value,
                        "running_job_id": str(running.id),
                    },
                )
                raise JobAlreadyRunningError(job_type.value, str(running.id))

            model = BillingJobModel(
                job_type=job_type.value,
                status=JobStatus.RUNNING.value,
                started_at=self._clock.now(),
                parameters=_jsonable(parameters or {}),
                dry_run=dry_run,
            )
            session.add(model)
            session.flush()
            job_id = model.id

        logger.info(
            "job_started",
            extra={
                "job_id": str(job_id),
                "job_type": job_type.value,
                "dry_run": dry_run,
            },
        )
        return job_id

    def complete_job(self, job_id: UUID, counts: JobCounts) -> BillingJob:
        """Finish a job: ``partial_failure`` if any record failed, else ``completed``."""
        status = (
            JobStatus.PARTIAL_FAILURE if counts.records_failed > 0
            else JobStatus.COMPLETED
        )
        with self._db.session_scope() as session:
            model = self._lock_open_job(session, job_id)
            self._finish(model, status)
            model.records_total = counts.records_total
            model.records_processed = counts.records_processed
            model.records_failed = counts.records_failed
            model.records_skipped = counts.records_skipped
            model.error_log = list(counts.error_log) or None
            session.flush()
            dto = model.to_dto()

        logger.info(
            "job_completed",
            extra={
                "job_id": str(job_id),
                "status": status.value,
                "records_total": counts.records_total,
                "records_processed": counts.records_processed,
                "records_failed": counts.records_failed,
                "records_skipped": counts.records_skipped,
                "duration_ms": dto.duration_ms,
            },
        )
        return dto

    def fail_job(
        self,
        job_id: UUID,
        message: str,
        error_log: list[dict[str, Any]] | tuple[dict[str, Any], ...] = (),
    ) -> BillingJob:
        with self._db.session_scope() as session:
            model = self._lock_open_job(session, job_id)
            self._finish(model, JobStatus.FAILED)
            model.error_message = message
            model.error_log = list(error_log) or None
            session.flush()
            dto = model.to_dto()

        logger.error(
            "job_failed",
            extra={
                "job_id": str(job_id),
                "error_message": message,
                "duration_ms": dto.duration_ms,
            },
        )
        return dto

    @contextmanager
    def run(
        self,
        job_type: JobType,
        parameters: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> Iterator[JobHandle]:
        """Scope a run: start on entry, complete or fail exactly once on exit.

        Usage:
            with ledger.run(JobType.BILLING, {"date": "2024-03-01"}) as job:
                result = orchestrator.run_billing(...)
                job.record(total=..., processed=..., failed=...)
        """
        job_type = JobType(job_type)
        job_id = self.start_job(job_type, parameters, dry_run)
        handle = JobHandle(job_id, job_type, dry_run)
        t0 = time.monotonic()

        with LogContext.bind(job_id=job_id, job_type=job_type.value):
            try:
                yield handle
            except BaseException as exc:
                if not handle.finished:
                    handle.finished = True
                    self.fail_job(
                        job_id, str(exc) or type(exc).__name__, handle.error_log,
                    )
                    self._record_metrics(job_type, JobStatus.FAILED, t0, handle.counts())
                raise
            else:
                if not handle.finished:
                    handle.finished = True
                    job = self.complete_job(job_id, handle.counts())
                    self._record_metrics(job_type, job.status, t0, handle.counts())

    # -------------------------------------------------------------------------
    # Queries / reconciliation
    # -------------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> BillingJob:
        with self._db.session_scope() as session:
            model = session.get(BillingJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))
            return model.to_dto()

    def reconcile_stale(self, job_type: JobType, older_than: timedelta) -> int:
        """Mark ``running`` jobs started before ``now - older_than`` as failed.

        Manual recovery path for runs whose process died without
        finalizing.  Returns the number of jobs marked.
        """
        cutoff = self._clock.now() - older_than
        marked = 0
        with self._db.session_scope() as session:
            rows = session.execute(
                select(BillingJobModel)
                .where(
                    BillingJobModel.job_type == JobType(job_type).value,
                    BillingJobModel.status == JobStatus.RUNNING.value,
                )
                .with_for_update()
            ).scalars().all()
            for model in rows:
                started = _as_utc(model.started_at)
                if started is not None and started >= cutoff:
                    continue
                self._finish(model, JobStatus.FAILED)
                model.error_message = ABANDONED_MESSAGE
                marked += 1
            session.flush()

        if marked:
            logger.warning(
                "stale_jobs_reconciled",
                extra={"job_type": JobType(job_type).value, "count": marked},
            )
        return marked

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _record_metrics(
        self, job_type: JobType, status: JobStatus, t0: float, counts: JobCounts,
    ) -> None:
        if self._metrics is None:
            return
        self._metrics.record_job_run(
            job_type.value, status, time.monotonic() - t0, counts,
        )

    def _lock_open_job(self, session: Session, job_id: UUID) -> BillingJobModel:
        model = session.execute(
            select(BillingJobModel)
            .where(BillingJobModel.id == job_id)
            .with_for_update()
        ).scalar_one_or_none()
        if model is None:
            raise JobNotFoundError(str(job_id))
        if JobStatus(model.status).is_terminal:
            raise JobAlreadyFinishedError(str(job_id), model.status)
        return model

    def _finish(self, model: BillingJobModel, status: JobStatus) -> None:
        now = self._clock.now()
        model.status = status.value
        model.completed_at = now
        started = _as_utc(model.started_at)
        if started is not None:
            elapsed = now.astimezone(timezone.utc) - started
            model.duration_ms = max(0, int(elapsed.total_seconds() * 1000))


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _jsonable(parameters: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value if isinstance(value, (str, int, float, bool)) or value is None
        else str(value)
        for key, value in parameters.items()
    }
