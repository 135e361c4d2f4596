"""
ORM model for the billing job audit trail.

Contract:
    One row per batch run.  Rows are created ``running`` by
    JobLedger.start_job() and moved exactly once to a terminal status.
    Rows are never deleted.

Invariants enforced:
    - ``ix_billing_jobs_type_status`` supports the one-running-job-per-type
      guard query.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rental_kernel.db.base import TrackedBase

from rental_billing.models._mapping import enum_value

if TYPE_CHECKING:
    from rental_billing.domain.types import BillingJob


class BillingJobModel(TrackedBase):
    """Persistent record of one batch run."""

    __tablename__ = "billing_jobs"

    __table_args__ = (
        Index("ix_billing_jobs_type_status", "job_type", "status"),
        Index("ix_billing_jobs_started_at", "started_at"),
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    records_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_log: Mapped[list | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def to_dto(self) -> BillingJob:
        from rental_billing.domain.types import BillingJob, JobStatus, JobType

        entity = "billing_job"
        error_log: list[dict[str, Any]] = list(self.error_log or [])
        return BillingJob(
            job_id=self.id,
            job_type=enum_value(entity, "job_type", JobType, self.job_type),
            status=enum_value(entity, "status", JobStatus, self.status),
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_ms=self.duration_ms,
            records_total=self.records_total,
            records_processed=self.records_processed,
            records_failed=self.records_failed,
            records_skipped=self.records_skipped,
            error_log=tuple(error_log),
            error_message=self.error_message,
            parameters=dict(self.parameters or {}),
            dry_run=self.dry_run,
        )
