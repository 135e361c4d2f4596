"""
JobMetrics -- Prometheus counters for batch runs, pushed to a Pushgateway.

Contract:
    ``record_job_run(job, status, duration_seconds, counts)`` updates the
    run counter, the duration histogram and the record counters, then
    pushes the registry once.  ``JobLedger.run()`` calls it after the job
    row reaches its terminal status.

Invariants enforced:
    - Each instance owns its ``CollectorRegistry``; nothing is registered
      in the process-wide default registry.
    - A failed push is logged and never fails the job.

Metrics:
    batch_job_runs_total{job,status}
    batch_job_duration_seconds{job,status}
    batch_records_total{job}
    batch_records_processed_total{job}
    batch_records_failed_total{job}
    batch_last_success_timestamp_seconds{job}
"""

from __future__ import annotations

import socket
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway

from rental_kernel.logging_config import get_logger

from rental_billing.domain.types import JobCounts, JobStatus

logger = get_logger("billing.job_metrics")

DEFAULT_PUSH_JOB = "rent_batch"
DURATION_BUCKETS = (0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900, 1800)

Pusher = Callable[..., None]


class JobMetrics:
    def __init__(
        self,
        pushgateway_url: str | None = None,
        push_job: str = DEFAULT_PUSH_JOB,
        instance: str | None = None,
        registry: CollectorRegistry | None = None,
        pusher: Pusher | None = None,
    ):
        self.registry = registry or CollectorRegistry()
        self._gateway = pushgateway_url
        self._push_job = push_job
        self._instance = instance or socket.gethostname()
        self._pusher = pusher or push_to_gateway

        self._runs = Counter(
            "batch_job_runs", "Total number of executed batch jobs",
            ["job", "status"], registry=self.registry,
        )
        self._duration = Histogram(
            "batch_job_duration_seconds", "Batch job execution duration in seconds",
            ["job", "status"], buckets=DURATION_BUCKETS, registry=self.registry,
        )
        self._records = Counter(
            "batch_records", "Records considered by batch jobs",
            ["job"], registry=self.registry,
        )
        self._processed = Counter(
            "batch_records_processed", "Records successfully processed by batch jobs",
            ["job"], registry=self.registry,
        )
        self._failed = Counter(
            "batch_records_failed", "Records failed by batch jobs",
            ["job"], registry=self.registry,
        )
        self._last_success = Gauge(
            "batch_last_success_timestamp_seconds",
            "Unix time of the latest batch job that did not fail",
            ["job"], registry=self.registry,
        )

    @classmethod
    def from_config(cls, config) -> JobMetrics | None:
        """Build from ``MetricsConfig``; None when no Pushgateway is configured."""
        url = (config.pushgateway_url or "").strip()
        if not url:
            return None
        return cls(
            pushgateway_url=url,
            push_job=config.push_job,
            instance=config.instance,
        )

    def record_job_run(
        self,
        job: str,
        status: JobStatus,
        duration_seconds: float,
        counts: JobCounts | None = None,
    ) -> None:
        status = JobStatus(status)
        self._runs.labels(job=job, status=status.value).inc()
        self._duration.labels(job=job, status=status.value).observe(max(0.0, duration_seconds))

        if counts is not None:
            if counts.records_total > 0:
                self._records.labels(job=job).inc(counts.records_total)
            if counts.records_processed > 0:
                self._processed.labels(job=job).inc(counts.records_processed)
            if counts.records_failed > 0:
                self._failed.labels(job=job).inc(counts.records_failed)

        if status is not JobStatus.FAILED:
            self._last_success.labels(job=job).set_to_current_time()

        self._push(job)

    def _push(self, command: str) -> None:
        if not self._gateway:
            return
        try:
            self._pusher(
                self._gateway,
                job=self._push_job,
                registry=self.registry,
                grouping_key={"instance": self._instance, "command": command},
            )
        except Exception as exc:
            logger.warning(
                "metrics_push_failed",
                extra={"gateway": self._gateway, "command": command, "error": str(exc)},
            )
