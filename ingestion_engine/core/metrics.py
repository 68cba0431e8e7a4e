"""
Prometheus metrics for ingestion jobs and previews.

Metrics live in the default registry and are served by ``/metrics``.
"""
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

JOBS_STARTED = Counter(
    "ingestion_jobs_started_total",
    "Jobs scheduled for execution",
)

JOBS_FINISHED = Counter(
    "ingestion_jobs_total",
    "Jobs reaching a terminal state",
    ["state"],
)

ACTIVE_JOBS = Gauge(
    "ingestion_active_jobs",
    "Jobs currently held by a worker",
)

JOB_DURATION = Histogram(
    "ingestion_job_duration_seconds",
    "Wall time from job start to its terminal state",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600],
)

BATCHES = Counter(
    "ingestion_batches_total",
    "Processed batches",
    ["outcome"],  # written, failed
)

ROWS = Counter(
    "ingestion_rows_total",
    "Source rows by outcome",
    ["outcome"],  # written, error, duplicate
)

WRITE_RETRIES = Counter(
    "ingestion_write_retries_total",
    "Batch writes that were retried after a failed attempt",
)

WRITE_LATENCY = Histogram(
    "ingestion_batch_write_seconds",
    "Latency of one batch write attempt",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

PREVIEW_LATENCY = Histogram(
    "ingestion_preview_seconds",
    "Latency of preview queries",
    ["operation"],  # page, count, join
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)


def record_job_finished(state: str, duration_seconds: Optional[float] = None):
    JOBS_FINISHED.labels(state=state).inc()
    if duration_seconds is not None:
        JOB_DURATION.observe(duration_seconds)


def record_batch(outcome: str, written: int = 0, errors: int = 0, duplicates: int = 0):
    BATCHES.labels(outcome=outcome).inc()
    for label, count in (("written", written), ("error", errors), ("duplicate", duplicates)):
        if count:
            ROWS.labels(outcome=label).inc(count)
