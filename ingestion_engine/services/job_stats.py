"""
Aggregate statistics over a mapping's jobs.
"""
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ingestion_engine.core.errors import InvalidRequest
from ingestion_engine.models.ingestion_job import IngestionJob
from ingestion_engine.schemas.ingestion import JobState, RecentJob, StatsResponse

TIME_RANGES: Dict[str, Optional[timedelta]] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}

RECENT_JOBS = 10


def recent_job(job: IngestionJob) -> RecentJob:
    return RecentJob(
        id=job.id,
        start_time=job.start_time,
        end_time=job.end_time,
        records_processed=job.processed or 0,
        status=job.job_state,
    )


def compute_stats(db: Session, mapping_id: UUID, time_range: str, now: datetime) -> StatsResponse:
    """
    Statistics for jobs created within ``time_range`` of ``now``.

    Success rate is the share of consumed rows that were not errors;
    processing time and throughput only count jobs that ran to a terminal state.
    """
    if time_range not in TIME_RANGES:
        raise InvalidRequest(
            f"Unknown time range '{time_range}'; expected one of {', '.join(TIME_RANGES)}"
        )
    stmt = select(IngestionJob).where(IngestionJob.mapping_id == mapping_id)
    window = TIME_RANGES[time_range]
    if window is not None:
        stmt = stmt.where(IngestionJob.created_at >= now - window)
    jobs = db.execute(stmt.order_by(IngestionJob.created_at.desc())).scalars().all()

    processed = sum(job.processed or 0 for job in jobs)
    failed = sum(job.errors or 0 for job in jobs)
    consumed = processed + failed

    finished = [job for job in jobs if job.start_time and job.end_time]
    elapsed = [(job.end_time - job.start_time).total_seconds() for job in finished]
    elapsed_total = sum(elapsed)
    finished_records = sum(job.processed or 0 for job in finished)

    successes = [job for job in jobs if job.job_state == JobState.COMPLETED and job.end_time]
    failures = [job for job in jobs if job.job_state == JobState.FAILED and job.end_time]

    return StatsResponse(
        total_records=processed,
        failed_records=failed,
        success_rate=round(100.0 * processed / consumed, 2) if consumed else 0.0,
        avg_processing_time=round(1000.0 * elapsed_total / len(finished), 2) if finished else 0.0,
        throughput=round(finished_records / elapsed_total, 2) if elapsed_total > 0 else 0.0,
        last_successful_ingestion=max((job.end_time for job in successes), default=None),
        last_failed_ingestion=max((job.end_time for job in failures), default=None),
        recent_jobs=[recent_job(job) for job in jobs[:RECENT_JOBS]],
    )
