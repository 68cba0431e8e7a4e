"""
Ingestion job manager: owns job lifecycles per mapping.

Jobs run on a thread pool. At most one non-terminal job exists per mapping;
status, log and stats queries read committed rows and never wait on a job.
"""
import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from ingestion_engine.core.config import Settings
from ingestion_engine.core.errors import (
    InvalidRequest,
    InvalidStateTransition,
    JobAlreadyRunning,
    JobNotFound,
    MappingNotFound,
)
from ingestion_engine.core.metrics import ACTIVE_JOBS, JOBS_FINISHED, JOBS_STARTED, record_job_finished
from ingestion_engine.models.ingestion_job import ACTIVE_STATES, IngestionJob, IngestionJobLog
from ingestion_engine.models.mapping import TableMapping
from ingestion_engine.schemas.ingestion import (
    IngestionConfig,
    JobProgress,
    JobState,
    JobSummary,
    LogEntry,
    LogPage,
    LoggingLevel,
    MappingStatusResponse,
    ProgressResponse,
    StatsResponse,
    StatusDetail,
    StatusProgress,
)
from ingestion_engine.services import job_stats
from ingestion_engine.services.dedup import DeduplicationWindow
from ingestion_engine.services.discovery import SchemaDiscoveryService
from ingestion_engine.services.job_execution import JobControl, JobExecution

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def job_summary(job: IngestionJob) -> JobSummary:
    return JobSummary(
        id=job.id,
        mapping_id=job.mapping_id,
        state=job.job_state,
        progress=JobProgress(
            processed=job.processed or 0,
            total=job.total,
            errors=job.errors or 0,
            percentage=job.percentage,
        ),
        records_written=job.records_written or 0,
        duplicates_skipped=job.duplicates_skipped or 0,
        retries=job.retries or 0,
        start_time=job.start_time,
        end_time=job.end_time,
        error_message=job.error_message,
    )


class IngestionJobManager:
    """
    Starts, stops, pauses and reports on ingestion jobs.

    Args:
        session_factory: Session factory for the job and mapping store
        settings: Application settings
        executor: Runs job bodies; a ThreadPoolExecutor with JOB_WORKERS threads by default
        clock: Returns the current naive UTC time
        sleep: Used for retry backoff
        timer_factory: Builds the stop watchdog timer
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.JOB_WORKERS, thread_name_prefix="ingestion-job"
        )
        self.now = clock
        self.sleep = sleep
        self.timer_factory = timer_factory
        self.discovery = SchemaDiscoveryService(settings)
        self._controls: Dict[UUID, JobControl] = {}
        self._windows: Dict[UUID, DeduplicationWindow] = {}
        self._lock = threading.Lock()

    # Lifecycle

    def recover_interrupted_jobs(self) -> int:
        """Fail jobs left non-terminal by a previous process; their workers are gone."""
        with self.session_factory() as db:
            jobs = db.execute(
                select(IngestionJob).where(IngestionJob.state.in_(ACTIVE_STATES))
            ).scalars().all()
            now = self.now()
            for job in jobs:
                job.append_log("ERROR", "Job interrupted by a service restart", now)
                job.error_message = "Interrupted by a service restart"
                job.transition_to(JobState.FAILED, now)
            db.commit()
        if jobs:
            JOBS_FINISHED.labels(state=JobState.FAILED.value).inc(len(jobs))
            logger.warning("Marked %d interrupted jobs as FAILED", len(jobs))
        return len(jobs)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            controls = list(self._controls.values())
        for control in controls:
            control.cancel.set()
            control.running.set()
        self.executor.shutdown(wait=wait)

    def dedup_window(self, mapping_id: UUID, window_hours: float) -> DeduplicationWindow:
        """The mapping's rolling window, shared by its successive jobs."""
        with self._lock:
            window = self._windows.get(mapping_id)
            if window is None:
                window = DeduplicationWindow(window_hours, self.now)
                self._windows[mapping_id] = window
            elif window.window.total_seconds() != window_hours * 3600:
                window.resize(window_hours)
            return window

    def _active_job(self, db: Session, mapping_id: UUID) -> Optional[IngestionJob]:
        return db.execute(
            select(IngestionJob)
            .where(IngestionJob.mapping_id == mapping_id, IngestionJob.state.in_(ACTIVE_STATES))
            .order_by(IngestionJob.created_at.desc())
        ).scalars().first()

    def _require_mapping(self, db: Session, mapping_id: UUID) -> TableMapping:
        mapping = db.get(TableMapping, mapping_id)
        if mapping is None:
            raise MappingNotFound(f"Mapping not found: {mapping_id}")
        return mapping

    def start_job(self, mapping_id: UUID, overrides: Optional[dict] = None) -> JobSummary:
        """
        Create a PENDING job for a mapping and schedule it.

        ``overrides`` are merged over the mapping's saved configuration for
        this job only.

        Raises:
            MappingNotFound: unknown mapping
            JobAlreadyRunning: the mapping already has a non-terminal job
        """
        with self._lock:
            with self.session_factory() as db:
                mapping = self._require_mapping(db, mapping_id)
                active = self._active_job(db, mapping_id)
                if active is not None:
                    raise JobAlreadyRunning(
                        f"Mapping {mapping_id} already has job {active.id} in state {active.state}"
                    )
                try:
                    effective = IngestionConfig.model_validate({**(mapping.config or {}), **(overrides or {})})
                except ValueError as e:
                    raise InvalidRequest(f"Invalid ingestion config: {e}")
                job = IngestionJob(
                    mapping_id=mapping_id,
                    state=JobState.PENDING.value,
                    config=effective.model_dump(mode="json", by_alias=True),
                    processed=0,
                    errors=0,
                    records_written=0,
                    duplicates_skipped=0,
                    retries=0,
                    created_at=self.now(),
                )
                db.add(job)
                db.flush()
                job.append_log("INFO", f"Job created for mapping '{mapping.name}'", self.now())
                db.commit()
                summary = job_summary(job)

            control = JobControl(
                job_id=summary.id,
                mapping_id=mapping_id,
                timeout_seconds=effective.timeout_seconds,
            )
            self._controls[mapping_id] = control

        logger.info("Starting job %s for mapping %s", summary.id, mapping_id)
        JOBS_STARTED.inc()
        self.executor.submit(self._run, control)
        return summary

    def _run(self, control: JobControl) -> None:
        try:
            with ACTIVE_JOBS.track_inprogress():
                JobExecution(self, control).run()
        finally:
            if control.watchdog is not None:
                control.watchdog.cancel()
            with self._lock:
                if self._controls.get(control.mapping_id) is control:
                    del self._controls[control.mapping_id]

    def _control_for(self, db: Session, mapping_id: UUID) -> Tuple[IngestionJob, Optional[JobControl]]:
        self._require_mapping(db, mapping_id)
        job = self._active_job(db, mapping_id)
        if job is None:
            raise InvalidStateTransition(f"Mapping {mapping_id} has no active job")
        with self._lock:
            control = self._controls.get(mapping_id)
        if control is not None and control.job_id != job.id:
            control = None
        return job, control

    def stop_job(self, mapping_id: UUID) -> JobSummary:
        """
        Request a cooperative stop of the mapping's active job.

        The job stops between batches. If it has not stopped within its
        ``timeoutMs`` a watchdog marks it STOPPED and the worker discards
        whatever it is still doing.
        """
        with self.session_factory() as db:
            job, control = self._control_for(db, mapping_id)
            if control is None:
                # No worker in this process owns the job
                now = self.now()
                job.append_log("WARN", "Stopped without a running worker", now)
                job.transition_to(JobState.STOPPED, now)
                db.commit()
                record_job_finished(JobState.STOPPED.value)
                return job_summary(job)
            job.append_log("INFO", "Stop requested", self.now())
            db.commit()
            summary = job_summary(job)

        control.cancel.set()
        control.running.set()
        if control.watchdog is None:
            control.watchdog = self.timer_factory(control.timeout_seconds, self._force_stop, args=(control,))
            control.watchdog.daemon = True
            control.watchdog.start()
        return summary

    def _force_stop(self, control: JobControl) -> None:
        with control.lock:
            with self.session_factory() as db:
                job = db.get(IngestionJob, control.job_id)
                if job is None or job.is_terminal:
                    return
                now = self.now()
                job.append_log(
                    "WARN",
                    f"Stop not honoured within {int(control.timeout_seconds * 1000)} ms; "
                    "job marked STOPPED",
                    now,
                )
                job.transition_to(JobState.STOPPED, now)
                db.commit()
            control.forced = True
        record_job_finished(JobState.STOPPED.value)
        logger.warning("Job %s force-stopped after stop timeout", control.job_id)

    def pause_job(self, mapping_id: UUID) -> JobSummary:
        """Ask a RUNNING job to pause before its next batch."""
        with self.session_factory() as db:
            job, control = self._control_for(db, mapping_id)
            if job.job_state != JobState.RUNNING or control is None:
                raise InvalidStateTransition(f"Job {job.id} is {job.state}; only RUNNING jobs can pause")
            control.running.clear()
            job.append_log("INFO", "Pause requested", self.now())
            db.commit()
            return job_summary(job)

    def resume_job(self, mapping_id: UUID) -> JobSummary:
        """Let a paused (or pause-requested) job continue."""
        with self.session_factory() as db:
            job, control = self._control_for(db, mapping_id)
            if control is None or control.running.is_set():
                raise InvalidStateTransition(f"Job {job.id} is {job.state}; it is not paused")
            job.append_log("INFO", "Resume requested", self.now())
            db.commit()
            control.running.set()
            return job_summary(job)

    # Queries

    def get_job(self, job_id: UUID) -> JobSummary:
        with self.session_factory() as db:
            job = db.get(IngestionJob, job_id)
            if job is None:
                raise JobNotFound(f"Job not found: {job_id}")
            return job_summary(job)

    def get_job_output(self, job_id: UUID) -> Optional[str]:
        with self.session_factory() as db:
            job = db.get(IngestionJob, job_id)
            if job is None:
                raise JobNotFound(f"Job not found: {job_id}")
            return job.output_path

    def get_progress(self, job_id: UUID) -> ProgressResponse:
        with self.session_factory() as db:
            job = db.get(IngestionJob, job_id)
            if job is None:
                raise JobNotFound(f"Job not found: {job_id}")
            return ProgressResponse(progress=job.percentage, status=job.job_state, error=job.error_message)

    def get_status(self, mapping_id: UUID) -> MappingStatusResponse:
        with self.session_factory() as db:
            self._require_mapping(db, mapping_id)
            jobs = db.execute(
                select(IngestionJob)
                .where(IngestionJob.mapping_id == mapping_id)
                .order_by(IngestionJob.created_at.desc(), IngestionJob.start_time.desc())
                .limit(5)
            ).scalars().all()
            if not jobs:
                return MappingStatusResponse(status=StatusDetail(state="IDLE"))
            latest = jobs[0]
            detail = StatusDetail(
                state=latest.state,
                job_id=latest.id,
                progress=StatusProgress(
                    percentage=latest.percentage,
                    processed_records=latest.processed or 0,
                    total_records=latest.total,
                    errors=latest.errors or 0,
                ),
                error_message=latest.error_message,
                last_updated=latest.updated_at or latest.created_at,
            )
            return MappingStatusResponse(
                status=detail,
                recent_jobs=[job_stats.recent_job(job) for job in jobs],
            )

    def get_logs(
        self,
        mapping_id: UUID,
        page: int = 0,
        page_size: int = 50,
        level: Optional[str] = None,
        search: Optional[str] = None,
    ) -> LogPage:
        """Newest-first page of a mapping's job logs, optionally filtered by level and text."""
        with self.session_factory() as db:
            self._require_mapping(db, mapping_id)
            conditions = [IngestionJobLog.mapping_id == mapping_id]
            if level and level.lower() != "all":
                try:
                    conditions.append(IngestionJobLog.level == LoggingLevel(level).value)
                except ValueError:
                    raise InvalidRequest(f"Unknown log level: {level}")
            if search:
                conditions.append(IngestionJobLog.message.ilike(f"%{search}%"))
            total = db.execute(
                select(func.count()).select_from(IngestionJobLog).where(*conditions)
            ).scalar_one()
            entries = db.execute(
                select(IngestionJobLog)
                .where(*conditions)
                .order_by(IngestionJobLog.timestamp.desc(), IngestionJobLog.id.desc())
                .offset(page * page_size)
                .limit(page_size)
            ).scalars().all()
            return LogPage(
                logs=[
                    LogEntry(timestamp=e.timestamp, level=e.level, message=e.message, job_id=e.job_id)
                    for e in entries
                ],
                total=total,
            )

    def get_stats(self, mapping_id: UUID, time_range: str = "24h") -> StatsResponse:
        with self.session_factory() as db:
            self._require_mapping(db, mapping_id)
            return job_stats.compute_stats(db, mapping_id, time_range, self.now())
