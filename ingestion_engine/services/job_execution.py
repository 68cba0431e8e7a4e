"""
Execution of one ingestion job: setup, the batch loop and terminal transitions.

Only this execution path mutates a job's progress and state, apart from the
stop watchdog, which takes the job's lock and marks it STOPPED when a stop
request outlives ``timeoutMs``.
"""
import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from ingestion_engine.core.errors import (
    DataValidationError,
    IngestionError,
    InvalidRequest,
    SchemaNotFound,
    TargetWriteError,
    WriteTimeout,
)
from ingestion_engine.core.metrics import ROWS, WRITE_LATENCY, WRITE_RETRIES, record_batch, record_job_finished
from ingestion_engine.models.ingestion_job import TERMINAL_STATES, IngestionJob
from ingestion_engine.models.mapping import TableMapping
from ingestion_engine.schemas.connection import SourceDescriptor, SourceKind
from ingestion_engine.schemas.ingestion import ErrorAction, IngestionConfig, JobState, LoggingLevel
from ingestion_engine.schemas.mapping import ColumnMappingIn
from ingestion_engine.services.coercion import coerce_value
from ingestion_engine.services.dedup import row_hash
from ingestion_engine.services.sources import RowSource, get_source_engine
from ingestion_engine.services.targets import (
    DatabaseTargetWriter,
    FileTargetWriter,
    TargetColumn,
    TargetWriter,
)
from ingestion_engine.services.transformations import apply_transformation
from ingestion_engine.services.type_mapping import TypeInfo, to_logical

if TYPE_CHECKING:
    from ingestion_engine.services.job_manager import IngestionJobManager

logger = logging.getLogger(__name__)

_PY_LEVELS = {
    LoggingLevel.DEBUG: logging.DEBUG,
    LoggingLevel.INFO: logging.INFO,
    LoggingLevel.WARN: logging.WARNING,
    LoggingLevel.ERROR: logging.ERROR,
}


@dataclass
class JobControl:
    """Signals shared between a running job and the manager."""
    job_id: UUID
    mapping_id: UUID
    timeout_seconds: float
    cancel: threading.Event = field(default_factory=threading.Event)
    running: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    forced: bool = False
    watchdog: Optional[Any] = None

    def __post_init__(self):
        self.running.set()


@dataclass
class Progress:
    processed: int = 0
    errors: int = 0
    written: int = 0
    duplicates: int = 0
    retries: int = 0
    total: Optional[int] = None


class JobExecution:
    """
    Runs one job to a terminal state.

    The source is read in ``batchSize`` batches. Each batch is mapped and
    validated, deduplicated and written with retries; progress is committed
    after every batch so pollers see it advance.
    """

    def __init__(self, manager: "IngestionJobManager", control: JobControl):
        self.manager = manager
        self.control = control
        self.progress = Progress()
        self.pending_logs: List[Tuple[LoggingLevel, str, Any]] = []
        self.config: Optional[IngestionConfig] = None
        self.mappings: List[Tuple[ColumnMappingIn, TypeInfo]] = []
        self.source: Optional[RowSource] = None
        self.writer: Optional[TargetWriter] = None
        self.write_pool: Optional[ThreadPoolExecutor] = None
        self.alert_message: Optional[str] = None
        self.started = time.monotonic()

    # Store access

    def _update(self, mutate: Callable[[IngestionJob], None]) -> bool:
        """Apply ``mutate`` to the stored job and commit; False once the job was forced to stop."""
        with self.control.lock:
            if self.control.forced:
                return False
            with self.manager.session_factory() as db:
                job = db.get(IngestionJob, self.control.job_id)
                if job is None or job.is_terminal:
                    return False
                self._flush_logs(job)
                mutate(job)
                db.commit()
        return True

    def _log(self, level: LoggingLevel, message: str) -> None:
        if self.config is not None and level.rank < self.config.logging_level.rank:
            return
        logger.log(_PY_LEVELS[level], "Job %s: %s", self.control.job_id, message)
        self.pending_logs.append((level, message, self.manager.now()))

    def _flush_logs(self, job: IngestionJob) -> None:
        for level, message, timestamp in self.pending_logs:
            job.append_log(level.value, message, timestamp)
        self.pending_logs.clear()

    def _store_progress(self, job: IngestionJob) -> None:
        p = self.progress
        if p.total is not None:
            job.total = max(p.total, p.processed + p.errors)
        job.processed = p.processed
        job.errors = p.errors
        job.records_written = p.written
        job.duplicates_skipped = p.duplicates
        job.retries = p.retries
        if self.alert_message:
            job.error_message = self.alert_message

    def _transition(self, state: JobState, error_message: Optional[str] = None) -> bool:
        def apply(job: IngestionJob) -> None:
            self._store_progress(job)
            if error_message:
                job.error_message = error_message
            if self.writer is not None and self.writer.output_path is not None:
                job.output_path = str(self.writer.output_path)
            job.transition_to(state, self.manager.now())
        if not self._update(apply):
            return False
        if state in TERMINAL_STATES:
            record_job_finished(state.value, time.monotonic() - self.started)
        return True

    def _finish(self, state: JobState, message: str, level: LoggingLevel = LoggingLevel.INFO,
                error_message: Optional[str] = None) -> None:
        self._log(level, message)
        self._transition(state, error_message)

    # Setup

    def _load(self) -> Tuple[TableMapping, IngestionConfig]:
        with self.manager.session_factory() as db:
            job = db.get(IngestionJob, self.control.job_id)
            mapping = db.get(TableMapping, self.control.mapping_id)
            if mapping is None:
                raise SchemaNotFound(f"Mapping {self.control.mapping_id} no longer exists")
            config = IngestionConfig.model_validate(job.config)
            db.expunge(mapping)
        return mapping, config

    def _build_writer(self, mapping: TableMapping, target: SourceDescriptor) -> TargetWriter:
        columns = [TargetColumn(m.target_column, m.target_type) for m, _ in self.mappings]
        if target.source_type == SourceKind.DATABASE:
            if not target.table:
                raise InvalidRequest("Target table is required")
            if self.config.compression.enabled:
                self._log(LoggingLevel.DEBUG, "Compression for database targets is left to the transport")
            engine = get_source_engine(target.connection_config)
            return DatabaseTargetWriter(engine, target.table, columns)

        name = target.table or target.connection_config.file_ref or mapping.name
        stem = re.sub(r"[^A-Za-z0-9._-]", "_", Path(name).name) or "export"
        if not stem.lower().endswith((".csv", ".tsv", ".txt", ".gz")):
            stem = f"{stem}.csv"
        stem = f"{self.control.job_id.hex[:8]}_{stem}"
        level = self.config.compression.level if self.config.compression.enabled else None
        return FileTargetWriter(
            Path(self.manager.settings.EXPORT_DIR) / stem,
            columns,
            delimiter=target.connection_config.delimiter,
            compression_level=level,
        )

    def _setup(self) -> bool:
        mapping, self.config = self._load()
        if self.control.cancel.is_set():
            self._finish(JobState.STOPPED, "Stop requested before the job started")
            return False

        source = SourceDescriptor.model_validate(mapping.source)
        target = SourceDescriptor.model_validate(mapping.target)
        self.mappings = [
            (m, to_logical(m.target_type))
            for m in (ColumnMappingIn.model_validate(raw) for raw in mapping.column_mappings)
        ]

        self.source = self.manager.discovery.open_source(source)
        missing = [m.source_column for m, _ in self.mappings if self.source.composed.column(m.source_column) is None]
        if missing:
            raise SchemaNotFound(f"Source has no column(s): {', '.join(missing)}")
        self.progress.total = self.source.count()

        self.writer = self._build_writer(mapping, target)
        self.writer.prepare()
        self.write_pool = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"ingestion-write-{self.control.job_id.hex[:8]}"
        )

        self._log(
            LoggingLevel.INFO,
            f"Job started: {self.progress.total} rows, batch size {self.config.batch_size}",
        )
        if self.control.cancel.is_set():
            self._finish(JobState.STOPPED, "Stop requested before the first batch")
            return False
        return self._transition(JobState.RUNNING)

    # Batch loop

    def _threshold_reached(self) -> bool:
        return self.progress.errors >= max(self.config.error_threshold, 1)

    def _fail_on_threshold(self) -> None:
        message = (
            f"Error threshold reached: {self.progress.errors} errors "
            f"(threshold {self.config.error_threshold})"
        )
        self._finish(JobState.FAILED, message, LoggingLevel.ERROR, error_message=message)

    def _checkpoint(self, batch_no: int) -> bool:
        """Between batches: honour stop and pause requests. False means stop looping."""
        if self.control.forced:
            return False
        if self.control.cancel.is_set():
            self._finish(JobState.STOPPED, f"Job stopped before batch {batch_no}")
            return False
        if not self.control.running.is_set():
            self._log(LoggingLevel.INFO, f"Job paused before batch {batch_no}")
            if not self._transition(JobState.PAUSED):
                return False
            self.control.running.wait()
            if self.control.cancel.is_set():
                self._finish(JobState.STOPPED, "Job stopped while paused")
                return False
            self._log(LoggingLevel.INFO, "Job resumed")
            if not self._transition(JobState.RUNNING):
                return False
        return True

    def _map_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        mapped = {}
        for mapping, type_info in self.mappings:
            value = apply_transformation(mapping.transformation, row.get(mapping.source_column))
            mapped[mapping.target_column] = coerce_value(
                value, type_info, mapping.target_column, strict=self.config.validate_data
            )
        return mapped

    def _write_once(self, rows: List[Dict[str, Any]]) -> None:
        future = self.write_pool.submit(self.writer.write, rows)
        try:
            with WRITE_LATENCY.time():
                future.result(timeout=self.config.timeout_seconds)
        except FutureTimeout:
            raise WriteTimeout(f"Writing {len(rows)} rows exceeded {self.config.timeout_ms} ms")

    def _write_with_retry(self, batch_no: int, rows: List[Dict[str, Any]]) -> Optional[TargetWriteError]:
        """Write a batch; returns the last error once retries are exhausted."""
        settings = self.manager.settings
        attempts = self.config.max_retries + 1
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                self._write_once(rows)
                return None
            except TargetWriteError as e:
                last_error = e
                if attempt == attempts:
                    break
                self.progress.retries += 1
                WRITE_RETRIES.inc()
                delay = min(
                    settings.RETRY_BACKOFF_SECONDS * 2 ** (attempt - 1),
                    settings.RETRY_BACKOFF_MAX_SECONDS,
                )
                self._log(
                    LoggingLevel.DEBUG,
                    f"Batch {batch_no}: write attempt {attempt} failed ({e.message}); "
                    f"retrying in {delay:.2f}s",
                )
                self.manager.sleep(delay)
        return last_error

    def _batch_failed(self, batch_no: int, rows: int, reason: str) -> bool:
        """Count a failed batch and apply ``errorAction``. False means the job ended."""
        self.progress.errors += rows
        record_batch("failed", errors=rows)
        if self._threshold_reached():
            self._log(LoggingLevel.ERROR, f"Batch {batch_no} failed ({rows} rows): {reason}")
            self._fail_on_threshold()
            return False

        action = self.config.error_action
        if action == ErrorAction.STOP:
            message = f"Batch {batch_no} failed ({rows} rows): {reason}"
            self._finish(JobState.FAILED, message, LoggingLevel.ERROR, error_message=message)
            return False
        if action == ErrorAction.CONTINUE:
            self._log(LoggingLevel.WARN, f"Batch {batch_no} failed ({rows} rows): {reason}; continuing")
            return True
        if action == ErrorAction.ALERT_ONLY:
            self.alert_message = f"Batch {batch_no} failed ({rows} rows): {reason}"
            self._log(LoggingLevel.ERROR, self.alert_message)
            return True
        raise ValueError(f"Unhandled error action: {action}")

    def _process_batch(self, batch_no: int, rows: List[Dict[str, Any]]) -> bool:
        valid = []
        skipped = 0
        for index, row in enumerate(rows, start=1):
            try:
                valid.append(self._map_row(row))
            except DataValidationError as e:
                if not self.config.skip_invalid_records:
                    return self._batch_failed(batch_no, len(rows) - skipped, f"Invalid record: {e.message}")
                skipped += 1
                self.progress.errors += 1
                ROWS.labels(outcome="error").inc()
                self._log(LoggingLevel.WARN, f"Batch {batch_no}, row {index}: skipped invalid record: {e.message}")
                if self._threshold_reached():
                    self._fail_on_threshold()
                    return False

        fresh, hashes, duplicates = valid, [], 0
        window = None
        if self.config.deduplication.enabled:
            window = self.manager.dedup_window(self.control.mapping_id, self.config.deduplication.window_hours)
            target_columns = [m.target_column for m, _ in self.mappings]
            fresh, seen = [], set()
            for mapped in valid:
                digest = row_hash(mapped, target_columns)
                if digest in seen or window.contains(digest):
                    duplicates += 1
                    continue
                seen.add(digest)
                fresh.append(mapped)
                hashes.append(digest)

        error = self._write_with_retry(batch_no, fresh) if fresh else None
        if error is not None:
            return self._batch_failed(batch_no, len(rows) - skipped, error.message)

        if window is not None:
            window.add_all(hashes)
        self.progress.written += len(fresh)
        self.progress.duplicates += duplicates
        self.progress.processed += len(fresh) + duplicates
        record_batch("written", written=len(fresh), duplicates=duplicates)
        if duplicates:
            self._log(LoggingLevel.DEBUG, f"Batch {batch_no}: suppressed {duplicates} duplicate rows")
        self._log(LoggingLevel.DEBUG, f"Batch {batch_no}: wrote {len(fresh)} rows")
        return True

    def _execute(self) -> None:
        source_columns = list(dict.fromkeys(m.source_column for m, _ in self.mappings))
        batches = self.source.iter_batches(self.config.batch_size, columns=source_columns)
        for batch_no, rows in enumerate(batches, start=1):
            if not self._checkpoint(batch_no):
                return
            if not self._process_batch(batch_no, rows):
                return
            if not self._update(self._store_progress):
                return

        p = self.progress
        self._finish(
            JobState.COMPLETED,
            f"Job completed: {p.processed} processed, {p.errors} errors, "
            f"{p.written} written, {p.duplicates} duplicates suppressed",
            error_message=self.alert_message,
        )

    def run(self) -> None:
        try:
            if self._setup():
                self._execute()
        except IngestionError as e:
            self._finish(JobState.FAILED, f"Job failed: {e.message}", LoggingLevel.ERROR, error_message=e.message)
        except Exception as e:
            logger.exception("Job %s crashed", self.control.job_id)
            message = f"Unexpected error: {e}"
            self._finish(JobState.FAILED, message, LoggingLevel.ERROR, error_message=message)
        finally:
            if self.writer is not None:
                self.writer.close()
            if self.write_pool is not None:
                self.write_pool.shutdown(wait=False)

