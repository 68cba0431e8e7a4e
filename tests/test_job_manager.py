"""
Integration tests for the ingestion job manager.

Jobs run inline (or deferred) against SQLite sources and targets, so every
state transition, retry, threshold and stop path is observable without
real concurrency except where pausing needs it.
"""
import gzip
import threading
import pytest
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import create_engine, text

from ingestion_engine.core.errors import (
    InvalidRequest,
    InvalidStateTransition,
    JobAlreadyRunning,
    MappingNotFound,
    TargetWriteError,
)
from ingestion_engine.db.session import SessionLocal
from ingestion_engine.models.ingestion_job import IngestionJob
from ingestion_engine.schemas.connection import SourceDescriptor, SourceKind
from ingestion_engine.schemas.ingestion import JobState
from ingestion_engine.services.job_manager import IngestionJobManager
from ingestion_engine.services.mapping_registry import MappingRegistry
from ingestion_engine.services.targets import DatabaseTargetWriter

CUSTOMER_COLUMNS = [("id", "id", "Int32"), ("name", "name", "String"), ("email", "email", "String")]


def target_count(url: str, table: str) -> int:
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()
    finally:
        engine.dispose()


def file_target(name: str = "out.csv") -> SourceDescriptor:
    return SourceDescriptor(source_type=SourceKind.FLATFILE, table=name)


@pytest.fixture
def customers_mapping(create_mapping, db_descriptor, source_db_url, target_db_url):
    """customers -> customers_copy, with email required in the target."""
    return create_mapping(
        db_descriptor(source_db_url, "customers"),
        db_descriptor(target_db_url, "customers_copy"),
        CUSTOMER_COLUMNS,
        batch_size=2,
    )


@pytest.fixture
def flaky_writes(monkeypatch):
    """Make the first ``n`` database writes fail."""
    def _install(n: int):
        original = DatabaseTargetWriter.write
        calls = {"count": 0}

        def write(self, rows):
            calls["count"] += 1
            if calls["count"] <= n:
                raise TargetWriteError("connection reset by peer")
            return original(self, rows)

        monkeypatch.setattr(DatabaseTargetWriter, "write", write)
        return calls
    return _install


class TestJobLifecycle:
    """End-to-end runs to a terminal state."""

    def test_database_to_database_run(self, manager, customers_mapping, target_db_url):
        """Invalid rows are skipped and counted; the rest are written in batches."""
        started = manager.start_job(customers_mapping)
        assert started.state == JobState.PENDING

        job = manager.get_job(started.id)
        assert job.state == JobState.COMPLETED
        assert job.progress.total == 5
        assert job.progress.processed == 4
        assert job.progress.errors == 1
        assert job.records_written == 4
        assert job.progress.percentage == 80
        assert job.start_time is not None and job.end_time >= job.start_time
        assert target_count(target_db_url, "customers_copy") == 4

    def test_progress_never_exceeds_total(self, manager, customers_mapping):
        job = manager.get_job(manager.start_job(customers_mapping).id)
        assert job.progress.processed + job.progress.errors <= job.progress.total

    def test_logs_record_the_run(self, manager, customers_mapping):
        manager.start_job(customers_mapping)
        messages = [entry.message for entry in manager.get_logs(customers_mapping, page_size=100).logs]
        assert any(m.startswith("Job created") for m in messages)
        assert any(m.startswith("Job started") for m in messages)
        assert any("skipped invalid record" in m for m in messages)
        assert messages[0].startswith("Job completed")

    def test_file_to_file_run(self, manager, create_mapping, write_upload, file_descriptor, settings):
        ref = write_upload("people.csv", "id,name\n1,Ada\n2,Grace\n")
        mapping_id = create_mapping(
            file_descriptor(ref), file_target("people_out.csv"),
            [("id", "person_id", "Int64"), ("name", "person", "String")],
        )
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.COMPLETED

        output = Path(manager.get_job_output(job.id))
        assert output.parent == Path(settings.EXPORT_DIR)
        assert output.name.endswith("_people_out.csv")
        assert output.read_text().splitlines() == ["person_id,person", "1,Ada", "2,Grace"]

    def test_compressed_file_output(self, manager, create_mapping, write_upload, file_descriptor):
        ref = write_upload("people.csv", "id,name\n1,Ada\n2,Grace\n3,Linus\n")
        mapping_id = create_mapping(
            file_descriptor(ref), file_target(),
            [("id", "id", "Int64"), ("name", "name", "String")],
            batch_size=1, compression={"enabled": True, "level": 9},
        )
        job = manager.start_job(mapping_id)
        output = manager.get_job_output(job.id)
        assert output.endswith(".csv.gz")
        with gzip.open(output, "rt") as f:
            assert f.read().splitlines() == ["id,name", "1,Ada", "2,Grace", "3,Linus"]

    def test_transformations_apply_before_coercion(self, manager, create_mapping, write_upload, file_descriptor):
        ref = write_upload("phones.csv", "phone,name\n+1 (555) 010,  ada \n")
        mapping_id = create_mapping(
            file_descriptor(ref), file_target(),
            [("phone", "phone", "Int64", "digits_only"), ("name", "name", "String", "trim")],
        )
        job = manager.start_job(mapping_id)
        output = Path(manager.get_job_output(job.id))
        assert output.read_text().splitlines() == ["phone,name", "1555010,ada"]

    def test_missing_source_column_fails_the_job(self, manager, create_mapping, db_descriptor,
                                                 source_db_url, target_db_url):
        mapping_id = create_mapping(
            db_descriptor(source_db_url, "customers"),
            db_descriptor(target_db_url, "out"),
            [("nope", "nope", "String")],
        )
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.FAILED
        assert "nope" in job.error_message

    def test_unknown_mapping(self, manager):
        with pytest.raises(MappingNotFound):
            manager.start_job(uuid4())

    def test_invalid_override(self, manager, customers_mapping):
        with pytest.raises(InvalidRequest):
            manager.start_job(customers_mapping, {"batchSize": 0})

    def test_override_applies_to_one_job(self, manager, customers_mapping, db):
        job = manager.start_job(customers_mapping, {"batchSize": 5})
        stored = db.get(IngestionJob, job.id)
        assert stored.config["batchSize"] == 5
        assert MappingRegistry(db).get_config(customers_mapping).batch_size == 2


class TestSingleActiveJob:

    def test_start_while_running_is_rejected(self, manager, customers_mapping, flaky_writes):
        """A second start during the first job's retry backoff fails; after completion it works."""
        flaky_writes(1)
        rejected = []

        def during_backoff(delay):
            assert manager.get_status(customers_mapping).status.state == JobState.RUNNING.value
            with pytest.raises(JobAlreadyRunning):
                manager.start_job(customers_mapping)
            rejected.append(delay)

        manager.sleep = during_backoff
        first = manager.get_job(manager.start_job(customers_mapping).id)
        assert rejected == [0.5]
        assert first.state == JobState.COMPLETED
        assert first.retries == 1

        second = manager.start_job(customers_mapping)
        assert second.id != first.id
        assert manager.get_job(second.id).state == JobState.COMPLETED

    def test_pending_job_blocks_a_second_start(self, deferred_manager, customers_mapping):
        deferred_manager.start_job(customers_mapping)
        with pytest.raises(JobAlreadyRunning):
            deferred_manager.start_job(customers_mapping)


class TestRetriesAndErrorActions:

    def test_retries_with_exponential_backoff(self, manager, customers_mapping, flaky_writes, sleeps):
        flaky_writes(3)
        job = manager.get_job(manager.start_job(customers_mapping, {"maxRetries": 3}).id)
        assert job.state == JobState.COMPLETED
        assert job.retries == 3
        assert sleeps == [0.5, 1.0, 2.0]

    def test_exhausted_retries_stop_the_job(self, manager, customers_mapping, flaky_writes, sleeps):
        flaky_writes(100)
        job = manager.get_job(manager.start_job(customers_mapping, {"maxRetries": 2}).id)
        assert job.state == JobState.FAILED
        assert job.retries == 2
        assert len(sleeps) == 2
        assert job.error_message.startswith("Batch 1 failed")
        assert "connection reset by peer" in job.error_message

    def test_continue_skips_failed_batches(self, manager, customers_mapping, flaky_writes, target_db_url):
        flaky_writes(1)
        job = manager.get_job(manager.start_job(
            customers_mapping, {"maxRetries": 0, "errorAction": "CONTINUE"}
        ).id)
        assert job.state == JobState.COMPLETED
        # Batch 1 (2 rows) lost; batch 2 has the invalid row
        assert job.progress.errors == 3
        assert job.records_written == 2
        assert job.error_message is None
        assert target_count(target_db_url, "customers_copy") == 2

    def test_alert_only_completes_with_a_message(self, manager, customers_mapping, flaky_writes):
        flaky_writes(1)
        job = manager.get_job(manager.start_job(
            customers_mapping, {"maxRetries": 0, "errorAction": "ALERT_ONLY"}
        ).id)
        assert job.state == JobState.COMPLETED
        assert job.error_message.startswith("Batch 1 failed")
        levels = {entry.level for entry in manager.get_logs(customers_mapping, page_size=100).logs}
        assert "ERROR" in levels

    def test_alert_message_is_visible_while_running(self, manager, customers_mapping, monkeypatch):
        original = DatabaseTargetWriter.write
        seen = []

        def write(self, rows):
            if not seen:
                seen.append(None)
                raise TargetWriteError("connection reset by peer")
            status = manager.get_status(customers_mapping).status
            seen.append((status.state, status.error_message))
            return original(self, rows)

        monkeypatch.setattr(DatabaseTargetWriter, "write", write)
        manager.start_job(customers_mapping, {"maxRetries": 0, "errorAction": "ALERT_ONLY"})
        state, message = seen[1]
        assert state == "RUNNING"
        assert message.startswith("Batch 1 failed")

    def test_stopped_job_keeps_its_alert_message(self, manager, customers_mapping, monkeypatch):
        original = DatabaseTargetWriter.write
        calls = {"count": 0}

        def write(self, rows):
            calls["count"] += 1
            if calls["count"] == 1:
                raise TargetWriteError("connection reset by peer")
            manager.stop_job(customers_mapping)
            return original(self, rows)

        monkeypatch.setattr(DatabaseTargetWriter, "write", write)
        job = manager.get_job(manager.start_job(
            customers_mapping, {"maxRetries": 0, "errorAction": "ALERT_ONLY"}
        ).id)
        assert job.state == JobState.STOPPED
        assert job.error_message.startswith("Batch 1 failed")

    def test_invalid_records_fail_the_batch_when_not_skipped(self, manager, customers_mapping):
        job = manager.get_job(manager.start_job(customers_mapping, {"skipInvalidRecords": False}).id)
        assert job.state == JobState.FAILED
        assert "Invalid record" in job.error_message
        assert job.records_written == 2

    def test_validation_off_passes_values_through(self, manager, create_mapping, write_upload, file_descriptor):
        ref = write_upload("n.csv", "n\n1\nabc\n")
        mapping_id = create_mapping(
            file_descriptor(ref), file_target(), [("n", "n", "Int64")], validate_data=False,
        )
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.COMPLETED
        assert job.progress.errors == 0
        assert Path(manager.get_job_output(job.id)).read_text().splitlines() == ["n", "1", "abc"]


class TestErrorThreshold:
    """Reaching errorThreshold fails the job regardless of errorAction."""

    @pytest.fixture
    def quantities(self, create_mapping, write_upload, file_descriptor):
        def _mapping(values, **config):
            ref = write_upload("qty.csv", "qty\n" + "".join(f"{v}\n" for v in values))
            return create_mapping(
                file_descriptor(ref), file_target(), [("qty", "qty", "Int64")],
                batch_size=1, error_action="CONTINUE", **config,
            )
        return _mapping

    def test_threshold_reached(self, manager, quantities):
        mapping_id = quantities(["x", "y", "3", "z", "5"], error_threshold=3)
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.FAILED
        assert job.progress.errors == 3
        assert job.progress.processed == 1
        assert "Error threshold reached" in job.error_message

    def test_below_threshold(self, manager, quantities):
        mapping_id = quantities(["x", "y", "3", "5"], error_threshold=3)
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.COMPLETED
        assert job.progress.errors == 2
        assert job.progress.processed == 2

    def test_zero_threshold_fails_on_the_first_error(self, manager, quantities):
        mapping_id = quantities(["1", "x", "3"], error_threshold=0)
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.state == JobState.FAILED
        assert job.progress.errors == 1


class TestDeduplication:

    @pytest.fixture
    def dedup_mapping(self, create_mapping, write_upload, file_descriptor):
        ref = write_upload("dupes.csv", "k,v\na,1\nb,2\na,1\n")
        return create_mapping(
            file_descriptor(ref), file_target(), [("k", "k", "String"), ("v", "v", "Int64")],
            deduplication={"enabled": True, "windowHours": 24},
        )

    def test_duplicates_within_a_job(self, manager, dedup_mapping):
        job = manager.get_job(manager.start_job(dedup_mapping).id)
        assert job.records_written == 2
        assert job.duplicates_skipped == 1
        assert job.progress.processed == 3

    def test_window_spans_jobs_and_expires(self, manager, dedup_mapping, clock):
        manager.start_job(dedup_mapping)
        second = manager.get_job(manager.start_job(dedup_mapping).id)
        assert second.records_written == 0
        assert second.duplicates_skipped == 3

        clock.advance(hours=25)
        third = manager.get_job(manager.start_job(dedup_mapping).id)
        assert third.records_written == 2

    def test_disabled_by_default(self, manager, create_mapping, write_upload, file_descriptor):
        ref = write_upload("dupes.csv", "k\na\na\n")
        mapping_id = create_mapping(file_descriptor(ref), file_target(), [("k", "k", "String")])
        job = manager.get_job(manager.start_job(mapping_id).id)
        assert job.records_written == 2


class TestStopPauseResume:

    def test_stop_before_the_job_runs(self, deferred_manager, deferred_executor, customers_mapping, watchdogs):
        job = deferred_manager.start_job(customers_mapping)
        deferred_manager.stop_job(customers_mapping)
        watchdog = watchdogs[-1]
        assert watchdog.started and watchdog.daemon

        deferred_executor.run_all()
        stopped = deferred_manager.get_job(job.id)
        assert stopped.state == JobState.STOPPED
        assert stopped.end_time is not None
        assert watchdog.cancelled

    def test_stop_is_terminal_and_a_new_start_creates_a_new_job(
        self, deferred_manager, deferred_executor, customers_mapping
    ):
        first = deferred_manager.start_job(customers_mapping)
        deferred_manager.stop_job(customers_mapping)
        deferred_executor.run_all()

        second = deferred_manager.start_job(customers_mapping)
        deferred_executor.run_all()
        assert second.id != first.id
        assert deferred_manager.get_job(first.id).state == JobState.STOPPED
        assert deferred_manager.get_job(second.id).state == JobState.COMPLETED

    def test_watchdog_forces_stop(self, deferred_manager, deferred_executor, customers_mapping, watchdogs):
        job = deferred_manager.start_job(customers_mapping)
        deferred_manager.stop_job(customers_mapping)
        watchdogs[-1].fire()
        assert deferred_manager.get_job(job.id).state == JobState.STOPPED

        # The late worker must not resurrect the job
        deferred_executor.run_all()
        assert deferred_manager.get_job(job.id).state == JobState.STOPPED
        messages = [e.message for e in deferred_manager.get_logs(customers_mapping, page_size=100).logs]
        assert any("not honoured" in m for m in messages)

    def test_stop_without_a_worker(self, deferred_manager, customers_mapping, settings, clock):
        """A job whose worker lives elsewhere is marked STOPPED directly."""
        job = deferred_manager.start_job(customers_mapping)
        other = IngestionJobManager(SessionLocal, settings, executor=deferred_manager.executor, clock=clock)
        summary = other.stop_job(customers_mapping)
        assert summary.state == JobState.STOPPED
        assert other.get_job(job.id).state == JobState.STOPPED

    def test_stop_without_an_active_job(self, manager, customers_mapping):
        with pytest.raises(InvalidStateTransition):
            manager.stop_job(customers_mapping)

    def test_pause_requires_a_running_job(self, deferred_manager, customers_mapping):
        deferred_manager.start_job(customers_mapping)
        with pytest.raises(InvalidStateTransition):
            deferred_manager.pause_job(customers_mapping)

    def test_resume_requires_a_paused_job(self, deferred_manager, customers_mapping):
        deferred_manager.start_job(customers_mapping)
        with pytest.raises(InvalidStateTransition):
            deferred_manager.resume_job(customers_mapping)

    def test_pause_and_resume(self, settings, clock, customers_mapping, monkeypatch, wait_for):
        """Pausing takes effect between batches; resuming continues where it left off."""
        entered = threading.Event()
        release = threading.Event()
        original = DatabaseTargetWriter.write

        def gated_write(self, rows):
            if not entered.is_set():
                entered.set()
                release.wait(10)
            return original(self, rows)

        monkeypatch.setattr(DatabaseTargetWriter, "write", gated_write)
        threaded = IngestionJobManager(SessionLocal, settings, clock=clock, sleep=lambda _: None)
        try:
            job = threaded.start_job(customers_mapping)
            assert entered.wait(10)
            paused = threaded.pause_job(customers_mapping)
            assert paused.state == JobState.RUNNING
            release.set()

            wait_for(lambda: threaded.get_job(job.id).state == JobState.PAUSED)
            assert threaded.get_job(job.id).records_written == 2

            threaded.resume_job(customers_mapping)
            wait_for(lambda: threaded.get_job(job.id).state == JobState.COMPLETED)
            assert threaded.get_job(job.id).records_written == 4
        finally:
            release.set()
            threaded.shutdown(wait=True)


class TestQueries:

    def test_status_is_idle_before_any_job(self, manager, customers_mapping):
        status = manager.get_status(customers_mapping)
        assert status.status.state == "IDLE"
        assert status.recent_jobs == []

    def test_status_reports_latest_job(self, manager, customers_mapping):
        manager.start_job(customers_mapping)
        latest = manager.start_job(customers_mapping)
        status = manager.get_status(customers_mapping)
        assert status.status.job_id == latest.id
        assert status.status.state == JobState.COMPLETED.value
        assert status.status.progress.processed_records == 4
        assert len(status.recent_jobs) == 2

    def test_log_filters_and_paging(self, manager, customers_mapping):
        manager.start_job(customers_mapping)
        everything = manager.get_logs(customers_mapping, page_size=100)
        warnings = manager.get_logs(customers_mapping, level="WARN")
        assert warnings.total == 1
        assert all(entry.level == "WARN" for entry in warnings.logs)

        found = manager.get_logs(customers_mapping, search="COMPLETED")
        assert found.total == 1

        first = manager.get_logs(customers_mapping, page=0, page_size=2)
        second = manager.get_logs(customers_mapping, page=1, page_size=2)
        assert first.total == everything.total
        assert [e.message for e in first.logs + second.logs] == [e.message for e in everything.logs[:4]]
        assert everything.logs[0].timestamp >= everything.logs[-1].timestamp

    def test_unknown_log_level(self, manager, customers_mapping):
        with pytest.raises(InvalidRequest):
            manager.get_logs(customers_mapping, level="LOUD")

    def test_progress(self, manager, customers_mapping):
        job = manager.start_job(customers_mapping)
        progress = manager.get_progress(job.id)
        assert progress.progress == 80
        assert progress.status == JobState.COMPLETED

    def test_recover_interrupted_jobs(self, deferred_manager, customers_mapping, settings, clock):
        job = deferred_manager.start_job(customers_mapping)
        restarted = IngestionJobManager(SessionLocal, settings, executor=deferred_manager.executor, clock=clock)
        assert restarted.recover_interrupted_jobs() == 1
        recovered = restarted.get_job(job.id)
        assert recovered.state == JobState.FAILED
        assert "restart" in recovered.error_message


class TestJobStateMachine:

    def test_terminal_states_cannot_move(self):
        job = IngestionJob(state=JobState.COMPLETED.value)
        with pytest.raises(InvalidStateTransition):
            job.transition_to(JobState.RUNNING, datetime(2024, 1, 1))

    def test_paused_job_cannot_complete(self):
        job = IngestionJob(state=JobState.PAUSED.value)
        with pytest.raises(InvalidStateTransition):
            job.transition_to(JobState.COMPLETED, datetime(2024, 1, 1))

    def test_start_time_set_once(self):
        job = IngestionJob(state=JobState.PENDING.value)
        job.transition_to(JobState.RUNNING, datetime(2024, 1, 1, 10))
        job.transition_to(JobState.PAUSED, datetime(2024, 1, 1, 11))
        job.transition_to(JobState.RUNNING, datetime(2024, 1, 1, 12))
        assert job.start_time == datetime(2024, 1, 1, 10)
        job.transition_to(JobState.COMPLETED, datetime(2024, 1, 1, 13))
        assert job.end_time == datetime(2024, 1, 1, 13)

    def test_closed_log(self):
        job = IngestionJob(state=JobState.FAILED.value)
        with pytest.raises(InvalidStateTransition):
            job.append_log("INFO", "late", datetime(2024, 1, 1))
