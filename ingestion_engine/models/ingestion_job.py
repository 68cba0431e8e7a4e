"""
Ingestion job and job log models.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, ForeignKey, Integer, BigInteger, Text, JSON, Uuid, Index, func,
)
from sqlalchemy.orm import relationship, object_session

from ingestion_engine.core.errors import InvalidStateTransition
from ingestion_engine.db.base import Base
from ingestion_engine.schemas.ingestion import JobState

TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED, JobState.STOPPED}
ACTIVE_STATES = [state.value for state in JobState if state not in TERMINAL_STATES]

ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.FAILED, JobState.STOPPED},
    JobState.RUNNING: {JobState.PAUSED, JobState.COMPLETED, JobState.FAILED, JobState.STOPPED},
    JobState.PAUSED: {JobState.RUNNING, JobState.FAILED, JobState.STOPPED},
}


class IngestionJob(Base):
    """
    One execution of a mapping.

    Rows are created at start request and mutated only by the job's own
    execution path (plus the stop watchdog). They are kept after completion
    for status and statistics queries.
    """
    __tablename__ = "ingestion_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    mapping_id = Column(Uuid, ForeignKey("table_mappings.id", ondelete="CASCADE"), nullable=False)
    state = Column(String(20), nullable=False, default=JobState.PENDING.value)
    config = Column(JSON, nullable=False)
    processed = Column(BigInteger, nullable=False, default=0)
    total = Column(BigInteger, nullable=True)
    errors = Column(BigInteger, nullable=False, default=0)
    records_written = Column(BigInteger, nullable=False, default=0)
    duplicates_skipped = Column(BigInteger, nullable=False, default=0)
    retries = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    output_path = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    mapping = relationship("TableMapping", back_populates="jobs")
    logs = relationship(
        "IngestionJobLog",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="IngestionJobLog.id",
    )

    __table_args__ = (
        Index("idx_ingestion_jobs_mapping_state", "mapping_id", "state"),
    )

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.job_state in TERMINAL_STATES

    @property
    def percentage(self) -> int:
        if not self.total:
            return 0
        return round(100 * (self.processed or 0) / self.total)

    def transition_to(self, new_state: JobState, now: datetime) -> None:
        """Move to ``new_state`` or raise if the state machine forbids it."""
        current = self.job_state
        if new_state not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(
                f"Job {self.id} cannot move from {current.value} to {new_state.value}"
            )
        self.state = new_state.value
        if new_state == JobState.RUNNING and self.start_time is None:
            self.start_time = now
        if new_state in TERMINAL_STATES:
            self.end_time = now

    def append_log(self, level: str, message: str, now: datetime) -> "IngestionJobLog":
        if self.is_terminal:
            raise InvalidStateTransition(f"Job {self.id} is {self.state}; its log is closed")
        entry = IngestionJobLog(
            job_id=self.id,
            mapping_id=self.mapping_id,
            timestamp=now,
            level=level,
            message=message,
        )
        session = object_session(self)
        if session is not None:
            session.add(entry)
        return entry


class IngestionJobLog(Base):
    """Append-only log entry of a job; ``mapping_id`` is denormalized for mapping-scoped queries."""
    __tablename__ = "ingestion_job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Uuid, ForeignKey("ingestion_jobs.id", ondelete="CASCADE"), nullable=False)
    mapping_id = Column(Uuid, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    level = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)

    job = relationship("IngestionJob", back_populates="logs")

    __table_args__ = (
        Index("idx_ingestion_job_logs_mapping", "mapping_id", "timestamp"),
    )
