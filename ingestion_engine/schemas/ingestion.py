"""
Ingestion job schemas: configuration, state vocabulary, status, logs and stats.
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from ingestion_engine.schemas.common import CamelModel


class JobState(str, Enum):
    """Lifecycle state of an ingestion job."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


class ErrorAction(str, Enum):
    """What a batch failure does to the job."""
    STOP = "STOP"
    CONTINUE = "CONTINUE"
    ALERT_ONLY = "ALERT_ONLY"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().upper().replace("-", "_").replace(" ", "_")
            if normalized == "ALERT":
                return cls.ALERT_ONLY
            if normalized in cls.__members__:
                return cls[normalized]
        return None


class LoggingLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "WARNING":
                return cls.WARN
            if normalized in cls.__members__:
                return cls[normalized]
        return None

    @property
    def rank(self) -> int:
        return ["DEBUG", "INFO", "WARN", "ERROR"].index(self.value)


COMPRESSION_LEVELS = {"low": 1, "medium": 6, "high": 9}


class CompressionSettings(CamelModel):
    enabled: bool = False
    level: int = Field(default=6, ge=1, le=9)

    @field_validator("level", mode="before")
    @classmethod
    def named_level(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().lower() in COMPRESSION_LEVELS:
            return COMPRESSION_LEVELS[v.strip().lower()]
        return v


class DeduplicationSettings(CamelModel):
    enabled: bool = False
    window_hours: float = Field(default=24, gt=0)


class IngestionConfig(CamelModel):
    """
    Per-mapping execution settings.

    The nested form is canonical. The flat form sent by the original client
    (``timeout``, ``compressionEnabled``, ``compressionLevel``,
    ``deduplicationEnabled``, ``deduplicationWindow``) is accepted too.
    """
    batch_size: int = Field(default=1000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    timeout_ms: int = Field(default=30000, gt=0)
    validate_data: bool = True
    skip_invalid_records: bool = True
    compression: CompressionSettings = Field(default_factory=CompressionSettings)
    deduplication: DeduplicationSettings = Field(default_factory=DeduplicationSettings)
    error_threshold: int = Field(default=100, ge=0)
    error_action: ErrorAction = ErrorAction.STOP
    logging_level: LoggingLevel = LoggingLevel.INFO

    @model_validator(mode="before")
    @classmethod
    def unflatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "timeout" in data and "timeoutMs" not in data and "timeout_ms" not in data:
            data["timeoutMs"] = data.pop("timeout")
        if "compressionEnabled" in data or "compressionLevel" in data:
            compression = dict(data.get("compression") or {})
            if "compressionEnabled" in data:
                compression["enabled"] = data.pop("compressionEnabled")
            if "compressionLevel" in data:
                compression["level"] = data.pop("compressionLevel")
            data["compression"] = compression
        if "deduplicationEnabled" in data or "deduplicationWindow" in data:
            deduplication = dict(data.get("deduplication") or {})
            if "deduplicationEnabled" in data:
                deduplication["enabled"] = data.pop("deduplicationEnabled")
            if "deduplicationWindow" in data:
                deduplication["windowHours"] = data.pop("deduplicationWindow")
            data["deduplication"] = deduplication
        return data

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class JobProgress(CamelModel):
    processed: int = 0
    total: Optional[int] = None
    errors: int = 0
    percentage: int = 0


class JobSummary(CamelModel):
    """Snapshot of one job as returned to polling clients."""
    id: UUID
    mapping_id: UUID
    state: JobState
    progress: JobProgress
    records_written: int = 0
    duplicates_skipped: int = 0
    retries: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None


class JobStartResponse(CamelModel):
    job_id: UUID
    state: JobState


class RecentJob(CamelModel):
    id: UUID
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    records_processed: int = 0
    status: JobState


class StatusProgress(CamelModel):
    percentage: int = 0
    processed_records: int = 0
    total_records: Optional[int] = None
    errors: int = 0


class StatusDetail(CamelModel):
    state: str
    job_id: Optional[UUID] = None
    progress: Optional[StatusProgress] = None
    error_message: Optional[str] = None
    last_updated: Optional[datetime] = None


class MappingStatusResponse(CamelModel):
    """Mapping-scoped status, polled by the client every few seconds."""
    status: StatusDetail
    recent_jobs: List[RecentJob] = Field(default_factory=list)


class ProgressResponse(CamelModel):
    """Job progress as polled by the one-shot import/export screen."""
    progress: int
    status: JobState
    error: Optional[str] = None


class LogEntry(CamelModel):
    timestamp: datetime
    level: str
    message: str
    job_id: Optional[UUID] = None


class LogPage(CamelModel):
    logs: List[LogEntry]
    total: int


class StatsResponse(CamelModel):
    total_records: int = 0
    success_rate: float = 0.0
    avg_processing_time: float = 0.0
    failed_records: int = 0
    throughput: float = 0.0
    last_successful_ingestion: Optional[datetime] = None
    last_failed_ingestion: Optional[datetime] = None
    recent_jobs: List[RecentJob] = Field(default_factory=list)
