"""
Error taxonomy for the ingestion engine.

Every error that reaches the API layer carries a ``kind`` (a stable,
machine-readable name) and a human-readable message. The HTTP status used for
immediate request failures is attached to the class.
"""
from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for all engine errors."""

    kind = "IngestionError"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class SourceConnectionError(IngestionError):
    """Source unreachable or authentication rejected. Never retried automatically."""

    kind = "ConnectionError"
    http_status = 502


class SourceUnreachable(SourceConnectionError):
    pass


class SchemaError(IngestionError):
    """Table, file or column not found."""

    kind = "SchemaError"
    http_status = 404


class SchemaNotFound(SchemaError):
    pass


class InvalidJoinCondition(IngestionError):
    kind = "InvalidJoinCondition"
    http_status = 400


class IncompleteJoinGraph(IngestionError):
    kind = "IncompleteJoinGraph"
    http_status = 400


class DataValidationError(IngestionError):
    """A single value is not representable in its target type."""

    kind = "ValidationError"
    http_status = 422

    def __init__(self, message: str, column: Optional[str] = None, value: Any = None):
        super().__init__(message, details={"column": column} if column else None)
        self.column = column
        self.value = value


class TargetWriteError(IngestionError):
    """Writing a batch to the target failed. Retried per ``maxRetries``."""

    kind = "TargetWriteError"
    http_status = 502


class WriteTimeout(TargetWriteError):
    """A batch write exceeded ``timeoutMs``; retryable like any write error."""


class OperationTimeout(IngestionError):
    """A discovery or preview operation exceeded its time budget."""

    kind = "Timeout"
    http_status = 504


class JobAlreadyRunning(IngestionError):
    kind = "JobAlreadyRunning"
    http_status = 409


class InvalidStateTransition(IngestionError):
    kind = "InvalidStateTransition"
    http_status = 409


class IncompatibleMapping(IngestionError):
    """A column mapping fails the schema-compatibility gate."""

    kind = "IncompatibleMapping"
    http_status = 400


class InvalidRequest(IngestionError):
    kind = "InvalidRequest"
    http_status = 400


class MappingNotFound(IngestionError):
    kind = "MappingNotFound"
    http_status = 404


class JobNotFound(IngestionError):
    kind = "JobNotFound"
    http_status = 404
