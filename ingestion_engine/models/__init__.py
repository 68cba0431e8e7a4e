"""
SQLAlchemy models for the ingestion engine.
"""
from ingestion_engine.models.mapping import TableMapping
from ingestion_engine.models.ingestion_job import IngestionJob, IngestionJobLog


__all__ = [
    "TableMapping",
    "IngestionJob",
    "IngestionJobLog",
]
