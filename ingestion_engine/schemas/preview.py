"""
Schemas for previews, counts, joins and one-shot import/export requests.
"""
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, Field

from ingestion_engine.schemas.common import CamelModel
from ingestion_engine.schemas.connection import ConnectionConfig, SourceDescriptor
from ingestion_engine.schemas.ingestion import IngestionConfig
from ingestion_engine.schemas.mapping import ColumnMappingIn


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str) and value.strip().lower() in {"asc", "desc"}:
            return cls(value.strip().lower())
        return None


class PreviewRequest(SourceDescriptor):
    """Bounded, filtered, sorted page of a source."""
    columns: List[str] = Field(default_factory=list)
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=10, gt=0, le=1000)
    filters: Dict[str, str] = Field(default_factory=dict)
    sort_field: Optional[str] = None
    sort_direction: SortDirection = SortDirection.ASC


class PreviewResponse(CamelModel):
    data: List[Dict[str, Any]]
    total: int


class JoinPreviewRequest(SourceDescriptor):
    limit: int = Field(default=100, gt=0, le=1000)


class JoinPreviewResponse(CamelModel):
    data: List[Dict[str, Any]]
    columns: List[str] = Field(default_factory=list)


class ExportRequest(SourceDescriptor):
    """Database-to-file export started as a job."""
    selected_columns: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selectedColumns", "columns", "selected_columns"),
        serialization_alias="selectedColumns",
    )
    delimiter: Optional[str] = None
    output_name: Optional[str] = None
    ingestion_config: Optional[IngestionConfig] = None


class ImportConfig(CamelModel):
    """
    File-to-database import settings, sent as the ``config`` form field.

    ``connection_config`` and ``table`` name the target; ``column_mappings``
    default to an identity mapping over ``selected_columns`` (or every
    column of the file) with target types inferred from the file.
    """
    connection_config: ConnectionConfig = Field(default_factory=ConnectionConfig)
    table: str = Field(
        validation_alias=AliasChoices("table", "selectedTable", "tableName", "targetTable"),
        serialization_alias="table",
    )
    delimiter: str = ","
    has_header: bool = True
    selected_columns: List[str] = Field(default_factory=list)
    column_mappings: List[ColumnMappingIn] = Field(default_factory=list)
    ingestion_config: Optional[IngestionConfig] = None


class JobCreatedResponse(CamelModel):
    job_id: UUID
    mapping_id: UUID
