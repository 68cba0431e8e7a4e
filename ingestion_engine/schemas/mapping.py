"""
Mapping registry schemas.
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import AliasChoices, Field, field_validator

from ingestion_engine.schemas.common import CamelModel
from ingestion_engine.schemas.connection import SourceDescriptor
from ingestion_engine.schemas.ingestion import IngestionConfig


class ColumnMappingIn(CamelModel):
    """Rename plus coercion of one source column into one target column."""
    source_column: str
    target_column: str
    target_type: str = Field(
        default="String",
        validation_alias=AliasChoices("targetType", "dataType", "target_type"),
        serialization_alias="targetType",
    )
    source_type: Optional[str] = None
    transformation: Optional[str] = None


class MappingCreate(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    source: SourceDescriptor
    target: SourceDescriptor
    mappings: List[ColumnMappingIn] = Field(
        validation_alias=AliasChoices("mappings", "columnMappings"),
        serialization_alias="mappings",
    )
    config: IngestionConfig = Field(default_factory=IngestionConfig)

    @field_validator("mappings")
    @classmethod
    def at_least_one(cls, v: List[ColumnMappingIn]) -> List[ColumnMappingIn]:
        if not v:
            raise ValueError("At least one column mapping is required")
        return v


class MappingUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    source: Optional[SourceDescriptor] = None
    target: Optional[SourceDescriptor] = None
    mappings: Optional[List[ColumnMappingIn]] = Field(
        default=None,
        validation_alias=AliasChoices("mappings", "columnMappings"),
        serialization_alias="mappings",
    )
    config: Optional[IngestionConfig] = None


class MappingOut(CamelModel):
    id: UUID
    name: str
    source: SourceDescriptor
    target: SourceDescriptor
    mappings: List[ColumnMappingIn]
    config: IngestionConfig
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
