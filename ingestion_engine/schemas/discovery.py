"""
Schemas for schema discovery, table listing and column information.
"""
from typing import Any, List

from pydantic import Field, model_validator

from ingestion_engine.schemas.common import CamelModel
from ingestion_engine.schemas.connection import ConnectionConfig


class ColumnInfo(CamelModel):
    """A discovered column: native type string plus its logical type."""
    name: str
    type: str = Field(description="Native type in the analytical database's type system")
    logical_type: str = Field(description="Flat-file logical type (integer, float, string, ...)")
    nullable: bool = False


class SchemaResponse(CamelModel):
    columns: List[ColumnInfo]


class TableInfo(CamelModel):
    name: str


class TypeMappingTable(CamelModel):
    """The native-to-logical and logical-to-native tables."""
    native_to_logical: dict
    logical_to_native: dict


class ConnectRequest(CamelModel):
    """Connection to test and list tables for; flat connection fields are accepted too."""
    connection_config: ConnectionConfig

    @model_validator(mode="before")
    @classmethod
    def accept_flat(cls, data: Any) -> Any:
        if isinstance(data, dict) and "connectionConfig" not in data and "connection_config" not in data:
            return {"connectionConfig": data}
        return data


class FileUploadResponse(CamelModel):
    file_ref: str
    columns: List[ColumnInfo]
