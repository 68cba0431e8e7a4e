"""
Connection and source descriptor schemas.
"""
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, ConfigDict, Field, model_validator

from ingestion_engine.schemas.common import CamelModel


class SourceKind(str, Enum):
    """Kind of system on one side of an ingestion."""
    DATABASE = "DATABASE"
    FLATFILE = "FLATFILE"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "").replace("-", "")
            if normalized in {"database", "clickhouse", "db"}:
                return cls.DATABASE
            if normalized in {"flatfile", "file", "csv"}:
                return cls.FLATFILE
        return None


class ConnectionConfig(CamelModel):
    """
    How to reach a source or target.

    Database connections default to the ClickHouse HTTP interface; ``url``
    overrides the generated SQLAlchemy URL entirely. File connections carry a
    ``file_ref`` (a stored upload or export name) plus CSV dialect options.
    Instances are frozen: a job always reads the copy stored on its mapping.
    """
    model_config = CamelModel.model_config | ConfigDict(frozen=True)

    source_kind: Optional[SourceKind] = None
    host: str = "localhost"
    port: int = 8123
    database: str = "default"
    user: str = "default"
    password: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("password", "jwtToken", "jwt_token"),
        serialization_alias="password",
    )
    secure: bool = Field(
        default=False,
        validation_alias=AliasChoices("secure", "useSsl", "use_ssl"),
        serialization_alias="secure",
    )
    url: Optional[str] = None
    file_ref: Optional[str] = None
    delimiter: str = ","
    has_header: bool = True
    encoding: Optional[str] = None


class JoinKind(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            normalized = value.strip().upper().replace(" OUTER", "").replace(" JOIN", "")
            if normalized in cls.__members__:
                return cls[normalized]
        return None


class JoinCondition(CamelModel):
    """Equality predicate between two aliased tables of a join set."""
    model_config = CamelModel.model_config | ConfigDict(frozen=True)

    left_alias: str = Field(
        validation_alias=AliasChoices("leftAlias", "leftTable", "left_alias"),
        serialization_alias="leftAlias",
    )
    left_column: str
    right_alias: str = Field(
        validation_alias=AliasChoices("rightAlias", "rightTable", "right_alias"),
        serialization_alias="rightAlias",
    )
    right_column: str
    kind: JoinKind = Field(
        default=JoinKind.INNER,
        validation_alias=AliasChoices("kind", "type"),
        serialization_alias="kind",
    )


class TableSelection(CamelModel):
    """A table taking part in a join set, optionally renamed by ``alias``."""
    table: str
    alias: Optional[str] = None
    columns: List[str] = Field(default_factory=list)

    @property
    def effective_alias(self) -> str:
        return self.alias or self.table


_CONNECTION_KEYS = {
    "host", "port", "database", "user", "password", "jwtToken", "url", "secure",
    "useSsl", "fileRef", "file_ref", "delimiter", "hasHeader", "has_header", "encoding",
}


class SourceDescriptor(CamelModel):
    """
    Identifies the rows on one side of an ingestion.

    A single ``table`` (for files: a file reference), or ``tables`` plus
    ``join_conditions`` for a composed source. Clients may send connection
    fields flat at the top level; they are folded into ``connection_config``.
    """
    source_type: SourceKind = Field(
        validation_alias=AliasChoices("sourceType", "sourceKind", "source_type"),
        serialization_alias="sourceType",
    )
    connection_config: ConnectionConfig = Field(default_factory=ConnectionConfig)
    table: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("table", "selectedTable", "tableName"),
        serialization_alias="table",
    )
    tables: List[TableSelection] = Field(default_factory=list)
    join_conditions: List[JoinCondition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def fold_connection_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "connectionConfig" in data or "connection_config" in data:
            return data
        folded = {key: value for key, value in data.items() if key in _CONNECTION_KEYS}
        if not folded:
            return data
        remaining = {key: value for key, value in data.items() if key not in _CONNECTION_KEYS}
        remaining["connectionConfig"] = folded
        return remaining

    @property
    def is_join(self) -> bool:
        return len(self.tables) > 1

    def file_refs(self) -> List[str]:
        """File references named by this descriptor, in declaration order."""
        if self.tables:
            return [selection.table for selection in self.tables]
        ref = self.table or self.connection_config.file_ref
        return [ref] if ref else []
