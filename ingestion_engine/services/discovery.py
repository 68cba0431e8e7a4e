"""
Schema discovery for database tables and flat files, and resolution of source
descriptors into readable row sources.
"""
import logging
from typing import List

from sqlalchemy import inspect, text
from sqlalchemy.exc import NoSuchTableError

from ingestion_engine.core.config import Settings
from ingestion_engine.core.errors import InvalidRequest, SchemaNotFound
from ingestion_engine.schemas.connection import ConnectionConfig, SourceDescriptor, SourceKind, TableSelection
from ingestion_engine.schemas.discovery import ColumnInfo
from ingestion_engine.services.flat_file import FlatFileReader, resolve_file_ref
from ingestion_engine.services.join_composer import ComposedSource, TableRef, compose
from ingestion_engine.services.sources import (
    DatabaseRowSource,
    FileRowSource,
    RowSource,
    db_errors,
    get_source_engine,
    is_clickhouse,
)
from ingestion_engine.services.type_mapping import native_type_for_sqlalchemy, to_logical

logger = logging.getLogger(__name__)

CLICKHOUSE_COLUMNS_SQL = text(
    "SELECT name, type FROM system.columns "
    "WHERE database = currentDatabase() AND table = :table "
    "ORDER BY position"
)
CLICKHOUSE_TABLES_SQL = text(
    "SELECT name FROM system.tables WHERE database = currentDatabase() ORDER BY name"
)


def column_info(name: str, native_type: str) -> ColumnInfo:
    info = to_logical(native_type)
    return ColumnInfo(name=name, type=native_type, logical_type=info.logical_type, nullable=info.nullable)


class SchemaDiscoveryService:
    """
    Discovers columns of database tables and flat files.

    File discovery reads only the header and a bounded sample; database
    discovery asks the catalog and never scans table data.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def test_connection(self, connection: ConnectionConfig) -> None:
        """Open and close one connection, raising SourceUnreachable on failure."""
        engine = get_source_engine(connection)
        with db_errors(f"Cannot connect to {connection.host}:{connection.port}"), engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def list_tables(self, connection: ConnectionConfig) -> List[str]:
        engine = get_source_engine(connection)
        with db_errors(f"Cannot list tables on {connection.host}"):
            if is_clickhouse(engine):
                with engine.connect() as conn:
                    return [row[0] for row in conn.execute(CLICKHOUSE_TABLES_SQL)]
            return sorted(inspect(engine).get_table_names())

    def discover_table(self, connection: ConnectionConfig, table: str) -> List[ColumnInfo]:
        """Columns of a database table in declaration order."""
        if not table:
            raise InvalidRequest("A table name is required")
        engine = get_source_engine(connection)
        with db_errors(f"Cannot read schema of '{table}'"):
            if is_clickhouse(engine):
                with engine.connect() as conn:
                    rows = conn.execute(CLICKHOUSE_COLUMNS_SQL, {"table": table}).all()
                columns = [column_info(name, native) for name, native in rows]
            else:
                try:
                    reflected = inspect(engine).get_columns(table)
                except NoSuchTableError:
                    raise SchemaNotFound(f"Table not found: {table}")
                columns = [
                    column_info(col["name"], native_type_for_sqlalchemy(col["type"], col.get("nullable", True)))
                    for col in reflected
                ]
        if not columns:
            raise SchemaNotFound(f"Table not found: {table}")
        return columns

    def file_reader(self, connection: ConnectionConfig, file_ref: str) -> FlatFileReader:
        path = resolve_file_ref(file_ref, self.settings)
        return FlatFileReader(
            path,
            delimiter=connection.delimiter,
            has_header=connection.has_header,
            encoding=connection.encoding,
        )

    def discover_file(self, connection: ConnectionConfig, file_ref: str) -> List[ColumnInfo]:
        reader = self.file_reader(connection, file_ref)
        return reader.infer_columns(self.settings.DISCOVERY_SAMPLE_ROWS)

    def discover(self, descriptor: SourceDescriptor, table: str) -> List[ColumnInfo]:
        if descriptor.source_type == SourceKind.FLATFILE:
            return self.discover_file(descriptor.connection_config, table)
        return self.discover_table(descriptor.connection_config, table)

    def _selections(self, descriptor: SourceDescriptor) -> List[TableSelection]:
        if descriptor.tables:
            return descriptor.tables
        name = descriptor.table
        if not name and descriptor.source_type == SourceKind.FLATFILE:
            name = descriptor.connection_config.file_ref
        if not name:
            raise InvalidRequest("Source names no table or file")
        return [TableSelection(table=name)]

    def compose(self, descriptor: SourceDescriptor) -> ComposedSource:
        """Discover every table of a descriptor and compose them."""
        refs = []
        for selection in self._selections(descriptor):
            columns = self.discover(descriptor, selection.table)
            refs.append(TableRef(
                alias=selection.effective_alias,
                table=selection.table,
                columns=tuple(columns),
                selected=tuple(selection.columns) or None,
            ))
        return compose(refs, descriptor.join_conditions)

    def open_source(self, descriptor: SourceDescriptor) -> RowSource:
        composed = self.compose(descriptor)
        connection = descriptor.connection_config
        if descriptor.source_type == SourceKind.FLATFILE:
            readers = {
                alias: self.file_reader(connection, ref.table)
                for alias, ref in composed.tables.items()
            }
            return FileRowSource(composed, readers, self.settings.PREVIEW_SCAN_LIMIT)
        return DatabaseRowSource(get_source_engine(connection), composed)
