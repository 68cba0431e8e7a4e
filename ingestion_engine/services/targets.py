"""
Target writers: a database table or a delimited file, optionally gzip-compressed.
"""
import csv
import gzip
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Column, MetaData, Table, insert, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ingestion_engine.core.errors import TargetWriteError
from ingestion_engine.services.coercion import format_for_file
from ingestion_engine.services.sources import is_clickhouse
from ingestion_engine.services.type_mapping import TypeInfo, sqlalchemy_type_for, to_logical

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetColumn:
    name: str
    native_type: str

    @property
    def type_info(self) -> TypeInfo:
        return to_logical(self.native_type)


class TargetWriter:
    """Receives mapped batches in source order. ``prepare`` runs once before the first write."""

    output_path: Optional[Path] = None

    def prepare(self) -> None:
        raise NotImplementedError

    def write(self, rows: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class DatabaseTargetWriter(TargetWriter):
    """
    Inserts into a table, creating it when missing.

    ClickHouse tables are created with their native column types on a
    MergeTree engine; other backends get the closest generic SQL types.
    """

    def __init__(self, engine: Engine, table_name: str, columns: Sequence[TargetColumn]):
        self.engine = engine
        self.table_name = table_name
        self.columns = list(columns)
        metadata = MetaData()
        self.table = Table(
            table_name,
            metadata,
            *[
                Column(col.name, sqlalchemy_type_for(col.type_info.logical), nullable=col.type_info.nullable)
                for col in self.columns
            ],
        )

    def _clickhouse_ddl(self) -> str:
        quote = self.engine.dialect.identifier_preparer.quote
        columns = ", ".join(f"{quote(col.name)} {col.native_type}" for col in self.columns)
        return (
            f"CREATE TABLE IF NOT EXISTS {quote(self.table_name)} ({columns}) "
            "ENGINE = MergeTree ORDER BY tuple()"
        )

    def prepare(self) -> None:
        try:
            if is_clickhouse(self.engine):
                with self.engine.begin() as conn:
                    conn.execute(text(self._clickhouse_ddl()))
            else:
                self.table.metadata.create_all(self.engine, checkfirst=True)
        except SQLAlchemyError as e:
            raise TargetWriteError(f"Cannot create target table '{self.table_name}': {e}") from e

    def write(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(self.table), rows)
        except SQLAlchemyError as e:
            raise TargetWriteError(f"Insert into '{self.table_name}' failed: {e}") from e


class FileTargetWriter(TargetWriter):
    """
    Writes a CSV file with a header record.

    With compression every batch is appended as its own gzip member; the
    concatenation is a valid gzip stream, so batches stay independent and a
    retried batch never rewrites earlier output.
    """

    def __init__(
        self,
        path: Path,
        columns: Sequence[TargetColumn],
        delimiter: str = ",",
        compression_level: Optional[int] = None,
    ):
        if compression_level is not None and path.suffix != ".gz":
            path = path.with_name(path.name + ".gz")
        self.output_path = path
        self.columns = list(columns)
        self.delimiter = delimiter
        self.compression_level = compression_level

    def _encode(self, records: List[List[str]]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=self.delimiter)
        writer.writerows(records)
        data = buffer.getvalue().encode("utf-8")
        if self.compression_level is not None:
            return gzip.compress(data, compresslevel=self.compression_level)
        return data

    def _append(self, data: bytes, mode: str = "ab") -> None:
        try:
            with open(self.output_path, mode) as f:
                f.write(data)
        except OSError as e:
            raise TargetWriteError(f"Cannot write {self.output_path.name}: {e}") from e

    def prepare(self) -> None:
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TargetWriteError(f"Cannot create export directory: {e}") from e
        self._append(self._encode([[col.name for col in self.columns]]), mode="wb")

    def write(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        records = [[format_for_file(row.get(col.name)) for col in self.columns] for row in rows]
        self._append(self._encode(records))
