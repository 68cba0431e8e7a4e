"""
Preview and paging over a source, plus streaming CSV export of every matching row.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ingestion_engine.core.config import Settings
from ingestion_engine.core.metrics import PREVIEW_LATENCY
from ingestion_engine.schemas.connection import SourceDescriptor
from ingestion_engine.schemas.discovery import ColumnInfo
from ingestion_engine.services.coercion import format_for_file
from ingestion_engine.services.discovery import SchemaDiscoveryService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageRequest:
    """Zero-based page of a filtered, sorted view."""
    page: int = 0
    page_size: int = 10
    filters: Dict[str, str] = field(default_factory=dict)
    sort_field: Optional[str] = None
    descending: bool = False

    @property
    def offset(self) -> int:
        return self.page * self.page_size

    def resize(self, page_size: int) -> "PageRequest":
        """Changing the page size starts over at the first page."""
        return PageRequest(0, page_size, dict(self.filters), self.sort_field, self.descending)

    def with_filters(self, filters: Dict[str, str]) -> "PageRequest":
        return PageRequest(0, self.page_size, dict(filters), self.sort_field, self.descending)


@dataclass
class Page:
    rows: List[Dict[str, Any]]
    total: int


class PreviewService:
    """Read-only views over a source; never mutates or buffers more than one page."""

    def __init__(self, settings: Settings, discovery: Optional[SchemaDiscoveryService] = None):
        self.settings = settings
        self.discovery = discovery or SchemaDiscoveryService(settings)

    def page(
        self,
        source: SourceDescriptor,
        columns: Optional[Sequence[str]],
        request: PageRequest,
    ) -> Page:
        with PREVIEW_LATENCY.labels(operation="page").time():
            rows = self.discovery.open_source(source)
            data, total = rows.fetch_page(
                columns=columns,
                filters=request.filters,
                sort_field=request.sort_field,
                descending=request.descending,
                offset=request.offset,
                limit=request.page_size,
            )
        return Page(rows=data, total=total)

    def count(self, source: SourceDescriptor, filters: Optional[Dict[str, str]] = None) -> int:
        with PREVIEW_LATENCY.labels(operation="count").time():
            return self.discovery.open_source(source).count(filters)

    def preview_join(self, source: SourceDescriptor, limit: int) -> Tuple[List[Dict[str, Any]], List[ColumnInfo]]:
        """First ``limit`` rows of a composed source together with its composed schema."""
        with PREVIEW_LATENCY.labels(operation="join").time():
            rows = self.discovery.open_source(source)
            data, _ = rows.fetch_page(offset=0, limit=limit)
        return data, rows.composed.schema()

    def export_csv(
        self,
        source: SourceDescriptor,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Dict[str, str]] = None,
        delimiter: str = ",",
        sort_field: Optional[str] = None,
        descending: bool = False,
    ) -> Iterator[str]:
        """
        Stream every matching row as CSV text, one chunk per
        ``EXPORT_CHUNK_ROWS`` rows, in the same order the preview pages show.

        The source is resolved before the first chunk is produced, so schema
        and connection errors surface to the caller instead of mid-stream.
        """
        rows = self.discovery.open_source(source)
        names = rows.resolve_columns(columns, filters, sort_field)
        batches = rows.iter_batches(
            self.settings.EXPORT_CHUNK_ROWS,
            columns=names,
            filters=filters,
            sort_field=sort_field,
            descending=descending,
        )

        def generate() -> Iterator[str]:
            buffer = io.StringIO()
            writer = csv.writer(buffer, delimiter=delimiter)
            writer.writerow(names)
            yield buffer.getvalue()
            exported = 0
            for batch in batches:
                buffer.seek(0)
                buffer.truncate()
                for row in batch:
                    writer.writerow([format_for_file(row.get(name)) for name in names])
                exported += len(batch)
                yield buffer.getvalue()
            logger.info("Exported %d rows from %s", exported, source.table or "join")

        return generate()
