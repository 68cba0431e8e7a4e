"""
Row sources: uniform paged, filtered and streamed access to a composed source,
whether it lives in the database or in flat files.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from sqlalchemy import String, and_, cast, column, create_engine, func, select, table
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import DBAPIError, NoSuchTableError, SQLAlchemyError

from ingestion_engine.core.errors import InvalidRequest, SchemaNotFound, SourceUnreachable
from ingestion_engine.schemas.connection import ConnectionConfig, JoinKind
from ingestion_engine.services.flat_file import FlatFileReader
from ingestion_engine.services.join_composer import ComposedSource, JoinStep

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filters = Dict[str, str]

_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()

_MISSING_OBJECT_MARKERS = ("no such table", "no such column", "unknown_table", "unknown table",
                           "doesn't exist", "does not exist", "missing columns")


def connection_url(config: ConnectionConfig) -> Union[URL, str]:
    """SQLAlchemy URL for a database connection; ClickHouse over HTTP unless ``url`` is set."""
    if config.url:
        return config.url
    return URL.create(
        "clickhouse+http",
        username=config.user or None,
        password=config.password or None,
        host=config.host,
        port=config.port,
        database=config.database,
        query={"protocol": "https"} if config.secure else {},
    )


def get_source_engine(config: ConnectionConfig) -> Engine:
    """Engines are cached per URL and shared by discovery, preview and jobs."""
    url = connection_url(config)
    key = url if isinstance(url, str) else url.render_as_string(hide_password=False)
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            connect_args = {}
            if key.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            try:
                engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
            except (SQLAlchemyError, ImportError, ValueError) as e:
                raise SourceUnreachable(f"Cannot create a connection for {config.host}: {e}")
            _engines[key] = engine
    return engine


def dispose_engines() -> None:
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


def is_clickhouse(engine: Engine) -> bool:
    return engine.dialect.name == "clickhouse"


def translate_db_error(error: Exception, context: str) -> Exception:
    """Map a driver error onto the engine's error taxonomy."""
    text = str(error).lower()
    if isinstance(error, NoSuchTableError) or any(marker in text for marker in _MISSING_OBJECT_MARKERS):
        return SchemaNotFound(f"{context}: {error}")
    if isinstance(error, DBAPIError) and not error.connection_invalidated and error.statement:
        return InvalidRequest(f"{context}: {error.orig}")
    return SourceUnreachable(f"{context}: {error}")


@contextmanager
def db_errors(context: str):
    try:
        yield
    except SQLAlchemyError as e:
        raise translate_db_error(e, context) from e


def _filter_match(value: Any, needle: str) -> bool:
    if value is None:
        return False
    return needle.lower() in str(value).lower()


def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is None or value == "":
        return (2, "")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    try:
        return (0, float(value))
    except (TypeError, ValueError):
        return (1, str(value))


class RowSource:
    """Interface shared by database and file sources."""

    def __init__(self, composed: ComposedSource):
        self.composed = composed

    def _project(self, columns: Optional[Sequence[str]]) -> List[str]:
        if not columns:
            return self.composed.column_names
        unknown = [name for name in columns if self.composed.column(name) is None]
        if unknown:
            raise SchemaNotFound(f"Unknown column(s): {', '.join(unknown)}")
        return list(columns)

    def _check_filters(self, filters: Optional[Filters]) -> Filters:
        filters = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
        self._project(list(filters))
        return filters

    def resolve_columns(
        self,
        columns: Optional[Sequence[str]],
        filters: Optional[Filters] = None,
        sort_field: Optional[str] = None,
    ) -> List[str]:
        """Validate a projection, its filters and sort column; empty means every composed column."""
        self._check_filters(filters)
        if sort_field:
            self._project([sort_field])
        return self._project(columns)

    def count(self, filters: Optional[Filters] = None) -> int:
        raise NotImplementedError

    def fetch_page(
        self,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Filters] = None,
        sort_field: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Row], int]:
        """Return one page of rows and the size of the filtered set."""
        raise NotImplementedError

    def iter_batches(
        self,
        batch_size: int,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Filters] = None,
        sort_field: Optional[str] = None,
        descending: bool = False,
    ) -> Iterator[List[Row]]:
        """Stream every matching row, ``batch_size`` rows at a time; source order unless ``sort_field`` is given."""
        raise NotImplementedError


class DatabaseRowSource(RowSource):
    """Compiles the composed source to one SQL statement and pushes paging into it."""

    def __init__(self, engine: Engine, composed: ComposedSource):
        super().__init__(composed)
        self.engine = engine

    def _from_clause(self):
        aliased = {}
        for alias, ref in self.composed.tables.items():
            aliased[alias] = table(ref.table, *[column(name) for name in ref.column_names]).alias(alias)

        from_clause = aliased[self.composed.root]
        for step in self.composed.steps:
            from_clause = self._apply_step(from_clause, aliased, step)
        return from_clause, aliased

    @staticmethod
    def _apply_step(from_clause, aliased, step: JoinStep):
        new = aliased[step.alias]
        onclause = and_(*[
            aliased[existing].c[existing_col] == new.c[new_col]
            for existing, existing_col, new_col in step.on
        ])
        if step.kind == JoinKind.INNER:
            return from_clause.join(new, onclause)
        if step.kind == JoinKind.LEFT:
            return from_clause.outerjoin(new, onclause)
        if step.kind == JoinKind.RIGHT:
            # Expressed as a LEFT join with the sides swapped
            return new.outerjoin(from_clause, onclause)
        if step.kind == JoinKind.FULL:
            return from_clause.outerjoin(new, onclause, full=True)
        raise ValueError(f"Unhandled join kind: {step.kind}")

    def _base_subquery(self):
        from_clause, aliased = self._from_clause()
        selected = [
            aliased[col.alias].c[col.source_column].label(col.name)
            for col in self.composed.columns
        ]
        return select(*selected).select_from(from_clause).subquery("composed")

    @staticmethod
    def _where(base, filters: Filters):
        return [
            func.lower(cast(base.c[name], String)).contains(value.lower(), autoescape=True)
            for name, value in filters.items()
        ]

    def _query(self, columns, filters):
        names = self._project(columns)
        filters = self._check_filters(filters)
        base = self._base_subquery()
        query = select(*[base.c[name] for name in names])
        conditions = self._where(base, filters)
        if conditions:
            query = query.where(*conditions)
        return query, base, conditions

    def count(self, filters: Optional[Filters] = None) -> int:
        filters = self._check_filters(filters)
        base = self._base_subquery()
        query = select(func.count()).select_from(base)
        conditions = self._where(base, filters)
        if conditions:
            query = query.where(*conditions)
        with db_errors("Counting rows failed"), self.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def _order_by(self, base, sort_field: Optional[str], descending: bool) -> list:
        """Requested sort column first, then every composed column so ties page stably."""
        order = []
        if sort_field:
            self._project([sort_field])
            order.append(base.c[sort_field].desc() if descending else base.c[sort_field].asc())
        order.extend(base.c[name] for name in self.composed.column_names if name != sort_field)
        return order

    def fetch_page(self, columns=None, filters=None, sort_field=None, descending=False,
                   offset=0, limit=10):
        query, base, conditions = self._query(columns, filters)
        query = query.order_by(*self._order_by(base, sort_field, descending))
        query = query.limit(limit).offset(offset)

        count_query = select(func.count()).select_from(base)
        if conditions:
            count_query = count_query.where(*conditions)

        with db_errors("Preview query failed"), self.engine.connect() as conn:
            rows = [dict(r) for r in conn.execute(query).mappings()]
            total = int(conn.execute(count_query).scalar_one())
        return rows, total

    def iter_batches(self, batch_size, columns=None, filters=None, sort_field=None, descending=False):
        query, base, _ = self._query(columns, filters)
        if sort_field:
            query = query.order_by(*self._order_by(base, sort_field, descending))
        with db_errors("Reading source rows failed"), self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True, yield_per=batch_size).execute(query)
            for partition in result.mappings().partitions(batch_size):
                yield [dict(r) for r in partition]


class FileRowSource(RowSource):
    """
    Rows from one or more delimited files.

    Joins run as in-memory hash joins: every table after the first is indexed
    by its join key. Empty keys never match.
    """

    def __init__(self, composed: ComposedSource, readers: Dict[str, FlatFileReader], scan_limit: int):
        super().__init__(composed)
        self.readers = readers
        self.scan_limit = scan_limit

    def _index(self, step: JoinStep) -> Tuple[List[Row], Dict[Tuple, List[int]]]:
        rows = list(self.readers[step.alias].iter_rows())
        index: Dict[Tuple, List[int]] = {}
        for position, row in enumerate(rows):
            key = tuple(row.get(new_col) for _, _, new_col in step.on)
            if any(part in (None, "") for part in key):
                continue
            index.setdefault(key, []).append(position)
        return rows, index

    @staticmethod
    def _join_step(
        combined: Iterable[Dict[str, Optional[Row]]],
        step: JoinStep,
        rows: List[Row],
        index: Dict[Tuple, List[int]],
    ) -> Iterator[Dict[str, Optional[Row]]]:
        keep_existing = step.kind in (JoinKind.LEFT, JoinKind.FULL)
        keep_new = step.kind in (JoinKind.RIGHT, JoinKind.FULL)
        matched = set()
        existing_aliases: List[str] = []
        for current in combined:
            if not existing_aliases:
                existing_aliases = list(current)
            key = tuple(
                (current.get(existing) or {}).get(existing_col)
                for existing, existing_col, _ in step.on
            )
            positions = [] if any(part in (None, "") for part in key) else index.get(key, [])
            for position in positions:
                matched.add(position)
                yield {**current, step.alias: rows[position]}
            if not positions and keep_existing:
                yield {**current, step.alias: None}
        if keep_new:
            for position, row in enumerate(rows):
                if position not in matched:
                    blank = {alias: None for alias in existing_aliases}
                    yield {**blank, step.alias: row}

    def _iter_combined(self) -> Iterator[Dict[str, Optional[Row]]]:
        root = self.composed.root
        combined: Iterable[Dict[str, Optional[Row]]] = (
            {root: row} for row in self.readers[root].iter_rows()
        )
        for step in self.composed.steps:
            rows, index = self._index(step)
            combined = self._join_step(combined, step, rows, index)
        return iter(combined)

    def iter_rows(self) -> Iterator[Row]:
        for combined in self._iter_combined():
            row = {}
            for col in self.composed.columns:
                source = combined.get(col.alias)
                row[col.name] = source.get(col.source_column) if source is not None else None
            yield row

    def _matching(self, filters: Filters) -> Iterator[Row]:
        for row in self.iter_rows():
            if all(_filter_match(row.get(name), needle) for name, needle in filters.items()):
                yield row

    def count(self, filters: Optional[Filters] = None) -> int:
        filters = self._check_filters(filters)
        return sum(1 for _ in self._matching(filters))

    def fetch_page(self, columns=None, filters=None, sort_field=None, descending=False,
                   offset=0, limit=10):
        names = self._project(columns)
        filters = self._check_filters(filters)
        buffered = []
        for row in self._matching(filters):
            if len(buffered) >= self.scan_limit:
                break
            buffered.append(row)
        if sort_field:
            self._project([sort_field])
            buffered.sort(key=lambda r: _sort_key(r.get(sort_field)), reverse=descending)
        page = buffered[offset:offset + limit]
        return [{name: row.get(name) for name in names} for row in page], len(buffered)

    def iter_batches(self, batch_size, columns=None, filters=None, sort_field=None, descending=False):
        names = self._project(columns)
        filters = self._check_filters(filters)
        rows: Iterable[Row] = self._matching(filters)
        if sort_field:
            # Sorting needs the whole filtered set, not just the preview scan window
            self._project([sort_field])
            rows = sorted(rows, key=lambda r: _sort_key(r.get(sort_field)), reverse=descending)
        batch = []
        for row in rows:
            batch.append({name: row.get(name) for name in names})
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch
