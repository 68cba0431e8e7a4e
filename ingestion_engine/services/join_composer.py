"""
Join composition: validate a join set, plan it as a left-deep join and derive
the composed schema with nullability propagated through outer joins.
"""
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ingestion_engine.core.errors import IncompleteJoinGraph, InvalidJoinCondition, SchemaNotFound
from ingestion_engine.schemas.connection import JoinCondition, JoinKind
from ingestion_engine.schemas.discovery import ColumnInfo
from ingestion_engine.services.type_mapping import from_logical, to_logical

# Orientation of a kind when the condition is written with its sides swapped.
_MIRRORED = {
    JoinKind.INNER: JoinKind.INNER,
    JoinKind.LEFT: JoinKind.RIGHT,
    JoinKind.RIGHT: JoinKind.LEFT,
    JoinKind.FULL: JoinKind.FULL,
}


@dataclass(frozen=True)
class TableRef:
    """A table in a join set with its discovered schema."""
    alias: str
    table: str
    columns: Tuple[ColumnInfo, ...]
    selected: Optional[Tuple[str, ...]] = None

    def column(self, name: str) -> Optional[ColumnInfo]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def selected_columns(self) -> List[ColumnInfo]:
        if not self.selected:
            return list(self.columns)
        missing = [name for name in self.selected if self.column(name) is None]
        if missing:
            raise SchemaNotFound(
                f"Table '{self.table}' has no column(s): {', '.join(missing)}"
            )
        return [self.column(name) for name in self.selected]


@dataclass(frozen=True)
class ComposedColumn:
    """A column of the composed schema and where it comes from."""
    name: str
    alias: str
    source_column: str
    native_type: str
    logical_type: str
    nullable: bool

    def to_info(self) -> ColumnInfo:
        return ColumnInfo(
            name=self.name,
            type=self.native_type,
            logical_type=self.logical_type,
            nullable=self.nullable,
        )


@dataclass(frozen=True)
class JoinStep:
    """
    Joins ``alias`` onto the tables joined so far.

    ``kind`` is relative to the step: LEFT preserves the tables already
    joined, RIGHT preserves the new one. ``on`` holds
    ``(existing_alias, existing_column, new_column)`` equalities.
    """
    alias: str
    kind: JoinKind
    on: Tuple[Tuple[str, str, str], ...]


@dataclass
class ComposedSource:
    """Execution plan plus composed schema."""
    tables: Dict[str, TableRef]
    root: str
    steps: List[JoinStep] = field(default_factory=list)
    columns: List[ComposedColumn] = field(default_factory=list)

    @property
    def is_join(self) -> bool:
        return bool(self.steps)

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def column(self, name: str) -> Optional[ComposedColumn]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def schema(self) -> List[ColumnInfo]:
        return [col.to_info() for col in self.columns]

    @classmethod
    def single(cls, table: TableRef) -> "ComposedSource":
        columns = [
            _composed_column(table.alias, col, col.name, col.nullable)
            for col in table.selected_columns()
        ]
        return cls(tables={table.alias: table}, root=table.alias, columns=columns)


def _composed_column(alias: str, col: ColumnInfo, name: str, nullable: bool) -> ComposedColumn:
    native = col.type
    if nullable and not col.nullable:
        info = to_logical(col.type)
        native = from_logical(info.logical, nullable=True)
    return ComposedColumn(
        name=name,
        alias=alias,
        source_column=col.name,
        native_type=native,
        logical_type=col.logical_type,
        nullable=nullable,
    )


def _validate(tables: Sequence[TableRef], conditions: Sequence[JoinCondition]) -> Dict[str, TableRef]:
    by_alias: Dict[str, TableRef] = {}
    for table in tables:
        if table.alias in by_alias:
            raise InvalidJoinCondition(f"Duplicate table alias '{table.alias}'")
        by_alias[table.alias] = table

    pair_kinds: Dict[Tuple[str, str], JoinKind] = {}
    for cond in conditions:
        for alias, column in ((cond.left_alias, cond.left_column), (cond.right_alias, cond.right_column)):
            if alias not in by_alias:
                raise InvalidJoinCondition(f"Join condition references undeclared alias '{alias}'")
            if by_alias[alias].column(column) is None:
                raise InvalidJoinCondition(
                    f"Join condition references unknown column '{alias}.{column}'"
                )
        if cond.left_alias == cond.right_alias:
            raise InvalidJoinCondition(f"Self-join on alias '{cond.left_alias}' is not supported")

        # Normalize the pair so (a, b, LEFT) and (b, a, RIGHT) agree.
        if cond.left_alias < cond.right_alias:
            key, kind = (cond.left_alias, cond.right_alias), cond.kind
        else:
            key, kind = (cond.right_alias, cond.left_alias), _MIRRORED[cond.kind]
        existing = pair_kinds.setdefault(key, kind)
        if existing != kind:
            raise InvalidJoinCondition(
                f"Conflicting join kinds between '{key[0]}' and '{key[1]}': "
                f"{existing.value} and {kind.value}"
            )
    return by_alias


def _plan(tables: Sequence[TableRef], conditions: Sequence[JoinCondition]) -> List[JoinStep]:
    """Breadth-first from the first table; each step gathers all conditions to joined tables."""
    root = tables[0].alias
    adjacency: Dict[str, List[JoinCondition]] = {table.alias: [] for table in tables}
    for cond in conditions:
        adjacency[cond.left_alias].append(cond)
        adjacency[cond.right_alias].append(cond)

    joined = [root]
    steps: List[JoinStep] = []
    queue = deque([root])
    while queue:
        current = queue.popleft()
        neighbours = []
        for cond in adjacency[current]:
            other = cond.right_alias if cond.left_alias == current else cond.left_alias
            if other not in joined and other not in neighbours:
                neighbours.append(other)
        for new_alias in neighbours:
            on = []
            kinds = set()
            for cond in adjacency[new_alias]:
                if cond.left_alias in joined and cond.right_alias == new_alias:
                    on.append((cond.left_alias, cond.left_column, cond.right_column))
                    kinds.add(cond.kind)
                elif cond.right_alias in joined and cond.left_alias == new_alias:
                    on.append((cond.right_alias, cond.right_column, cond.left_column))
                    kinds.add(_MIRRORED[cond.kind])
            if len(kinds) > 1:
                raise InvalidJoinCondition(
                    f"Conflicting join kinds for '{new_alias}': "
                    f"{', '.join(sorted(k.value for k in kinds))}"
                )
            steps.append(JoinStep(alias=new_alias, kind=kinds.pop(), on=tuple(on)))
            joined.append(new_alias)
            queue.append(new_alias)

    unreached = [table.alias for table in tables if table.alias not in joined]
    if unreached:
        raise IncompleteJoinGraph(
            f"Tables not connected to '{root}' by any join condition: {', '.join(unreached)}"
        )
    return steps


def _optional_aliases(root: str, steps: Sequence[JoinStep]) -> Dict[str, bool]:
    optional = {root: False}
    for step in steps:
        through_optional = any(optional[existing] for existing, _, _ in step.on)
        if step.kind in (JoinKind.RIGHT, JoinKind.FULL):
            for alias in optional:
                optional[alias] = True
        if step.kind == JoinKind.RIGHT:
            optional[step.alias] = False
        else:
            optional[step.alias] = step.kind != JoinKind.INNER or through_optional
    return optional


def compose(tables: Sequence[TableRef], conditions: Sequence[JoinCondition]) -> ComposedSource:
    """
    Validate a join set and build its plan and composed schema.

    Raises:
        InvalidJoinCondition: undeclared alias, unknown column, self-join,
            duplicate alias or conflicting kinds for one pair of tables
        IncompleteJoinGraph: two or more tables that the conditions do not
            connect into one graph
    """
    if not tables:
        raise InvalidJoinCondition("A join needs at least one table")
    by_alias = _validate(tables, conditions)
    if len(tables) == 1:
        if conditions:
            raise InvalidJoinCondition("Join conditions given for a single table")
        return ComposedSource.single(tables[0])
    if not conditions:
        raise IncompleteJoinGraph(f"{len(tables)} tables declared but no join conditions given")

    root = tables[0].alias
    steps = _plan(tables, conditions)
    optional = _optional_aliases(root, steps)

    selected = {table.alias: table.selected_columns() for table in tables}
    name_counts = Counter(col.name for cols in selected.values() for col in cols)
    columns = []
    for table in tables:
        for col in selected[table.alias]:
            name = col.name if name_counts[col.name] == 1 else f"{table.alias}.{col.name}"
            nullable = col.nullable or optional[table.alias]
            columns.append(_composed_column(table.alias, col, name, nullable))

    return ComposedSource(tables=by_alias, root=root, steps=steps, columns=columns)
