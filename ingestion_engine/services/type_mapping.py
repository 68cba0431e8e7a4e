"""
Type mapping between the analytical database's native types and the
flat-file logical types.

Logical types form a closed set of variants. ``array`` carries an element
type and ``nullable`` wraps another logical type; the nullable wrapper only
appears nested inside arrays, since top-level nullability is reported
separately on ``TypeInfo``.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from sqlalchemy import types as sqltypes


class LogicalKind(str, Enum):
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    ARRAY = "array"
    NULLABLE = "nullable"


@dataclass(frozen=True)
class LogicalType:
    """A logical type variant; ``inner`` is set for ARRAY and NULLABLE only."""
    kind: LogicalKind
    inner: Optional["LogicalType"] = None

    def __post_init__(self):
        wrapper = self.kind in (LogicalKind.ARRAY, LogicalKind.NULLABLE)
        if wrapper and self.inner is None:
            raise ValueError(f"{self.kind.value} requires an inner type")
        if not wrapper and self.inner is not None:
            raise ValueError(f"{self.kind.value} does not take an inner type")

    @classmethod
    def scalar(cls, kind: LogicalKind) -> "LogicalType":
        return cls(kind)

    @classmethod
    def array(cls, element: "LogicalType") -> "LogicalType":
        return cls(LogicalKind.ARRAY, element)

    @classmethod
    def nullable(cls, wrapped: "LogicalType") -> "LogicalType":
        if wrapped.kind == LogicalKind.NULLABLE:
            return wrapped
        return cls(LogicalKind.NULLABLE, wrapped)

    @classmethod
    def parse(cls, text: str) -> "LogicalType":
        """Parse the textual form produced by ``str()``, e.g. ``array(nullable(integer))``."""
        text = text.strip().lower()
        match = _WRAPPER_RE.match(text)
        if match:
            name, inner = match.group(1), match.group(2)
            if name == LogicalKind.ARRAY.value:
                return cls.array(cls.parse(inner))
            if name == LogicalKind.NULLABLE.value:
                return cls.nullable(cls.parse(inner))
        try:
            kind = LogicalKind(text)
        except ValueError:
            raise ValueError(f"Unknown logical type: {text}")
        return cls(kind)

    def unwrap(self) -> Tuple["LogicalType", bool]:
        """Strip a nullable wrapper, returning the wrapped type and whether it was nullable."""
        if self.kind == LogicalKind.NULLABLE:
            return self.inner, True
        return self, False

    def __str__(self) -> str:
        if self.inner is not None:
            return f"{self.kind.value}({self.inner})"
        return self.kind.value


@dataclass(frozen=True)
class TypeInfo:
    """Result of translating a native type: logical type plus nullability."""
    logical: LogicalType
    nullable: bool = False

    @property
    def logical_type(self) -> str:
        return self.logical.kind.value

    @property
    def element(self) -> Optional[LogicalType]:
        if self.logical.kind == LogicalKind.ARRAY:
            return self.logical.inner
        return None


INTEGER = LogicalType(LogicalKind.INTEGER)
FLOAT = LogicalType(LogicalKind.FLOAT)
STRING = LogicalType(LogicalKind.STRING)
DATE = LogicalType(LogicalKind.DATE)
DATETIME = LogicalType(LogicalKind.DATETIME)
BOOLEAN = LogicalType(LogicalKind.BOOLEAN)

_WRAPPER_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_]*)\s*\((.*)\)\s*$", re.DOTALL)

# Base names only; parameters such as FixedString(16) or DateTime64(3, 'UTC')
# are stripped before lookup.
NATIVE_TO_LOGICAL: Dict[str, LogicalType] = {
    **{name: INTEGER for name in (
        "UInt8", "UInt16", "UInt32", "UInt64", "UInt128", "UInt256",
        "Int8", "Int16", "Int32", "Int64", "Int128", "Int256",
    )},
    **{name: FLOAT for name in (
        "Float32", "Float64", "Decimal", "Decimal32", "Decimal64", "Decimal128", "Decimal256",
    )},
    **{name: STRING for name in (
        "String", "FixedString", "UUID", "IPv4", "IPv6", "Enum", "Enum8", "Enum16",
    )},
    "Date": DATE,
    "Date32": DATE,
    "DateTime": DATETIME,
    "DateTime64": DATETIME,
    "Bool": BOOLEAN,
    "Boolean": BOOLEAN,
}

LOGICAL_TO_NATIVE: Dict[LogicalKind, str] = {
    LogicalKind.INTEGER: "Int64",
    LogicalKind.FLOAT: "Float64",
    LogicalKind.STRING: "String",
    LogicalKind.DATE: "Date",
    LogicalKind.DATETIME: "DateTime",
    LogicalKind.BOOLEAN: "Bool",
}


def _split_native(native_type: str) -> Tuple[str, Optional[str]]:
    """Split ``Name(args)`` into ``("Name", "args")``; bare names give ``(name, None)``."""
    match = _WRAPPER_RE.match(native_type)
    if match:
        return match.group(1), match.group(2)
    return native_type.strip(), None


def _element_logical(native_type: str) -> LogicalType:
    info = to_logical(native_type)
    if info.nullable:
        return LogicalType.nullable(info.logical)
    return info.logical


def to_logical(native_type: str) -> TypeInfo:
    """
    Translate a native column type into its logical type.

    ``Nullable(X)`` unwraps to X with ``nullable=True``; ``Array(X)`` becomes
    ``array`` with an element type derived recursively;
    ``LowCardinality(X)`` is transparent. Unknown types become ``string``.
    """
    name, args = _split_native(native_type or "")
    if name == "Nullable" and args is not None:
        inner = to_logical(args)
        return TypeInfo(inner.logical, nullable=True)
    if name == "LowCardinality" and args is not None:
        return to_logical(args)
    if name == "Array" and args is not None:
        return TypeInfo(LogicalType.array(_element_logical(args)), nullable=False)
    return TypeInfo(NATIVE_TO_LOGICAL.get(name, STRING), nullable=False)


def from_logical(logical: Union[LogicalType, LogicalKind, str], nullable: bool = False) -> str:
    """
    Translate a logical type back to a native type string.

    Arrays are never wrapped in ``Nullable``: the database rejects that, and an
    empty array already represents "no values".
    """
    if isinstance(logical, str) and not isinstance(logical, LogicalKind):
        logical = LogicalType.parse(logical)
    if isinstance(logical, LogicalKind):
        logical = LogicalType(logical)

    kind = logical.kind
    if kind == LogicalKind.NULLABLE:
        return from_logical(logical.inner, nullable=True)
    if kind == LogicalKind.ARRAY:
        return f"Array({from_logical(logical.inner)})"
    if kind in LOGICAL_TO_NATIVE:
        native = LOGICAL_TO_NATIVE[kind]
        return f"Nullable({native})" if nullable else native
    raise ValueError(f"Unhandled logical kind: {kind}")


def _compatible_logical(source: LogicalType, target: LogicalType) -> bool:
    source, _ = source.unwrap()
    target, _ = target.unwrap()
    if source.kind == LogicalKind.STRING:
        return True
    if source.kind == LogicalKind.ARRAY or target.kind == LogicalKind.ARRAY:
        if source.kind != target.kind:
            return False
        return _compatible_logical(source.inner, target.inner)
    if source.kind == target.kind:
        return True
    numeric = {LogicalKind.INTEGER, LogicalKind.FLOAT}
    return source.kind in numeric and target.kind in numeric


def compatible(source_native_type: str, target_native_type: str) -> bool:
    """
    Whether a column of ``source_native_type`` may be mapped onto
    ``target_native_type``.

    Identical logical types and integer/float pairs are compatible, and a
    string source is compatible with anything. Narrowing a string into e.g. an
    integer is checked per value at write time, not here.
    """
    return _compatible_logical(
        to_logical(source_native_type).logical,
        to_logical(target_native_type).logical,
    )


def native_type_for_sqlalchemy(sa_type: sqltypes.TypeEngine, nullable: bool = False) -> str:
    """Native type name for a column reflected from a non-ClickHouse backend."""
    if isinstance(sa_type, sqltypes.ARRAY):
        return f"Array({native_type_for_sqlalchemy(sa_type.item_type)})"
    if isinstance(sa_type, sqltypes.Boolean):
        native = "Bool"
    elif isinstance(sa_type, sqltypes.SmallInteger):
        native = "Int16"
    elif isinstance(sa_type, sqltypes.BigInteger):
        native = "Int64"
    elif isinstance(sa_type, sqltypes.Integer):
        native = "Int32"
    elif isinstance(sa_type, (sqltypes.Float, sqltypes.Numeric)):
        native = "Float64"
    elif isinstance(sa_type, sqltypes.DateTime):
        native = "DateTime"
    elif isinstance(sa_type, sqltypes.Date):
        native = "Date"
    else:
        native = "String"
    return f"Nullable({native})" if nullable else native


def sqlalchemy_type_for(logical: LogicalType) -> sqltypes.TypeEngine:
    """Generic SQLAlchemy type used when creating a target table on a non-ClickHouse backend."""
    logical, _ = logical.unwrap()
    kind = logical.kind
    if kind == LogicalKind.INTEGER:
        return sqltypes.BigInteger()
    if kind == LogicalKind.FLOAT:
        return sqltypes.Float()
    if kind == LogicalKind.STRING:
        return sqltypes.Text()
    if kind == LogicalKind.DATE:
        return sqltypes.Date()
    if kind == LogicalKind.DATETIME:
        return sqltypes.DateTime()
    if kind == LogicalKind.BOOLEAN:
        return sqltypes.Boolean()
    if kind == LogicalKind.ARRAY:
        return sqltypes.JSON()
    raise ValueError(f"Unhandled logical kind: {kind}")


def type_mapping_table() -> Dict[str, Dict[str, str]]:
    """Both translation tables, for clients that render type pickers."""
    return {
        "native_to_logical": {name: str(logical) for name, logical in NATIVE_TO_LOGICAL.items()},
        "logical_to_native": {kind.value: native for kind, native in LOGICAL_TO_NATIVE.items()},
    }
