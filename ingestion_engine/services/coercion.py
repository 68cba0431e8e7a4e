"""
Value coercion from source values into a column's target type.
"""
import ast
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List

from dateutil import parser as date_parser

from ingestion_engine.core.errors import DataValidationError
from ingestion_engine.services.type_mapping import LogicalKind, LogicalType, TypeInfo

TRUE_VALUES = {"true", "t", "yes", "y", "1"}
FALSE_VALUES = {"false", "f", "no", "n", "0"}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _to_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if value != int(value):
            raise ValueError(f"{value} has a fractional part")
        return int(value)
    text = str(value).strip().replace(",", "")
    try:
        return int(text)
    except ValueError:
        number = float(text)
        if not number.is_integer():
            raise ValueError(f"{value} has a fractional part")
        return int(number)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    return float(str(value).strip().replace(",", ""))


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return date_parser.parse(str(value).strip())


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.parse(str(value).strip()).date()


def _to_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    text = str(value).strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        # ClickHouse renders arrays with single-quoted strings: ['a','b']
        parsed = ast.literal_eval(text)
    if not isinstance(parsed, (list, tuple)):
        raise ValueError(f"{value!r} is not an array")
    return list(parsed)


def _coerce_logical(value: Any, logical: LogicalType, nullable: bool) -> Any:
    logical, wrapped_nullable = logical.unwrap()
    nullable = nullable or wrapped_nullable
    if _is_empty(value) and not (logical.kind == LogicalKind.STRING and value == ""):
        if nullable:
            return None
        raise ValueError("null value for a non-nullable column")

    kind = logical.kind
    if kind == LogicalKind.INTEGER:
        return _to_integer(value)
    if kind == LogicalKind.FLOAT:
        return _to_float(value)
    if kind == LogicalKind.STRING:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value if isinstance(value, str) else str(value)
    if kind == LogicalKind.DATE:
        return _to_date(value)
    if kind == LogicalKind.DATETIME:
        return _to_datetime(value)
    if kind == LogicalKind.BOOLEAN:
        return _to_boolean(value)
    if kind == LogicalKind.ARRAY:
        return [_coerce_logical(item, logical.inner, False) for item in _to_list(value)]
    raise ValueError(f"Unhandled logical kind: {kind}")


def coerce_value(value: Any, target: TypeInfo, column: str, strict: bool = True) -> Any:
    """
    Convert ``value`` into the Python representation of ``target``.

    Empty strings count as null except for string targets. With
    ``strict=False`` (``validateData`` off) a value that cannot be converted
    is passed through unchanged and left for the target to accept or reject.
    """
    try:
        return _coerce_logical(value, target.logical, target.nullable)
    except (ValueError, TypeError, OverflowError, SyntaxError) as exc:
        if not strict:
            return value
        raise DataValidationError(
            f"Column '{column}': cannot convert {value!r} to "
            f"{'nullable ' if target.nullable else ''}{target.logical}: {exc}",
            column=column,
            value=value,
        )


def format_for_file(value: Any) -> str:
    """Render a coerced value as flat-file text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps([_json_safe(item) for item in value])
    return str(value)


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value
