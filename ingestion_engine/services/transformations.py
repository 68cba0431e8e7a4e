"""
Named column transformations applied before type coercion.

A column mapping may name one transformation; unknown names are rejected when
the mapping is saved, so lookups at run time never fail.
"""
import re
from typing import Any, Callable, Dict, List, Optional

Transformation = Callable[[Any], Any]

_NON_DIGITS = re.compile(r"\D+")


def _strings_only(fn: Callable[[str], Any]) -> Transformation:
    def apply(value: Any) -> Any:
        if isinstance(value, str):
            return fn(value)
        return value
    apply.__name__ = fn.__name__
    return apply


TRANSFORMATIONS: Dict[str, Transformation] = {
    "trim": _strings_only(str.strip),
    "upper": _strings_only(str.upper),
    "lower": _strings_only(str.lower),
    "null_if_empty": _strings_only(lambda v: None if v.strip() == "" else v),
    "digits_only": _strings_only(lambda v: _NON_DIGITS.sub("", v)),
}


def available_transformations() -> List[str]:
    return sorted(TRANSFORMATIONS)


def is_known(name: Optional[str]) -> bool:
    return not name or name in TRANSFORMATIONS


def apply_transformation(name: Optional[str], value: Any) -> Any:
    if not name:
        return value
    return TRANSFORMATIONS[name](value)
