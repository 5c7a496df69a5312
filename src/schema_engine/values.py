"""Value Model - the structured data that schemas describe and validate.

Values are plain Python data: ``None``, ``bool``, ``int``/``float``, ``str``,
``list`` and ``dict`` with string keys (insertion ordered). The helpers here
classify, check, copy and navigate them; nothing in the engine mutates a value
it was handed.
"""

import copy
import math
from enum import Enum
from typing import Any


class ValueKind(str, Enum):
    """Tags of the value union."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    STRUCT = "struct"


_MISSING = object()


def kind_of(value: Any) -> ValueKind:
    """Return the tag of a value.

    Raises:
        TypeError: If the object is not representable as a Value
    """
    if value is None:
        return ValueKind.NULL
    # bool is an int subclass, test it first
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.LIST
    if isinstance(value, dict):
        return ValueKind.STRUCT
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def ensure_value(value: Any, path: str = "") -> Any:
    """Check that an object is a well-formed Value and return a private copy.

    Tuples become lists. Struct keys must be strings and numbers must be finite.

    Raises:
        ValueError: If the object (or anything nested in it) is not a Value
    """
    try:
        kind = kind_of(value)
    except TypeError as e:
        raise ValueError(f"{path or '$'}: {e}") from e

    if kind == ValueKind.NUMBER and isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{path or '$'}: numbers must be finite")
    if kind == ValueKind.LIST:
        return [ensure_value(item, format_path(path, index)) for index, item in enumerate(value)]
    if kind == ValueKind.STRUCT:
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path or '$'}: struct keys must be strings, got {key!r}")
            result[key] = ensure_value(item, format_path(path, key))
        return result
    return value


def copy_value(value: Any) -> Any:
    """Deep copy a value."""
    return copy.deepcopy(value)


def values_equal(left: Any, right: Any) -> bool:
    """Compare two values, keeping ``True`` distinct from ``1``."""
    left_kind = kind_of(left)
    if left_kind != kind_of(right):
        return False
    if left_kind == ValueKind.LIST:
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right)
        )
    if left_kind == ValueKind.STRUCT:
        return left.keys() == right.keys() and all(
            values_equal(left[key], right[key]) for key in left
        )
    return left == right


def split_path(path: str) -> list[str | int]:
    """Split a path such as ``lines[0].amount`` into its segments."""
    segments: list[str | int] = []
    for part in path.split("."):
        if not part:
            continue
        name, _, rest = part.partition("[")
        if name:
            segments.append(name)
        while rest:
            index, _, rest = rest.partition("]")
            segments.append(int(index))
            rest = rest.lstrip("[")
    return segments


def format_path(parent: str, segment: str | int) -> str:
    """Append a field name or list index to a path."""
    if isinstance(segment, int):
        return f"{parent}[{segment}]"
    return f"{parent}.{segment}" if parent else segment


def path_lookup(value: Any, path: str | list[str | int], default: Any = None) -> Any:
    """Follow a path into a value.

    Returns ``default`` when any segment is absent. A present ``null`` is
    returned as ``None``; use :func:`has_path` to tell the two apart.
    """
    found = _lookup(value, path)
    return default if found is _MISSING else found


def has_path(value: Any, path: str | list[str | int]) -> bool:
    """Whether every segment of the path is present in the value."""
    return _lookup(value, path) is not _MISSING


def _lookup(value: Any, path: str | list[str | int]) -> Any:
    segments = split_path(path) if isinstance(path, str) else path
    current = value
    for segment in segments:
        if isinstance(segment, int):
            if not isinstance(current, list) or not 0 <= segment < len(current):
                return _MISSING
            current = current[segment]
        else:
            if not isinstance(current, dict) or segment not in current:
                return _MISSING
            current = current[segment]
    return current
