"""Schema conformance and lossless coercion of parsed values."""

from __future__ import annotations

import datetime
import math
import re
from typing import Any, Mapping

from aifunc.errors import ConformanceError
from aifunc.schema import SchemaKind, SchemaNode

# Field name of the single-field wrapper requested for non-object returns.
CARRIER_FIELD = "returnData"

_INT_RE = re.compile(r"[-+]?\d+")
_FLOAT_RE = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_TRUE_WORDS = frozenset({"true", "yes"})
_FALSE_WORDS = frozenset({"false", "no"})


def uses_carrier(schema: SchemaNode) -> bool:
    """Whether the model is asked to wrap the value as ``{"returnData": ...}``."""
    return schema.kind is not SchemaKind.OBJECT


def coerce(value: Any, schema: SchemaNode, *, carrier: bool = False) -> Any:
    """Return ``value`` checked and losslessly coerced against ``schema``.

    With ``carrier=True`` a ``{"returnData": x}`` wrapper is unwrapped first;
    a bare value that already conforms is accepted as well.

    Raises:
        ConformanceError: On the first mismatch, with its path.
    """
    if carrier and isinstance(value, Mapping) and CARRIER_FIELD in value:
        try:
            return _coerce(value[CARRIER_FIELD], schema, "$")
        except ConformanceError:
            if len(value) == 1:
                raise
    return _coerce(value, schema, "$")


def _coerce(value: Any, node: SchemaNode, path: str) -> Any:
    if value is None:
        if node.optional:
            return None
        raise ConformanceError("value is required", path)

    kind = node.kind
    if kind is SchemaKind.STRING:
        return _coerce_string(value, path)
    if kind is SchemaKind.NUMBER:
        return _coerce_number(value, path)
    if kind is SchemaKind.BOOLEAN:
        return _coerce_boolean(value, path)
    if kind is SchemaKind.DATE:
        return _coerce_date(value, path)
    if kind is SchemaKind.ARRAY:
        return _coerce_array(value, node, path)
    if kind is SchemaKind.OBJECT:
        return _coerce_object(value, node, path)
    if kind is SchemaKind.UNION:
        return _coerce_union(value, node, path)
    raise AssertionError(f"unhandled schema kind {kind!r}")


def _type_name(value: Any) -> str:
    return type(value).__name__


def _coerce_string(value: Any, path: str) -> str:
    if isinstance(value, str):
        return value
    # YAML turns bare ISO dates into date objects
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    raise ConformanceError(f"expected string, got {_type_name(value)}", path)


def _coerce_number(value: Any, path: str) -> int | float:
    if isinstance(value, bool):
        raise ConformanceError("expected number, got bool", path)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ConformanceError(f"expected a finite number, got {value!r}", path)
        return value
    if isinstance(value, str):
        text = value.strip()
        if _INT_RE.fullmatch(text):
            return int(text)
        if _FLOAT_RE.fullmatch(text):
            number = float(text)
            if math.isfinite(number):
                return number
        raise ConformanceError(f"expected number, got non-numeric string {value!r}", path)
    raise ConformanceError(f"expected number, got {_type_name(value)}", path)


def _coerce_boolean(value: Any, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ConformanceError(f"expected boolean, got string {value!r}", path)
    raise ConformanceError(f"expected boolean, got {_type_name(value)}", path)


def _coerce_date(value: Any, path: str) -> str:
    """Dates stay ISO-8601 strings; date objects are rendered back to ISO form."""
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        for parse in (datetime.date.fromisoformat, datetime.datetime.fromisoformat):
            try:
                parse(text)
            except ValueError:
                continue
            return text
        raise ConformanceError(f"expected ISO-8601 date, got {value!r}", path)
    raise ConformanceError(f"expected date, got {_type_name(value)}", path)


def _coerce_array(value: Any, node: SchemaNode, path: str) -> list[Any]:
    if not isinstance(value, (list, tuple)):
        raise ConformanceError(f"expected array, got {_type_name(value)}", path)
    assert node.items is not None
    return [_coerce(item, node.items, f"{path}[{index}]") for index, item in enumerate(value)]


def _coerce_object(value: Any, node: SchemaNode, path: str) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ConformanceError(f"expected object, got {_type_name(value)}", path)
    result: dict[str, Any] = {}
    for name, child in node.fields.items():
        child_path = f"{path}.{name}"
        if name not in value:
            if child.optional:
                continue
            raise ConformanceError("missing required field", child_path)
        result[name] = _coerce(value[name], child, child_path)
    extras = [key for key in value if key not in node.fields]
    if extras and not node.allow_extra:
        raise ConformanceError(f"unexpected fields {sorted(map(str, extras))}", path)
    for key in extras:
        result[key] = value[key]
    return result


def _coerce_union(value: Any, node: SchemaNode, path: str) -> Any:
    errors: list[str] = []
    for option in node.options:
        try:
            return _coerce(value, option, path)
        except ConformanceError as exc:
            errors.append(str(exc))
    raise ConformanceError(
        f"no union alternative matched {_type_name(value)} ({'; '.join(errors)})", path
    )
