"""Normalize caller arguments and render them for the prompt."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)

START_SENTINEL_KEY = "start"
SCALAR_KEY = "s"

_NUMERIC_RE = re.compile(r"\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?\s*")
_NEWLINES_RE = re.compile(r"\r\n|\r|\n")

# inferred name -> name used in the prompt's Python signature
_SIGNATURE_TYPES = {
    "list": "list",
    "dict": "dict",
    "str": "str",
    "int": "int",
    "float": "float",
    "bool": "bool",
    "unknown": "Any",
}


@dataclass(frozen=True, slots=True)
class NormalizedArguments:
    values: dict[str, Any]
    args_string: str
    signature: str


def positional_key(index: int) -> str:
    """``0 -> 'a'``, ``25 -> 'z'``, ``26 -> 'aa'`` (spreadsheet-style, always unique)."""
    if index < 0:
        raise ValueError("index must be non-negative")
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(97 + remainder) + letters
    return letters


def to_mapping(raw: Any, *, empty_sentinel: bool = True) -> dict[str, Any]:
    """Canonical keyed mapping for ``raw`` arguments, input order preserved."""
    if raw is None:
        return {START_SENTINEL_KEY: True} if empty_sentinel else {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (list, tuple)):
        return {positional_key(index): value for index, value in enumerate(raw)}
    return {SCALAR_KEY: raw}


def infer_type(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "float" if _NUMERIC_RE.fullmatch(value) else "str"
    if isinstance(value, Mapping):
        return "dict"
    if isinstance(value, (list, tuple)):
        return "list"
    return "unknown"


def format_value(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, Mapping):
        return json.dumps(dict(value), ensure_ascii=False, default=str)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value), ensure_ascii=False, default=str)
    logger.warning("format_value: unknown argument type %s, using str()", type(value).__name__)
    return str(value)


def format_args(values: Mapping[str, Any]) -> str:
    """``key=value`` pairs, comma-joined, kept on a single line."""
    rendered = ", ".join(f"{key}={format_value(value)}" for key, value in values.items())
    return _NEWLINES_RE.sub(r"\\n", rendered)


def infer_signature(values: Mapping[str, Any]) -> str:
    return ", ".join(
        f"{key}: {_SIGNATURE_TYPES[infer_type(value)]}" for key, value in values.items()
    )


def normalize_args(
    raw: Any,
    *,
    empty_sentinel: bool = True,
    signature: str | None = None,
) -> NormalizedArguments:
    """Normalize ``raw`` into keyed arguments plus their prompt renderings.

    Args:
        raw: ``None``, a mapping, a list/tuple (keyed ``a``, ``b``, ...) or
            any other scalar (keyed ``s``).
        empty_sentinel: Replace absent arguments with ``{"start": True}`` so
            the user turn is never empty.
        signature: Caller-supplied parameter signature; inferred when omitted.
    """
    values = to_mapping(raw, empty_sentinel=empty_sentinel)
    return NormalizedArguments(
        values=values,
        args_string=format_args(values),
        signature=signature if signature is not None else infer_signature(values),
    )
