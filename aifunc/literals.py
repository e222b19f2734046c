"""Structured-literal codecs used by the repair pipeline (JSON, YAML)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

import yaml

from aifunc.errors import ConfigurationError


class LiteralSyntaxError(ValueError):
    """Text is not a syntactically valid literal in the chosen notation."""


def parse_json_literal(raw: str) -> Any:
    """Parse JSON from a raw model string, raising LiteralSyntaxError on failure.

    Tries the full string first, then the outermost ``{...}`` or ``[...]``
    span so leading or trailing chatter does not hide a valid literal.
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        span = _outer_span(raw)
        if span is None:
            raise LiteralSyntaxError(
                f"invalid JSON: {exc.msg} at line {exc.lineno} column {exc.colno}"
            ) from exc
        try:
            return json.loads(span)
        except json.JSONDecodeError as exc2:
            raise LiteralSyntaxError(
                f"malformed JSON: {exc2.msg} at line {exc2.lineno} column {exc2.colno}"
            ) from exc2


def _outer_span(raw: str) -> str | None:
    starts = [index for index in (raw.find("{"), raw.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if raw[start] == "{" else "]"
    end = raw.rfind(closer)
    if end <= start:
        return None
    span = raw[start : end + 1]
    return span if span != raw.strip() else None


def parse_yaml_literal(raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise LiteralSyntaxError(f"malformed YAML: {exc}") from exc


@dataclass(frozen=True, slots=True)
class LiteralFormat:
    """A notation the model is asked to answer in.

    Attributes:
        name: Short name used in prompts and options (``json``, ``yaml``).
        parse: Text -> value, raising `LiteralSyntaxError`.
        sanitize: Whether non-ASCII/HTML-sensitive characters may be escaped
            to ``\\uXXXX`` before parsing (valid only where the notation
            decodes those escapes inside every string).
        prompt_hint: Formatting guidance appended to the system message.
    """

    name: str
    parse: Callable[[str], Any]
    sanitize: bool
    prompt_hint: str


JSON_FORMAT = LiteralFormat(
    name="json",
    parse=parse_json_literal,
    sanitize=True,
    prompt_hint=(
        "Use valid JSON: double-quoted keys and strings, true/false/null literals, "
        "no trailing commas, no comments and no Markdown code fences."
    ),
)

YAML_FORMAT = LiteralFormat(
    name="yaml",
    parse=parse_yaml_literal,
    sanitize=False,
    prompt_hint=(
        "In YAML formatting, always start a new line after colons, use a hyphen before "
        "each list item, use a space after each colon and comma, and ensure proper "
        "indentation: keys in a map must be indented equally, while values must be "
        "indented further. Quote strings that contain special characters. "
        "Do not use Markdown code fences."
    ),
)

_FORMATS = {fmt.name: fmt for fmt in (JSON_FORMAT, YAML_FORMAT)}


def get_format(name: str) -> LiteralFormat:
    try:
        return _FORMATS[name.lower()]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown output format '{name}'; expected one of {sorted(_FORMATS)}"
        ) from exc
