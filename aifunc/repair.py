"""Completion repair pipeline: raw model text -> schema-conformant value.

Stages, in order, each tried only while no conformant value exists yet:

1. strip fencing (code fences, backticks, stray wrapping quotes at the ends)
2. direct parse of the stripped text
3. heuristic rewrites (`REWRITE_RULES`) then parse
4. one model-assisted repair call then parse

Every parsed candidate is checked with `aifunc.coerce.coerce`; a candidate
that parses but does not conform falls through to the next stage. Stages 3
and 4 run in the order given by ``repair_order``.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from aifunc.coerce import CARRIER_FIELD, coerce, uses_carrier
from aifunc.errors import (
    ConfigurationError,
    ConformanceError,
    InvocationError,
    UnrecoverableFormatError,
)
from aifunc.json_repair import ModelRepairAgent
from aifunc.literals import JSON_FORMAT, LiteralFormat, LiteralSyntaxError
from aifunc.obs import Logger, NullLogger
from aifunc.retry import call_with_retries
from aifunc.schema import SchemaNode, render_type

logger = logging.getLogger(__name__)


# ---------- stage 1: fencing ----------

_OPEN_FENCE_RE = re.compile(r"^```[\w.+-]*[ \t]*(?:\r?\n|$)")
_CLOSE_FENCE_RE = re.compile(r"(?:\r?\n)?[ \t]*```$")
_QUOTES = "'\"`"
_STRUCTURE_START = "{[\"'`"


def strip_fencing(text: str) -> str:
    """Trim code fences, backtick runs and wrapping quotes from both ends.

    Only the ends are touched. A quote pair is removed when it wraps a
    structured literal (or a literal quoted with the other quote character),
    so a bare JSON string such as ``"Rome"`` survives.
    """
    current = text.strip()
    while True:
        previous = current
        current = _OPEN_FENCE_RE.sub("", current, count=1)
        current = _CLOSE_FENCE_RE.sub("", current, count=1).strip()
        current = _strip_backtick_runs(current)
        current = _strip_wrapping_quotes(current)
        current = _strip_stray_quotes(current)
        if current == previous:
            return current


def _strip_backtick_runs(text: str) -> str:
    lead = len(text) - len(text.lstrip("`"))
    trail = len(text) - len(text.rstrip("`"))
    if lead == 0 and trail == 0:
        return text
    return text[lead : len(text) - trail if trail else len(text)].strip()


def _strip_wrapping_quotes(text: str) -> str:
    if len(text) < 2 or text[0] not in _QUOTES or text[0] != text[-1]:
        return text
    inner = text[1:-1].strip()
    if inner and inner[0] in _STRUCTURE_START and inner[0] != text[0]:
        return inner
    return text


def _strip_stray_quotes(text: str) -> str:
    # an unbalanced quote glued to a bracket at either end
    if len(text) > 1 and text[0] in "'\"" and text[1] in "{[" and text[-1] != text[0]:
        text = text[1:].strip()
    if len(text) > 1 and text[-1] in "'\"" and text[-2] in "}]" and text[0] != text[-1]:
        text = text[:-1].strip()
    return text


# ---------- stage 3: heuristic rewrite rules ----------

_DQ_STRING_RE = re.compile(r'"(?:[^"\\]|\\.)*"', re.S)


def _map_segments(
    text: str,
    *,
    outside: Callable[[str], str] | None = None,
    inside: Callable[[str], str] | None = None,
) -> str:
    """Apply ``outside`` to text between double-quoted strings and ``inside`` to the strings."""
    out: list[str] = []
    pos = 0
    for match in _DQ_STRING_RE.finditer(text):
        gap = text[pos : match.start()]
        out.append(outside(gap) if outside else gap)
        out.append(inside(match.group()) if inside else match.group())
        pos = match.end()
    tail = text[pos:]
    out.append(outside(tail) if outside else tail)
    return "".join(out)


_SMART_QUOTES = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "„": '"',
        "‟": '"',
        "″": '"',
        "‘": "'",
        "’": "'",
        "‚": "'",
        "‛": "'",
        "′": "'",
    }
)


def smart_quotes(text: str) -> str:
    return text.translate(_SMART_QUOTES)


def _prev_significant(chars: Sequence[str]) -> str:
    for ch in reversed(chars):
        if not ch.isspace():
            return ch
    return ""


def _next_significant(text: str, index: int) -> str:
    for ch in text[index:]:
        if not ch.isspace():
            return ch
    return ""


def single_quotes(text: str) -> str:
    """Turn ``'...'`` string delimiters into ``"..."``.

    A quote only opens a string where a value or key may start (after
    ``{ [ , :`` or at the start) and only closes one where a value or key
    may end (before ``, : } ]`` or at the end); other quotes are content,
    so apostrophes such as ``'it's'`` survive. Escaped quotes are unescaped
    and bare double quotes inside are escaped.
    """
    out: list[str] = []
    i, n = 0, len(text)
    state = None  # None, '"' or "'"
    while i < n:
        ch = text[i]
        if state is None:
            if ch == '"':
                state = '"'
            elif ch == "'" and _prev_significant(out) in ("", "{", "[", ",", ":"):
                state = "'"
                ch = '"'
            out.append(ch)
        elif state == '"':
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 1
            elif ch == '"':
                state = None
        else:
            if ch == "\\" and i + 1 < n:
                nxt = text[i + 1]
                out.append("'" if nxt == "'" else ch + nxt)
                i += 1
            elif ch == '"':
                out.append('\\"')
            elif ch == "'" and _next_significant(text, i + 1) in ("", ",", ":", "}", "]"):
                out.append('"')
                state = None
            else:
                out.append(ch)
        i += 1
    return "".join(out)


_PY_LITERALS_RE = re.compile(r"\b(None|True|False)\b")
_PY_LITERALS = {"None": "null", "True": "true", "False": "false"}


def python_literals(text: str) -> str:
    return _map_segments(
        text, outside=lambda seg: _PY_LITERALS_RE.sub(lambda m: _PY_LITERALS[m.group(1)], seg)
    )


_RAW_NEWLINE_RE = re.compile(r"\r\n|\r|\n")


def raw_newlines(text: str) -> str:
    """Escape raw line breaks inside double-quoted strings as ``\\n``."""
    return _map_segments(text, inside=lambda seg: _RAW_NEWLINE_RE.sub(r"\\n", seg))


_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def trailing_commas(text: str) -> str:
    return _map_segments(text, outside=lambda seg: _TRAILING_COMMA_RE.sub(r"\1", seg))


_FENCED_BLOCK_RE = re.compile(r"```[\w.+-]*[ \t]*\r?\n(.*?)\r?\n?[ \t]*```", re.S)
_LANG_TAG_RE = re.compile(r"^(?:json|yaml|yml|python|javascript|js)[ \t]*\r?\n", re.I)


def residual_wrapping(text: str) -> str:
    """Unwrap a fenced block embedded in chatter, or a leftover language tag line."""
    block = _FENCED_BLOCK_RE.search(text)
    if block:
        text = block.group(1)
    text = _LANG_TAG_RE.sub("", text.strip(), count=1)
    return strip_fencing(text)


@dataclass(frozen=True, slots=True)
class RewriteRule:
    name: str
    apply: Callable[[str], str]


REWRITE_RULES: tuple[RewriteRule, ...] = (
    RewriteRule("smart_quotes", smart_quotes),
    RewriteRule("single_quotes", single_quotes),
    RewriteRule("python_literals", python_literals),
    RewriteRule("raw_newlines", raw_newlines),
    RewriteRule("trailing_commas", trailing_commas),
    RewriteRule("residual_wrapping", residual_wrapping),
)


def heuristic_repair(text: str, rules: Iterable[RewriteRule] = REWRITE_RULES) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text


# ---------- stage 6: sanitization ----------

_SANITIZE_RE = re.compile(r"[^\x00-\x7f]|[<>&']")


def _escape_char(match: re.Match[str]) -> str:
    code = ord(match.group())
    if code > 0xFFFF:
        code -= 0x10000
        return "\\u%04x\\u%04x" % (0xD800 + (code >> 10), 0xDC00 + (code & 0x3FF))
    return "\\u%04x" % code


def sanitize_text(text: str) -> str:
    """Escape non-ASCII and ``< > & '`` inside JSON strings as ``\\uXXXX``.

    The decoded value is unchanged; only the text handed to the parser is
    plain ASCII.
    """
    return _map_segments(text, inside=lambda seg: _SANITIZE_RE.sub(_escape_char, seg))


# ---------- pipeline ----------


class RepairStrategy(str, enum.Enum):
    HEURISTIC = "heuristic"
    MODEL = "model"


DEFAULT_REPAIR_ORDER: tuple[RepairStrategy, ...] = (RepairStrategy.HEURISTIC, RepairStrategy.MODEL)


@dataclass(frozen=True, slots=True)
class RepairAttempt:
    """One stage of one resolve call."""

    stage: str
    input_text: str
    output_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class Resolution:
    value: Any
    stage: str
    attempts: list[RepairAttempt] = field(default_factory=list)


def normalize_repair_order(order: Iterable[RepairStrategy | str] | None) -> tuple[RepairStrategy, ...]:
    if order is None:
        return DEFAULT_REPAIR_ORDER
    try:
        result = tuple(RepairStrategy(item) for item in order)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown repair strategy in {order!r}") from exc
    if len(set(result)) != len(result):
        raise ConfigurationError(f"Repair strategies must not repeat: {order!r}")
    return result


class _StageFailed(Exception):
    def __init__(self, error: str, output_text: str | None = None):
        super().__init__(error)
        self.error = error
        self.output_text = output_text


class CompletionRepairPipeline:
    """Turns raw completions into schema-conformant values.

    Args:
        fmt: Literal notation the model was asked to answer in.
        repairer: Model-assisted repair agent; required when ``MODEL`` is in
            ``repair_order``, otherwise the model stage is skipped.
        repair_order: Default order of the heuristic and model stages.
        retry_backoff: Base delay for retrying the model repair call.
    """

    def __init__(
        self,
        fmt: LiteralFormat = JSON_FORMAT,
        repairer: ModelRepairAgent | None = None,
        repair_order: Iterable[RepairStrategy | str] | None = None,
        retry_backoff: float = 1.0,
        logger: Logger | None = None,
    ):
        self.fmt = fmt
        self.repairer = repairer
        self.repair_order = normalize_repair_order(repair_order)
        self.retry_backoff = retry_backoff
        self._logger: Logger = logger or NullLogger()

    async def resolve(self, raw_text: str, schema: SchemaNode, **kwargs: Any) -> Any:
        return (await self.resolve_detailed(raw_text, schema, **kwargs)).value

    async def resolve_detailed(
        self,
        raw_text: str,
        schema: SchemaNode,
        *,
        repair_order: Iterable[RepairStrategy | str] | None = None,
        retries: int = 0,
        req_id: str | None = None,
        trace: Logger | None = None,
    ) -> Resolution:
        """Run the stages until one yields a conformant value.

        Raises:
            UnrecoverableFormatError: Every stage failed; carries ``raw_text``
                and the attempt records.
        """
        trace = trace or NullLogger()
        order = normalize_repair_order(repair_order) if repair_order is not None else self.repair_order
        carrier = uses_carrier(schema)
        attempts: list[RepairAttempt] = []
        stripped = strip_fencing(raw_text or "")
        last_error = "empty completion"

        def record(attempt: RepairAttempt) -> None:
            attempts.append(attempt)
            trace.info(
                "aifunc.repair.attempt",
                req_id=req_id,
                stage=attempt.stage,
                ok=attempt.ok,
                error=attempt.error,
            )
            if not attempt.ok:
                logger.debug("repair stage %s failed: %s", attempt.stage, attempt.error)

        stages: list[tuple[str, Callable[..., Any]]] = [("direct", self._direct)]
        for strategy in order:
            if strategy is RepairStrategy.HEURISTIC:
                stages.append(("heuristic", self._heuristic))
            elif self.repairer is not None:
                stages.append(("model", self._model))

        transport_error: InvocationError | None = None
        for name, stage in stages:
            try:
                if name == "model":
                    output, value = await stage(
                        stripped, schema, last_error, carrier=carrier, retries=retries, req_id=req_id
                    )
                else:
                    output, value = stage(stripped, schema, carrier=carrier)
            except _StageFailed as failure:
                last_error = failure.error
                transport_error = None
                record(RepairAttempt(name, stripped, failure.output_text, failure.error))
                continue
            except InvocationError as exc:
                transport_error = exc
                record(RepairAttempt(name, stripped, None, f"repair call failed: {exc}"))
                self._logger.warn("aifunc.repair.call_failed", req_id=req_id, stage=name, error=str(exc))
                continue
            record(RepairAttempt(name, stripped, output, None))
            return Resolution(value=value, stage=name, attempts=attempts)

        self._logger.error(
            "aifunc.repair.failed",
            req_id=req_id,
            stages=[attempt.stage for attempt in attempts],
            error=attempts[-1].error if attempts else last_error,
        )
        if transport_error is not None:
            raise UnrecoverableFormatError(
                f"Model-assisted repair failed: {transport_error}", raw_text=raw_text, attempts=attempts
            ) from transport_error
        raise UnrecoverableFormatError(
            f"Could not turn the completion into a valid {self.fmt.name} value "
            f"({len(attempts)} stage(s) tried; last error: {last_error})",
            raw_text=raw_text,
            attempts=attempts,
        )

    def _parse_and_coerce(self, text: str, schema: SchemaNode, carrier: bool) -> Any:
        candidate = sanitize_text(text) if self.fmt.sanitize else text
        try:
            value = self.fmt.parse(candidate)
        except LiteralSyntaxError as exc:
            raise _StageFailed(str(exc), text) from exc
        try:
            return coerce(value, schema, carrier=carrier)
        except ConformanceError as exc:
            raise _StageFailed(f"schema mismatch at {exc}", text) from exc

    def _direct(self, text: str, schema: SchemaNode, *, carrier: bool) -> tuple[str, Any]:
        if not text:
            raise _StageFailed("empty completion", text)
        return text, self._parse_and_coerce(text, schema, carrier)

    def _heuristic(self, text: str, schema: SchemaNode, *, carrier: bool) -> tuple[str, Any]:
        rewritten = heuristic_repair(text)
        if not rewritten:
            raise _StageFailed("nothing left after rewriting", rewritten)
        return rewritten, self._parse_and_coerce(rewritten, schema, carrier)

    async def _model(
        self,
        text: str,
        schema: SchemaNode,
        error: str,
        *,
        carrier: bool,
        retries: int,
        req_id: str | None,
    ) -> tuple[str, Any]:
        assert self.repairer is not None
        repairer = self.repairer
        schema_text = expected_shape(schema, carrier)

        async def _call() -> str:
            return await repairer.repair(
                raw=text,
                schema_text=schema_text,
                error=error,
                req_id=req_id,
                format_name=self.fmt.name,
            )

        repaired = await call_with_retries(
            _call,
            retries=retries,
            backoff=self.retry_backoff,
            obs=self._logger,
            event="aifunc.repair.retry",
            req_id=req_id,
        )
        cleaned = strip_fencing(repaired or "")
        return cleaned, self._parse_and_coerce(cleaned, schema, carrier)


def expected_shape(schema: SchemaNode, carrier: bool) -> str:
    """Rendered return type, wrapped in the carrier object when one is used."""
    rendered = render_type(schema)
    return f'{{"{CARRIER_FIELD}": {rendered}}}' if carrier else rendered
