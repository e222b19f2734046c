"""Error taxonomy for AI function calls."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from aifunc.repair import RepairAttempt


class AIFunctionError(RuntimeError):
    """Base error for everything raised by aifunc."""


class ConfigurationError(AIFunctionError):
    """Bad caller input or settings. Never retried."""


class SchemaError(ConfigurationError):
    """A declarative return schema could not be compiled."""


class ConformanceError(AIFunctionError):
    """A parsed value does not satisfy the target schema.

    Attributes:
        path: JSONPath-like location of the first mismatch, e.g. ``$.people[1].age``.
    """

    def __init__(self, message: str, path: str = "$") -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class InvocationError(AIFunctionError):
    """The model transport failed (after any configured retries)."""


class UnrecoverableFormatError(AIFunctionError):
    """Every repair stage failed to turn the completion into a conformant value.

    Attributes:
        raw_text: The completion text as received from the model.
        attempts: One record per stage that was tried, in order.
    """

    def __init__(
        self,
        message: str,
        raw_text: str,
        attempts: Sequence["RepairAttempt"] = (),
    ) -> None:
        self.raw_text = raw_text
        self.attempts = list(attempts)
        super().__init__(message)
