from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aifunc.repair import RepairAttempt, RepairStrategy


# ==== Call options ====

class FunctionOptions(BaseModel):
    """Options for one AI function call.

    Accepts the snake_case field names and the camelCase aliases
    (``functionName``, ``funcReturn``, ``showDebug``, ...). Unknown options
    are rejected.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", arbitrary_types_allowed=True)

    function_name: str = Field("custom_function", alias="functionName", min_length=1)
    args: Any = None
    description: str = Field(..., description="What the function does; supports ${var} placeholders.")
    func_return: Any = Field(None, alias="funcReturn", description="Declarative schema or SchemaNode.")
    func_args: Optional[str] = Field(
        None,
        alias="funcArgs",
        description="Parameter signature for the prompt; inferred from args when omitted.",
    )
    auto_convert_return: bool = Field(True, alias="autoConvertReturn")
    show_debug: bool = Field(False, alias="showDebug")
    block_hijack: bool = Field(False, alias="blockHijack")
    prompt_vars: dict[str, Any] = Field(default_factory=dict, alias="promptVars")
    stream: bool = False
    use_internal_stream: bool = Field(False, alias="useInternalStream")
    output_format: Literal["json", "yaml"] = Field("json", alias="outputFormat")
    current_date_time: Optional[str] = Field(None, alias="currentDateTime")
    repair_order: Optional[tuple[RepairStrategy, ...]] = Field(None, alias="repairOrder")
    return_invocation: bool = Field(False, alias="returnInvocation")

    # sampling, passed through to the adapter
    model: Optional[str] = None
    temperature: Optional[float] = Field(0.8, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(None, alias="topP", ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(None, alias="maxTokens", gt=0)
    frequency_penalty: Optional[float] = Field(None, alias="frequencyPenalty", ge=-2.0, le=2.0)
    presence_penalty: Optional[float] = Field(None, alias="presencePenalty", ge=-2.0, le=2.0)
    retries: int = Field(0, ge=0)

    callback_stream_function: Optional[Callable[[str], Any]] = Field(None, alias="callbackStreamFunction")
    callback_end_function: Optional[Callable[[str], Any]] = Field(None, alias="callbackEndFunction")

    @field_validator("output_format", mode="before")
    @classmethod
    def _lower_format(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def has_stream_callbacks(self) -> bool:
        return self.callback_stream_function is not None or self.callback_end_function is not None

    def sampling(self) -> SamplingConfig:
        return SamplingConfig(
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
        )


# ==== Per-call records ====

@dataclass(slots=True)
class SamplingConfig:
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None

    def extra_kwargs(self) -> dict[str, Any]:
        """Everything but temperature, without unset values."""
        values = {
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class Invocation:
    """What happened during one call; returned with ``returnInvocation=True``."""

    req_id: str
    model: str
    messages: list[dict[str, str]]
    raw_text: Optional[str] = None
    stage: Optional[str] = None  # "direct", "heuristic", "model" or None when not resolved
    attempts: list[RepairAttempt] = field(default_factory=list)


@dataclass(slots=True)
class FunctionResult:
    value: Any
    invocation: Invocation
