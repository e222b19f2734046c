"""Initialization and the call surface.

    ai_function = create_instance(api_key)
    capital = await ai_function(
        function_name="capital_of",
        args=["Italy"],
        description="Return the capital city of the given country.",
        func_return={"type": "string"},
    )
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, Mapping, Optional

from pydantic import ValidationError

from aifunc.arguments import normalize_args
from aifunc.config import get_api_key, get_base_url, get_default_model
from aifunc.errors import ConfigurationError, UnrecoverableFormatError
from aifunc.json_repair import ModelRepairAgent
from aifunc.literals import get_format
from aifunc.llm_client import AsyncLLMClient
from aifunc.llm_factory import get_async_llm_client, resolve_provider
from aifunc.models import FunctionOptions, FunctionResult, Invocation
from aifunc.obs import JsonStdoutLogger, Logger, NullLogger, Span, get_obs_logger
from aifunc.prompts import build_function_messages, build_stream_messages, current_timestamp
from aifunc.repair import CompletionRepairPipeline, RepairStrategy, normalize_repair_order
from aifunc.retry import call_with_retries
from aifunc.schema import SchemaKind, SchemaNode, compile_schema
from aifunc.streaming import TokenStream

logger = logging.getLogger(__name__)


def create_instance(
    api_key: Any,
    endpoint: Optional[str] = None,
    *,
    provider: Optional[str] = None,
    llm: Optional[AsyncLLMClient] = None,
    model: Optional[str] = None,
    logger: Optional[Logger] = None,
    repair_order: Optional[Iterable[RepairStrategy | str]] = None,
    retry_backoff: float = 1.0,
) -> "AIFunction":
    """Return an `AIFunction` bound to ``api_key`` (and ``endpoint`` when given).

    ``llm`` replaces the provider adapter entirely, e.g. in tests; the key
    is still required.

    Raises:
        ConfigurationError: ``api_key`` is missing or not a string, or the
            provider is unknown.
    """
    if not isinstance(api_key, str) or not api_key.strip():
        raise ConfigurationError("create_instance requires the API key as a non-empty string")
    if endpoint is not None and not isinstance(endpoint, str):
        raise ConfigurationError("endpoint must be a string URL")
    obs = logger or get_obs_logger()
    client = llm or get_async_llm_client(api_key.strip(), base_url=endpoint, logger=obs, provider=provider)
    return AIFunction(
        client,
        model=model,
        logger=obs,
        repair_order=repair_order,
        retry_backoff=retry_backoff,
    )


def create_instance_from_config(provider: Optional[str] = None, **kwargs: Any) -> "AIFunction":
    """`create_instance` with the key, endpoint and provider read from settings."""
    name = resolve_provider(provider)
    api_key = get_api_key(name)
    if not api_key:
        raise ConfigurationError(f"No API key configured for provider '{name}'")
    return create_instance(api_key, get_base_url(), provider=name, **kwargs)


def _parse_options(options: Any, overrides: Mapping[str, Any]) -> FunctionOptions:
    if isinstance(options, FunctionOptions):
        if not overrides:
            return options
        # attribute values as-is; a dump would flatten a compiled SchemaNode
        options = {name: getattr(options, name) for name in options.model_fields_set}
    if options is None:
        options = {}
    if not isinstance(options, Mapping):
        raise ConfigurationError(f"options must be a mapping, got {type(options).__name__}")
    try:
        return FunctionOptions.model_validate({**options, **overrides})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid AI function options: {exc}") from exc


class AIFunction:
    """Callable handle returned by `create_instance`.

    Holds the adapter, default model and repair policy; nothing is shared
    between instances and every call keeps its own state.
    """

    def __init__(
        self,
        llm: AsyncLLMClient,
        model: Optional[str] = None,
        *,
        logger: Optional[Logger] = None,
        repair_order: Optional[Iterable[RepairStrategy | str]] = None,
        retry_backoff: float = 1.0,
    ):
        if retry_backoff < 0:
            raise ConfigurationError("retry_backoff must be >= 0")
        self._llm = llm
        self.default_model = model or get_default_model()
        self.repair_order = normalize_repair_order(repair_order)
        self.retry_backoff = retry_backoff
        self._logger: Logger = logger or NullLogger()

    async def __call__(self, options: Any = None, /, **kwargs: Any) -> Any:
        """Run one AI function call.

        Options come as a mapping / `FunctionOptions`, keyword arguments, or
        both (keywords win). Returns the coerced value; the raw text when
        ``auto_convert_return`` is off; a `TokenStream` (or ``None`` with
        callbacks) when ``stream`` is on; a `FunctionResult` when
        ``return_invocation`` is on.

        Raises:
            ConfigurationError: Invalid options or ``funcReturn``.
            InvocationError: The model call failed after ``retries``.
            UnrecoverableFormatError: No repair stage produced a conformant value.
        """
        opts = _parse_options(options, kwargs)
        req_id = str(uuid.uuid4())
        model = opts.model or self.default_model
        trace: Logger = JsonStdoutLogger(service="aifunc.trace") if opts.show_debug else NullLogger()
        fields = {"req_id": req_id, "function": opts.function_name, "model": model}
        with Span(self._logger, "aifunc.call", fields):
            if opts.stream:
                return await self._call_streaming(opts, req_id, model, trace)
            return await self._call(opts, req_id, model, trace)

    def _schema(self, opts: FunctionOptions) -> SchemaNode | None:
        if opts.func_return is None:
            return None
        return compile_schema(opts.func_return)

    async def _call(self, opts: FunctionOptions, req_id: str, model: str, trace: Logger) -> Any:
        schema = self._schema(opts)
        if schema is None:
            if opts.auto_convert_return:
                raise ConfigurationError("funcReturn is required unless autoConvertReturn is off")
            schema = SchemaNode.scalar(SchemaKind.STRING)
        fmt = get_format(opts.output_format)
        arguments = normalize_args(opts.args, signature=opts.func_args)
        messages = build_function_messages(
            function_name=opts.function_name,
            description=opts.description,
            arguments=arguments,
            schema=schema,
            fmt=fmt,
            block_hijack=opts.block_hijack,
            prompt_vars=opts.prompt_vars,
            current_date_time=opts.current_date_time or current_timestamp(),
        )
        trace.info("aifunc.prompt", req_id=req_id, model=model, messages=messages)
        invocation = Invocation(req_id=req_id, model=model, messages=messages)

        sampling = opts.sampling()

        async def _complete() -> str:
            if opts.use_internal_stream:
                stream = TokenStream(
                    self._llm.stream(
                        messages, model, sampling.temperature, req_id=req_id, **sampling.extra_kwargs()
                    )
                )
                return await stream.collect()
            return await self._llm.chat(
                messages, model, sampling.temperature, req_id=req_id, **sampling.extra_kwargs()
            )

        raw_text = await call_with_retries(
            _complete,
            retries=opts.retries,
            backoff=self.retry_backoff,
            obs=self._logger,
            event="aifunc.call.retry",
            req_id=req_id,
        )
        invocation.raw_text = raw_text

        if not opts.auto_convert_return:
            trace.info("aifunc.result", req_id=req_id, stage=None, value=raw_text)
            return FunctionResult(raw_text, invocation) if opts.return_invocation else raw_text

        pipeline = CompletionRepairPipeline(
            fmt,
            repairer=ModelRepairAgent(llm=self._llm, model=model),
            repair_order=self.repair_order,
            retry_backoff=self.retry_backoff,
            logger=self._logger,
        )
        try:
            resolution = await pipeline.resolve_detailed(
                raw_text,
                schema,
                repair_order=opts.repair_order,
                retries=opts.retries,
                req_id=req_id,
                trace=trace,
            )
        except UnrecoverableFormatError as exc:
            invocation.attempts = list(exc.attempts)
            trace.error("aifunc.result", req_id=req_id, error=str(exc), raw_text=raw_text)
            raise
        invocation.stage = resolution.stage
        invocation.attempts = list(resolution.attempts)
        trace.info("aifunc.result", req_id=req_id, stage=resolution.stage, value=resolution.value)
        if resolution.stage != "direct":
            logger.info("%s: completion needed %s repair", opts.function_name, resolution.stage)
        if opts.return_invocation:
            return FunctionResult(resolution.value, invocation)
        return resolution.value

    async def _call_streaming(self, opts: FunctionOptions, req_id: str, model: str, trace: Logger) -> Any:
        schema = self._schema(opts)
        if schema is not None and not schema.is_scalar:
            raise ConfigurationError(
                "Streaming functions must declare a scalar return (string, number, boolean or date)"
            )
        arguments = normalize_args(opts.args, signature=opts.func_args)
        messages = build_stream_messages(
            function_name=opts.function_name,
            description=opts.description,
            arguments=arguments,
            schema=schema,
            block_hijack=opts.block_hijack,
            prompt_vars=opts.prompt_vars,
            current_date_time=opts.current_date_time or current_timestamp(),
        )
        trace.info("aifunc.prompt", req_id=req_id, model=model, messages=messages, stream=True)
        sampling = opts.sampling()
        stream = TokenStream(
            self._llm.stream(messages, model, sampling.temperature, req_id=req_id, **sampling.extra_kwargs())
        )
        invocation = Invocation(req_id=req_id, model=model, messages=messages)
        if not opts.has_stream_callbacks:
            return FunctionResult(stream, invocation) if opts.return_invocation else stream

        text = await stream.pipe(opts.callback_stream_function, opts.callback_end_function)
        invocation.raw_text = text
        trace.info("aifunc.result", req_id=req_id, stage=None, value=text)
        return FunctionResult(None, invocation) if opts.return_invocation else None
