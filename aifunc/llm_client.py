""" Model invocation ports and provider adapters. """

from __future__ import annotations

import uuid
from typing import Any, AsyncIterator, Callable, Optional, Protocol

import anthropic
import httpx
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from aifunc.config import get_config_value, get_timeout_seconds, is_truthy
from aifunc.errors import ConfigurationError, InvocationError
from aifunc.obs import Logger, NullLogger, redact, with_span

Messages = list[dict[str, str]]


def _normalize_temperature(model: str, temperature: float | None, logger: Logger, req_id: str) -> float | None:
    """For models that disallow custom temps (e.g., gpt-5*), drop it unless exactly 1."""
    if model.lower().startswith("gpt-5"):
        if temperature is not None and temperature != 1:
            logger.warn(
                "llm.temperature_ignored",
                req_id=req_id,
                model=model,
                requested=temperature,
                reason="gpt-5 only supports default temperature",
            )
        return None
    return temperature


def _ensure_req_id(_args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
    req_id = kwargs.get("req_id")
    if not isinstance(req_id, str) or not req_id:
        kwargs["req_id"] = str(uuid.uuid4())


def _llm_span_fields(*args: Any, **kwargs: Any) -> dict[str, Any]:
    model = kwargs.get("model")
    if model is None and len(args) >= 3:
        model = args[2]
    return {"req_id": kwargs.get("req_id"), "model": model}


def _llm_span(provider: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    return with_span(
        "llm.chat",
        fields={"provider": provider},
        fields_fn=_llm_span_fields,
        pre=_ensure_req_id,
    )


def _log_content_enabled() -> bool:
    """Whether logs may include prompt/response text previews (``LLM_LOG_CONTENT``, default on)."""

    raw = get_config_value("LLM_LOG_CONTENT")
    if raw is None:
        return True
    return is_truthy(raw)


def _safe_text_preview(text: str, limit: int = 1000) -> str:
    return (text or "")[:limit]


def _safe_messages(messages: Messages, *, log_content: bool) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for m in messages:
        content = m.get("content") or ""
        entry: dict[str, Any] = {"role": m.get("role")}
        if log_content:
            entry["content"] = _safe_text_preview(content)
        else:
            entry["content_len"] = len(content)
        out.append(entry)
    return out


def _drop_none(kwargs: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}


# ---------- Async port ----------


class AsyncLLMClient(Protocol):
    """Port interface for async LLM calls.

    Implementations raise `InvocationError` for any transport or provider
    failure; they do not retry on their own.
    """

    async def chat(
        self,
        messages: Messages,
        model: str,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        """Send chat messages and return the assistant's content."""
        ...

    def stream(
        self,
        messages: Messages,
        model: str,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Send chat messages and yield the assistant's content as it arrives."""
        ...


class AsyncOpenAILLMClient(AsyncLLMClient):
    """OpenAI (or OpenAI-compatible endpoint) chat completions."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
        logger: Optional[Logger] = None,
    ):
        if not api_key:
            raise ConfigurationError("An OpenAI API key is required")
        self._api_key = api_key
        self._timeout = float(timeout) if timeout is not None else get_timeout_seconds()
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._logger: Logger = logger or NullLogger()

    def _payload(self, messages: Messages, model: str, temperature: float | None, req_id: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        payload = dict(model=model, messages=messages, timeout=self._timeout, **_drop_none(kwargs))
        temp_for_request = _normalize_temperature(model, temperature, self._logger, req_id)
        if temp_for_request is not None:
            payload["temperature"] = temp_for_request
        if model.lower().startswith("gpt-5") and "max_tokens" in payload:
            payload["max_completion_tokens"] = payload.pop("max_tokens")
        return payload

    def _wrap(self, exc: Exception, model: str) -> InvocationError:
        message = redact(f"OpenAI request failed for model '{model}': {exc}", self._api_key)
        return InvocationError(message)

    @_llm_span("openai")
    async def chat(self, messages, model, temperature=None, **kwargs) -> str:
        req_id = kwargs.pop("req_id", str(uuid.uuid4()))
        log_content = _log_content_enabled()
        payload = self._payload(messages, model, temperature, req_id, kwargs)
        self._logger.info(
            "llm.request",
            req_id=req_id,
            provider="openai",
            model=model,
            temperature=temperature,
            kwargs=_drop_none(kwargs),
            message_count=len(messages),
            messages=_safe_messages(messages, log_content=log_content),
        )
        try:
            resp = await self._client.chat.completions.create(**payload)
        except (openai.APITimeoutError, httpx.TimeoutException) as e:
            self._logger.warn("llm.timeout", req_id=req_id, provider="openai", model=model, error=str(e))
            raise self._wrap(e, model) from e
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise self._wrap(e, model) from e
        if not resp.choices:
            raise InvocationError(f"OpenAI returned no choices for model '{model}'")
        content = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        resp_fields: dict[str, Any] = {
            "req_id": req_id,
            "provider": "openai",
            "model": model,
            "usage": usage.model_dump() if usage is not None and hasattr(usage, "model_dump") else None,
            "content_len": len(content),
        }
        if log_content:
            resp_fields["preview"] = _safe_text_preview(content)
        self._logger.info("llm.response", **resp_fields)
        return content

    async def stream(self, messages, model, temperature=None, **kwargs) -> AsyncIterator[str]:
        req_id = kwargs.pop("req_id", str(uuid.uuid4()))
        payload = self._payload(messages, model, temperature, req_id, kwargs)
        payload["stream"] = True
        self._logger.info(
            "llm.stream.start",
            req_id=req_id,
            provider="openai",
            model=model,
            message_count=len(messages),
        )
        received = 0
        try:
            chunks = await self._client.chat.completions.create(**payload)
            async for chunk in chunks:
                if not chunk.choices:
                    continue
                token = chunk.choices[0].delta.content
                if token:
                    received += len(token)
                    yield token
        except (openai.OpenAIError, httpx.HTTPError) as e:
            self._logger.error("llm.stream.error", req_id=req_id, provider="openai", model=model, error=str(e))
            raise self._wrap(e, model) from e
        self._logger.info("llm.stream.end", req_id=req_id, provider="openai", model=model, content_len=received)


# ---------- Anthropic Claude ----------


def _split_anthropic_messages(messages: Messages):
    system = None
    converted: list[dict[str, str]] = []
    for m in messages:
        role = m.get("role")
        content = m.get("content", "")
        if role == "system" and system is None:
            system = content
            continue
        if role == "assistant":
            converted.append({"role": "assistant", "content": content})
        else:
            converted.append({"role": "user", "content": content})
    return system, converted


_CLAUDE_UNSUPPORTED = ("frequency_penalty", "presence_penalty")


class AsyncClaudeLLMClient(AsyncLLMClient):
    """Anthropic Messages API; the first system message becomes ``system``."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
        logger: Optional[Logger] = None,
        max_tokens: int = 1024,
    ):
        if not api_key:
            raise ConfigurationError("An Anthropic API key is required")
        self._api_key = api_key
        timeout_value = float(timeout) if timeout is not None else get_timeout_seconds()
        self._client = AsyncAnthropic(api_key=api_key, base_url=base_url, timeout=timeout_value, max_retries=0)
        self._logger: Logger = logger or NullLogger()
        self._max_tokens = max_tokens

    def _payload(self, messages: Messages, model: str, temperature: float | None, req_id: str, kwargs: dict[str, Any]) -> dict[str, Any]:
        system, converted = _split_anthropic_messages(messages)
        options = _drop_none(kwargs)
        for key in _CLAUDE_UNSUPPORTED:
            if key in options:
                self._logger.warn("llm.param_ignored", req_id=req_id, provider="anthropic", param=key)
                options.pop(key)
        payload: dict[str, Any] = {
            "model": model,
            "messages": converted,
            "max_tokens": options.pop("max_tokens", self._max_tokens),
            **options,
        }
        if temperature is not None:
            # Anthropic accepts 0..1
            payload["temperature"] = min(max(temperature, 0.0), 1.0)
        if system:
            payload["system"] = system
        return payload

    def _wrap(self, exc: Exception, model: str) -> InvocationError:
        message = redact(f"Anthropic request failed for model '{model}': {exc}", self._api_key)
        return InvocationError(message)

    @_llm_span("anthropic")
    async def chat(self, messages, model, temperature=None, **kwargs) -> str:
        req_id = kwargs.pop("req_id", str(uuid.uuid4()))
        log_content = _log_content_enabled()
        payload = self._payload(messages, model, temperature, req_id, kwargs)
        self._logger.info(
            "llm.request",
            req_id=req_id,
            provider="anthropic",
            model=model,
            message_count=len(payload["messages"]),
            messages=_safe_messages(payload["messages"], log_content=log_content),
            system_len=len(payload.get("system") or ""),
        )
        try:
            resp = await self._client.messages.create(**payload)
        except (anthropic.APITimeoutError, httpx.TimeoutException) as e:
            self._logger.warn("llm.timeout", req_id=req_id, provider="anthropic", model=model, error=str(e))
            raise self._wrap(e, model) from e
        except (anthropic.AnthropicError, httpx.HTTPError) as e:
            raise self._wrap(e, model) from e
        content = "".join(
            getattr(block, "text", "") for block in (resp.content or [])
        )
        resp_fields: dict[str, Any] = {
            "req_id": req_id,
            "provider": "anthropic",
            "model": model,
            "content_len": len(content),
        }
        if log_content:
            resp_fields["preview"] = _safe_text_preview(content)
        self._logger.info("llm.response", **resp_fields)
        return content

    async def stream(self, messages, model, temperature=None, **kwargs) -> AsyncIterator[str]:
        req_id = kwargs.pop("req_id", str(uuid.uuid4()))
        payload = self._payload(messages, model, temperature, req_id, kwargs)
        self._logger.info(
            "llm.stream.start",
            req_id=req_id,
            provider="anthropic",
            model=model,
            message_count=len(payload["messages"]),
        )
        received = 0
        try:
            async with self._client.messages.stream(**payload) as events:
                async for token in events.text_stream:
                    if token:
                        received += len(token)
                        yield token
        except (anthropic.AnthropicError, httpx.HTTPError) as e:
            self._logger.error("llm.stream.error", req_id=req_id, provider="anthropic", model=model, error=str(e))
            raise self._wrap(e, model) from e
        self._logger.info("llm.stream.end", req_id=req_id, provider="anthropic", model=model, content_len=received)
