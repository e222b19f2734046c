"""Factory functions to get LLM clients based on configuration."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from aifunc.config import get_provider, get_timeout_seconds
from aifunc.errors import ConfigurationError
from aifunc.llm_client import AsyncClaudeLLMClient, AsyncLLMClient, AsyncOpenAILLMClient
from aifunc.obs import Logger, get_obs_logger

# (api_key, base_url, logger, timeout) -> client
_ClientFactory = Callable[[str, Optional[str], Logger, float], AsyncLLMClient]

# Provider registry for simple DI. Extend as new adapters are added.
_ASYNC_PROVIDERS: Dict[str, _ClientFactory] = {
    "openai": lambda key, url, logger, timeout: AsyncOpenAILLMClient(
        api_key=key, base_url=url, logger=logger, timeout=timeout
    ),
    "claude": lambda key, url, logger, timeout: AsyncClaudeLLMClient(
        api_key=key, base_url=url, logger=logger, timeout=timeout
    ),
}
_ASYNC_PROVIDERS["anthropic"] = _ASYNC_PROVIDERS["claude"]


def known_providers() -> list[str]:
    return sorted(_ASYNC_PROVIDERS)


def resolve_provider(provider: str | None = None) -> str:
    return (provider or get_provider()).strip().lower()


def get_async_llm_client(
    api_key: str,
    base_url: str | None = None,
    logger: Logger | None = None,
    provider: str | None = None,
) -> AsyncLLMClient:
    logger = logger or get_obs_logger(service="llm")
    name = resolve_provider(provider)
    timeout = get_timeout_seconds()
    try:
        factory = _ASYNC_PROVIDERS[name]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown async LLM provider '{name}'; expected one of {known_providers()}"
        ) from exc
    return factory(api_key, base_url, logger, timeout)
