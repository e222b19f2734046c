""" Settings lookup for aifunc (environment first, then .env). """

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from aifunc.config_adapter import (
    ConfigAdapter,
    ConfigSource,
    DotEnvConfigSource,
    EnvConfigSource,
)

DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_PROVIDER = "openai"
DEFAULT_TIMEOUT_SECONDS = 120.0

_API_KEY_SETTINGS = {
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@lru_cache
def _config_adapter() -> ConfigAdapter:
    sources: list[ConfigSource] = [EnvConfigSource()]
    dotenv_path = Path(os.getenv("DOTENV_PATH", ".env"))
    sources.append(DotEnvConfigSource(path=dotenv_path))
    return ConfigAdapter(tuple(sources))


def get_config_value(key: str, default: str | None = None) -> str | None:
    return _config_adapter().get(key, default)


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def get_flag(key: str, default: bool = False) -> bool:
    raw = get_config_value(key)
    if raw is None:
        return default
    return is_truthy(raw)


def get_default_model() -> str:
    """Return the configured default chat model (``LLM_MODEL``)."""
    value = get_config_value("LLM_MODEL")
    return value.strip() if value and value.strip() else DEFAULT_MODEL


def get_provider() -> str:
    value = get_config_value("LLM_PROVIDER") or DEFAULT_PROVIDER
    return value.strip().lower() or DEFAULT_PROVIDER


def get_base_url() -> str | None:
    value = get_config_value("LLM_BASE_URL")
    return value.strip() if value and value.strip() else None


def get_timeout_seconds() -> float:
    """Return the adapter request timeout (``LLM_TIMEOUT_SECONDS``).

    Unparseable or non-positive values fall back to the default.
    """
    raw = get_config_value("LLM_TIMEOUT_SECONDS")
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS
    return value if value > 0 else DEFAULT_TIMEOUT_SECONDS


def get_api_key(provider: str) -> str | None:
    setting = _API_KEY_SETTINGS.get(provider.lower())
    if setting is None:
        return None
    value = get_config_value(setting)
    # keys pasted with quotes or whitespace are common in .env files
    return value.strip().strip('"').strip("'") if value else None
