""" Configuration sources: process environment and .env files. """

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Protocol


class ConfigSource(Protocol):
    """Strategy interface for pulling configuration values from a backing store."""

    def get(self, key: str) -> str | None: ...


@dataclass(slots=True)
class EnvConfigSource:
    """Reads values from environment variables, optionally namespaced.

    With ``prefix="AIFUNC_"`` a lookup of ``LLM_MODEL`` reads ``AIFUNC_LLM_MODEL``.
    """

    prefix: str | None = None

    def get(self, key: str) -> str | None:
        env_key = f"{self.prefix}{key}" if self.prefix else key
        return os.getenv(env_key)


@dataclass(slots=True)
class DotEnvConfigSource:
    """Minimal .env reader (``KEY=value`` lines, ``export`` and ``#`` comments allowed)."""

    path: Path = Path(".env")
    encoding: str = "utf-8"
    _cache: dict[str, str] = field(default_factory=dict, init=False)
    _loaded: bool = field(default=False, init=False)

    def _load(self) -> None:
        if self._loaded:
            return
        try:
            text = self.path.read_text(encoding=self.encoding)
        except (FileNotFoundError, IsADirectoryError):
            text = ""
        for raw_line in text.splitlines():
            parsed = self.parse_line(raw_line)
            if parsed is not None:
                key, value = parsed
                self._cache[key] = value
        self._loaded = True

    @classmethod
    def parse_line(cls, raw_line: str) -> tuple[str, str] | None:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            return None
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            return None
        value = value.strip()
        if value[:1] in {'"', "'"}:
            return key, cls._strip_quotes(value)
        # unquoted values may carry a trailing comment
        if " #" in value:
            value = value.split(" #", 1)[0].rstrip()
        return key, value

    @staticmethod
    def _strip_quotes(value: str) -> str:
        quote = value[0]
        end = value.find(quote, 1)
        if end == -1:
            return value[1:]
        return value[1:end]

    def get(self, key: str) -> str | None:
        self._load()
        return self._cache.get(key)


@dataclass(slots=True)
class ConfigAdapter:
    """Composite over multiple sources; the first source holding a key wins."""

    sources: tuple[ConfigSource, ...]

    def get(self, key: str, default: str | None = None) -> str | None:
        for source in self.sources:
            value = source.get(key)
            if value is not None:
                return value
        return default
