from __future__ import annotations

import datetime
import functools
import json
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, TextIO

from aifunc.config import get_config_value, get_flag

_FILE_LOCKS: dict[Path, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _file_lock(path: Path) -> threading.Lock:
    with _FILE_LOCKS_GUARD:
        lock = _FILE_LOCKS.get(path)
        if lock is None:
            lock = threading.Lock()
            _FILE_LOCKS[path] = lock
        return lock


class Logger(Protocol):
    def info(self, event: str, **fields: Any) -> None: ...
    def warn(self, event: str, **fields: Any) -> None: ...
    def error(self, event: str, **fields: Any) -> None: ...

class NullLogger:
    def info(self, event: str, **fields): pass
    def warn(self, event: str, **fields): pass
    def error(self, event: str, **fields): pass

class JsonStdoutLogger:
    """One JSON object per line; errors go to stderr, everything else to ``out``."""

    def __init__(
        self,
        service: str = "aifunc",
        env: str = "dev",
        log_path: str | Path | None = None,
        out: TextIO | None = None,
    ):
        self.service = service
        self.env = env
        self._out = out
        self._log_path = Path(log_path).expanduser() if log_path else None
        self._log_dir_prepared = False
    def _emit(self, level: str, event: str, **fields):
        ts = (
            datetime.datetime.now(datetime.timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z")
        )
        rec = {
            "ts": ts,
            "level": level,
            "event": event,
            "service": self.service,
            "env": self.env,
            **fields,
        }
        line = json.dumps(rec, default=str)
        if self._out is not None:
            print(line, file=self._out)
        else:
            print(line, file=sys.stdout if level != "error" else sys.stderr)
        if self._log_path:
            lock = _file_lock(self._log_path)
            with lock:
                if not self._log_dir_prepared:
                    self._log_path.parent.mkdir(parents=True, exist_ok=True)
                    self._log_dir_prepared = True
                with self._log_path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
    def info(self, event, **fields): self._emit("info", event, **fields)
    def warn(self, event, **fields): self._emit("warn", event, **fields)
    def error(self, event, **fields): self._emit("error", event, **fields)


def get_obs_logger(service: str = "aifunc") -> Logger:
    """Structured event logger gated by ``OBS_LOG_ENABLED`` (file target ``OBS_LOG_FILE``)."""
    if not get_flag("OBS_LOG_ENABLED"):
        return NullLogger()
    return JsonStdoutLogger(
        service=service,
        env=get_config_value("APP_ENV", "dev") or "dev",
        log_path=get_config_value("OBS_LOG_FILE") or None,
    )


def redact(value: str | None, secret: str | None) -> str | None:
    if not isinstance(value, str) or not secret:
        return value
    return value.replace(secret, "***")


def with_span(
    event: str,
    *,
    fields: Mapping[str, Any] | None = None,
    fields_fn: Callable[..., Mapping[str, Any]] | None = None,
    pre: Callable[[tuple[Any, ...], dict[str, Any]], None] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a coroutine method in a `Span` logged to ``self._logger``."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if pre:
                pre(args, kwargs)
            span_fields: dict[str, Any] = dict(fields or {})
            if fields_fn:
                span_fields.update(fields_fn(*args, **kwargs))
            logger = getattr(args[0], "_logger", None) if args else None
            with Span(logger or NullLogger(), event, span_fields):
                return await fn(*args, **kwargs)

        return wrapper

    return decorator


@dataclass(slots=True)
class Span:
    logger: Logger
    event: str
    fields: Mapping[str, Any]
    start_ns: int = 0
    def __enter__(self):
        self.start_ns = time.time_ns()
        self.logger.info(self.event + ".start", **self.fields)
        return self
    def __exit__(self, exc_type, exc, tb):
        dur_ms = (time.time_ns() - self.start_ns) / 1e6
        if exc:
            self.logger.error(
                self.event + ".error",
                duration_ms=dur_ms,
                error_type=type(exc).__name__,
                error=str(exc),
                **self.fields,
            )
        else:
            self.logger.info(self.event + ".end", duration_ms=dur_ms, **self.fields)
