"""Structured logging setup.

All modules log through structlog with dotted event names and keyword
fields. Secrets (OpenAI and Google API keys, bearer tokens) are redacted
before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_OPENAI_KEY_RE = re.compile(r"sk-[A-Za-z0-9_\-]{8,}")
_GOOGLE_KEY_RE = re.compile(r"AIza[A-Za-z0-9_\-]{8,}")
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9_\-\.]+", re.IGNORECASE)

_min_level = logging.INFO


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _level_value(value: str | None, *, default: str = "info") -> int:
    if not value:
        return _LEVELS[default]
    return _LEVELS.get(value.strip().lower(), _LEVELS[default])


def _redact_text(text: str) -> str:
    text = _OPENAI_KEY_RE.sub("sk-[REDACTED]", text)
    text = _GOOGLE_KEY_RE.sub("AIza[REDACTED]", text)
    return _BEARER_RE.sub(r"\1[REDACTED]", text)


def _redact_value(value: Any, memo: dict[int, Any]) -> Any:
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, bytes):
        return _redact_text(value.decode("utf-8", errors="replace"))
    obj_id = id(value)
    if obj_id in memo:
        return memo[obj_id]
    if isinstance(value, dict):
        redacted: dict[Any, Any] = {}
        memo[obj_id] = redacted
        for key, item in value.items():
            redacted[key] = _redact_value(item, memo)
        return redacted
    if isinstance(value, list):
        items: list[Any] = []
        memo[obj_id] = items
        items.extend(_redact_value(item, memo) for item in value)
        return items
    if isinstance(value, tuple):
        return tuple(_redact_value(item, memo) for item in value)
    if isinstance(value, set):
        return {_redact_value(item, memo) for item in value}
    return value


def _redact_processor(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    memo: dict[int, Any] = {}
    for key, value in list(event_dict.items()):
        event_dict[key] = _redact_value(value, memo)
    return event_dict


def _level_filter(
    _logger: Any, method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    if _LEVELS.get(method, logging.INFO) < _min_level:
        raise structlog.DropEvent
    return event_dict


class SafeWriter:
    """Stream wrapper that ignores writes after the stream is closed."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._closed = False

    def write(self, data: str) -> int:
        if self._closed:
            return 0
        try:
            return self._stream.write(data)
        except ValueError:
            # Stream closed during interpreter shutdown.
            self._closed = True
            return 0

    def flush(self) -> None:
        if self._closed:
            return
        try:
            self._stream.flush()
        except ValueError:
            self._closed = True

    def isatty(self) -> bool:
        try:
            return self._stream.isatty()
        except ValueError:
            return False


def setup_logging(*, debug: bool = False, stream: TextIO | None = None) -> None:
    """Configure structlog for the process.

    Level comes from HILO_LOG_LEVEL unless ``debug`` is set; HILO_LOG_FORMAT=json
    selects JSON output.
    """
    global _min_level
    _min_level = logging.DEBUG if debug else _level_value(os.environ.get("HILO_LOG_LEVEL"))

    writer = SafeWriter(stream or sys.stderr)
    json_output = os.environ.get("HILO_LOG_FORMAT", "").strip().lower() == "json"
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=writer.isatty() and not _truthy(os.environ.get("NO_COLOR"))
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _level_filter,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _redact_processor,
            renderer,
        ],
        logger_factory=structlog.PrintLoggerFactory(file=writer),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_conversation_context(**values: Any) -> None:
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def suppress_logs(level: str = "warning") -> Iterator[None]:
    """Temporarily drop log events below ``level``."""
    global _min_level
    previous = _min_level
    _min_level = max(previous, _level_value(level))
    try:
        yield
    finally:
        _min_level = previous


def preview(text: str, limit: int = 100) -> str:
    """Truncate message text for log lines."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
