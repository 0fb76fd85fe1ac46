"""
Structured Logging: One JSON Document per Record

Library modules log through `logging.getLogger(__name__)` and attach fields
with `extra=`. Applications call `setup_logging()` once; JsonFormatter then
merges those fields, plus any scoped fields, into the output document.

    {"@timestamp": ..., "level": "WARNING", "logger": "shardcache.counter.sharded",
     "message": "Counter operation failed", "counter": "hits", "error_code": ...}

Field values that are store keys render as their readable form; errors
render as their `to_dict()`.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from functools import partialmethod
from typing import Any, Iterator, Optional, TextIO

from shardcache.core.errors import ShardCacheError
from shardcache.core.types import DateTime, Key


class LogLevel(IntEnum):
    """Log level enumeration."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, name: str) -> LogLevel:
        """Level from its name, case-insensitive. Raises KeyError."""
        return cls[name.strip().upper()]


_scoped_fields: ContextVar[dict[str, Any]] = ContextVar("shardcache_log_scope", default={})

# Attribute names of a bare LogRecord; anything beyond them came in via extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

# Third-party loggers held at WARNING
_QUIET_LOGGERS = ("asyncio", "asyncpg", "redis")


def _jsonable(value: Any) -> Any:
    if isinstance(value, ShardCacheError):
        return value.to_dict()
    if isinstance(value, (Key, DateTime)):
        return str(value)
    return value


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        document: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        document.update(_scoped_fields.get())
        document.update(
            (name, _jsonable(value))
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS
        )
        if record.exc_info:
            document["exception"] = self.formatException(record.exc_info)
        return json.dumps(document, default=str)


class StructuredLogger:
    """
    Logger taking fields as keyword arguments.

    Usage:
        log = StructuredLogger("shardcache.demo").bind(component="counter")

        with log.scope(counter="hits"):
            log.info("Incremented", shard=3)
    """

    __slots__ = ("_logger", "_bound")

    def __init__(self, name: str, **bound: Any) -> None:
        self._logger = logging.getLogger(name)
        self._bound = bound

    @property
    def name(self) -> str:
        return self._logger.name

    def log(self, level: LogLevel, message: str, **fields: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, extra={**self._bound, **fields})

    debug = partialmethod(log, LogLevel.DEBUG)
    info = partialmethod(log, LogLevel.INFO)
    warning = partialmethod(log, LogLevel.WARNING)
    error = partialmethod(log, LogLevel.ERROR)

    def failure(self, message: str, error: ShardCacheError, **fields: Any) -> None:
        """Log a returned error at WARNING with its code and id as fields."""
        self.warning(
            message,
            error_code=error.code.name,
            error_id=error.error_id,
            error=error.message,
            **fields,
        )

    def bind(self, **fields: Any) -> StructuredLogger:
        """Child logger that adds `fields` to every record."""
        return StructuredLogger(self._logger.name, **{**self._bound, **fields})

    @staticmethod
    @contextmanager
    def scope(**fields: Any) -> Iterator[None]:
        """Add `fields` to every record logged inside the block, from any logger."""
        token = _scoped_fields.set({**_scoped_fields.get(), **fields})
        try:
            yield
        finally:
            _scoped_fields.reset(token)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Route every record through a single stream handler on the root logger.

    Args:
        level: Minimum log level
        json_output: JSON documents (True) or a plain one-line format
        stream: Output stream (default: stderr)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        JsonFormatter() if json_output
        else logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
