"""Structured logging helpers for Overseer components."""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_LOGGER_NAME = "overseer"
_CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_LOCK = threading.RLock()
_CONFIGURED = False
_FILE_HANDLER: Optional[RotatingFileHandler] = None

_WARN_COLOUR = "\033[33m"
_ERROR_COLOUR = "\033[31m"
_RESET = "\033[0m"


class OverseerJsonFormatter(logging.Formatter):
    """One JSON object per record, with adapter metadata under ``metadata``."""

    def format(self, record: LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        metadata = getattr(record, "metadata", None)
        if isinstance(metadata, Mapping) and metadata:
            payload["metadata"] = dict(metadata)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class OverseerConsoleFormatter(logging.Formatter):
    """Plain console lines; warnings and errors are coloured on a terminal."""

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        if record.levelno < logging.WARNING or not sys.stderr.isatty():
            return line
        colour = _ERROR_COLOUR if record.levelno >= logging.ERROR else _WARN_COLOUR
        return f"{colour}{line}{_RESET}"


def _coerce_level(value: Optional[str | int]) -> int:
    """Map ``info``/``DEBUG``/``10``-style values onto a level; default WARNING."""

    if isinstance(value, int):
        return value
    text = (value or "").strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else None
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(
    level: Optional[str | int] = None,
    *,
    log_file: Optional[Path | str] = None,
) -> None:
    """Set the ``overseer`` logger level and attach its handlers once.

    Console output goes to stderr so stdout stays reserved for results. A
    JSON Lines file sink is added when ``log_file`` or ``$OVERSEER_LOG_FILE``
    names one; pointing at a different file replaces the previous sink.
    """

    global _CONFIGURED, _FILE_HANDLER

    with _LOCK:
        root = logging.getLogger(_LOGGER_NAME)
        root.setLevel(_coerce_level(level or os.getenv("OVERSEER_LOG_LEVEL")))
        if not _CONFIGURED:
            console = logging.StreamHandler()
            console.setFormatter(OverseerConsoleFormatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
            root.addHandler(console)
            _CONFIGURED = True

        target = log_file or os.getenv("OVERSEER_LOG_FILE")
        if not target:
            return
        path = Path(target).expanduser().resolve()
        if _FILE_HANDLER is not None:
            if _FILE_HANDLER.baseFilename == str(path):
                return
            root.removeHandler(_FILE_HANDLER)
            _FILE_HANDLER.close()

        path.parent.mkdir(parents=True, exist_ok=True)
        sink = RotatingFileHandler(
            path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8"
        )
        sink.setFormatter(OverseerJsonFormatter())
        root.addHandler(sink)
        _FILE_HANDLER = sink


def get_logger(
    name: str, *, metadata: Optional[Mapping[str, Any]] = None
) -> logging.Logger | logging.LoggerAdapter:
    """Return a logger scoped under the Overseer namespace."""

    qualified = name if name.startswith(f"{_LOGGER_NAME}.") else f"{_LOGGER_NAME}.{name}"
    logger = logging.getLogger(qualified)
    if metadata:
        return OverseerLoggerAdapter(logger, dict(metadata))
    return logger


class OverseerLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects metadata for structured logging."""

    def process(self, msg: str, kwargs: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        metadata = dict(self.extra)
        if isinstance(extra.get("metadata"), Mapping):
            metadata.update(extra["metadata"])
        extra["metadata"] = metadata
        kwargs = dict(kwargs)
        kwargs["extra"] = extra
        return msg, kwargs


__all__ = [
    "OverseerConsoleFormatter",
    "OverseerJsonFormatter",
    "OverseerLoggerAdapter",
    "configure_logging",
    "get_logger",
]
