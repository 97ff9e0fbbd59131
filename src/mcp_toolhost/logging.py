"""
Logging setup for the MCP tool host.

Every module logs through ``get_logger(__name__)`` under the
``mcp_toolhost`` root logger, passing structured context with ``extra=``.
``setup_logging`` attaches a single stderr handler (JSON lines by default)
and ``set_log_level`` adjusts it when the server swaps configuration.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_toolhost.config import ServerConfig

ROOT_LOGGER_NAME = "mcp_toolhost"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Render each record as one JSON object per line.

    Fixed keys are ``timestamp`` (UTC, ISO 8601, taken from the record),
    ``level``, ``logger`` and ``message``; ``exception`` is added when the
    record carries exc_info. Every non-None field passed through ``extra=``
    is merged in at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_KEYS and value is not None
        }
        entry.update(extras)

        return json.dumps(entry, default=str)


def _to_level(level: str) -> int:
    level = level.upper()
    if level == "WARN":
        level = "WARNING"
    return getattr(logging, level, logging.INFO)


def setup_logging(
    config: ServerConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    stream: Any = None,
) -> logging.Logger:
    """
    Configure the logging system for the tool host.

    Args:
        config: Optional ServerConfig; its logging_level and log_json
            settings override the keyword arguments.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting (default: True).
        stream: Output stream (default: sys.stderr, keeping stdout free for
            protocol traffic).

    Returns:
        The package root logger.

    Example:
        >>> from mcp_toolhost.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Server started", extra={"port": 8765})
    """
    if config is not None:
        level = config.logging_level
        json_format = config.log_json

    log_level = _to_level(level)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)

    logger.propagate = False

    return logger


def set_log_level(level: str) -> None:
    """
    Change the package log level at runtime.

    Applies to the package root logger and every handler attached to it.

    Args:
        level: New level name (debug, info, warning, error, critical).
    """
    log_level = _to_level(level)
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)


def get_logger(name: str) -> logging.Logger:
    """
    Return the logger for a module, placed under the package root logger.

    Args:
        name: Usually ``__name__``; names outside the package get the
            ``mcp_toolhost.`` prefix.

    Example:
        >>> from mcp_toolhost.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Module initialized")
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
