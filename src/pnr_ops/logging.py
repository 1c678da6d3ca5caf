"""
Structured logging for PNR Ops.

Log records are emitted as JSON objects so that update runs on a deployed
host and provisioning runs on an operator machine produce the same
machine-readable trail. A plain-text format is available for interactive
use of the command line tool.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pnr_ops.config import LoggingConfig

ROOT_LOGGER_NAME = "pnr_ops"

# Plain format for --log-format text
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through `extra`
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
    A logging formatter that outputs log records as JSON objects.

    Each record carries:
    - timestamp: ISO 8601 timestamp in UTC
    - level: Log level name
    - logger: Logger name
    - message: Rendered log message
    - exception: Formatted traceback, when present
    - any fields passed through the `extra` argument
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as a JSON string."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or value is None:
                continue
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _build_formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(DEFAULT_LOG_FORMAT)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stderr: bool = True,
    log_file: str | None = None,
) -> logging.Logger:
    """
    Configure the `pnr_ops` logger tree.

    Console output goes to stderr so that progress lines printed by the
    command line tool on stdout stay clean.

    Args:
        config: Optional LoggingConfig. If provided, overrides the keyword
            arguments.
        level: Log level used when no config is provided.
        json_format: Whether to emit JSON records.
        log_to_stderr: Whether to attach a console handler.
        log_file: Optional path of a log file to append to.

    Returns:
        The configured `pnr_ops` logger.

    Example:
        >>> from pnr_ops.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG", json_format=False)
        >>> logger.info("Update check started", extra={"install_dir": "/srv/pnr"})
    """
    if config is not None:
        level = config.level
        json_format = config.format == "json"
        log_to_stderr = config.log_to_stderr
        log_file = config.log_file

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()

    formatter = _build_formatter(json_format)

    if log_to_stderr:
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the `pnr_ops` tree.

    Args:
        name: Logger name, typically `__name__` of the calling module. The
            "pnr_ops." prefix is added when missing.

    Returns:
        A logger instance.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
