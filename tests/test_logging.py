"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Log level handling
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from io import StringIO
from pathlib import Path

import pytest

from pnr_ops.config import LoggingConfig
from pnr_ops.logging import JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def string_handler() -> logging.StreamHandler[StringIO]:
    """Create a string handler for capturing log output."""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    return handler


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Clean up loggers after each test (autouse fixture)."""
    yield
    logger = logging.getLogger("pnr_ops")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


def _record(msg: str = "Test message", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test_logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Test message"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields are included."""
        record = _record(install_dir="/opt/pnr-server", files=12)
        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["install_dir"] == "/opt/pnr-server"
        assert parsed["files"] == 12

    def test_format_skips_standard_attributes(self) -> None:
        """Test LogRecord bookkeeping attributes are not emitted."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert "pathname" not in parsed
        assert "lineno" not in parsed
        assert "args" not in parsed

    def test_format_non_serializable_extra(self) -> None:
        """Test non-JSON values are rendered as strings."""
        record = _record(path=Path("/tmp/x"))
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["path"] == "/tmp/x"

    def test_format_with_exception(self) -> None:
        """Test exception text is included."""
        try:
            raise ValueError("broken archive")
        except ValueError:
            import sys

            record = logging.LogRecord(
                name="test_logger",
                level=logging.ERROR,
                pathname="test.py",
                lineno=1,
                msg="failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        parsed = json.loads(JSONFormatter().format(record))
        assert "ValueError: broken archive" in parsed["exception"]


# =============================================================================
# Tests for setup_logging and get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_default_setup(self) -> None:
        """Test default setup attaches one stderr handler."""
        logger = setup_logging()

        assert logger.name == "pnr_ops"
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.propagate is False

    def test_level_and_text_format(self) -> None:
        """Test level and plain-text format."""
        logger = setup_logging(level="debug", json_format=False)

        assert logger.level == logging.DEBUG
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_repeated_setup_replaces_handlers(self) -> None:
        """Test calling setup twice does not duplicate handlers."""
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_setup_from_config(self, tmp_path: Path) -> None:
        """Test configuration object takes precedence over keywords."""
        log_file = tmp_path / "logs" / "pnr-ops.log"
        config = LoggingConfig(
            level="warn",
            format="text",
            log_to_stderr=False,
            log_file=str(log_file),
        )

        logger = setup_logging(config, level="debug")

        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.FileHandler)

        logger.warning("written to file")
        logger.handlers[0].flush()
        assert "written to file" in log_file.read_text()

    def test_records_flow_through_handler(
        self, string_handler: logging.StreamHandler[StringIO]
    ) -> None:
        """Test child loggers emit JSON through the root handler."""
        root = setup_logging(log_to_stderr=False)
        root.addHandler(string_handler)

        get_logger("updates.updater").info("Server stopped", extra={"pid": 42})

        parsed = json.loads(string_handler.stream.getvalue().strip())
        assert parsed["logger"] == "pnr_ops.updates.updater"
        assert parsed["pid"] == 42


class TestGetLogger:
    """Tests for get_logger."""

    def test_adds_prefix(self) -> None:
        """Test names outside the tree are prefixed."""
        assert get_logger("custom").name == "pnr_ops.custom"

    def test_keeps_module_name(self) -> None:
        """Test module names inside the tree are kept."""
        assert get_logger("pnr_ops.remote.session").name == "pnr_ops.remote.session"
