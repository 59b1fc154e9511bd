"""Tests for structured logging."""

import json
import logging
import sys

import pytest

from shelfsync.infrastructure.observability.logger_template import log_operation
from shelfsync.infrastructure.observability.logging import (
    CompactExceptionFormatter,
    CorrelationIdFilter,
    CustomJsonFormatter,
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)


class TestCorrelationId:
    """Test correlation ID functionality."""

    def test_set_and_get_correlation_id(self):
        """Test setting and getting correlation ID."""
        test_id = "test-123-abc"
        result = set_correlation_id(test_id)
        assert result == test_id
        assert get_correlation_id() == test_id

    def test_set_correlation_id_generates_uuid_when_none(self):
        """Test that setting None generates a UUID."""
        result = set_correlation_id(None)
        assert len(result) == 36
        assert get_correlation_id() == result

    def test_filter_injects_correlation_id(self):
        """The filter copies the context value onto every record."""
        set_correlation_id("batch-42")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "batch-42"


class TestLoggingConfiguration:
    """Test logging configuration."""

    def test_configure_logging_debug_level(self):
        """Test configuring logging with DEBUG level."""
        configure_logging(log_level="DEBUG", json_format=False, app_name="test-app")
        logger = logging.getLogger("test")
        assert logger.getEffectiveLevel() <= logging.DEBUG

    def test_configure_logging_info_level(self):
        """Test configuring logging with INFO level."""
        configure_logging(log_level="INFO", json_format=False, app_name="test-app")
        logger = logging.getLogger("test")
        assert logger.getEffectiveLevel() == logging.INFO

    def test_configure_logging_json_format(self):
        """JSON mode installs exactly one handler with the JSON formatter."""
        configure_logging(log_level="INFO", json_format=True, app_name="test-app")
        root_logger = logging.getLogger()
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, CustomJsonFormatter)

    def test_configure_logging_text_format(self):
        """Text mode uses the compact exception formatter."""
        configure_logging(log_level="INFO", json_format=False, app_name="test-app")
        root_logger = logging.getLogger()
        assert isinstance(root_logger.handlers[0].formatter, CompactExceptionFormatter)

    def test_configure_logging_quiets_httpx(self):
        """The SSE stream would flood logs otherwise."""
        configure_logging(log_level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING


class TestFormatters:
    """Test formatter output."""

    def test_json_formatter_includes_correlation_id(self):
        """JSON records carry level, logger and correlation id."""
        formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
        record = logging.LogRecord(
            "shelfsync.test", logging.WARNING, __file__, 10, "hello %s", ("world",), None
        )
        record.correlation_id = "corr-1"

        data = json.loads(formatter.format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "WARNING"
        assert data["logger"] == "shelfsync.test"
        assert data["correlation_id"] == "corr-1"

    def test_compact_formatter_shows_root_cause_first(self):
        """Chained exceptions are printed root cause first."""
        formatter = CompactExceptionFormatter()
        try:
            try:
                raise ConnectionError("socket closed")
            except ConnectionError as e:
                raise RuntimeError("command failed") from e
        except RuntimeError:
            text = formatter.formatException(sys.exc_info())

        lines = [line for line in text.splitlines() if line.startswith("╰─►")]
        assert lines == [
            "╰─► ConnectionError: socket closed",
            "╰─► RuntimeError: command failed",
        ]


class TestLogOperation:
    """Test the log_operation context manager."""

    async def test_logs_started_and_completed(self, caplog: pytest.LogCaptureFixture):
        """Successful operations log start and completion with duration."""
        logger = logging.getLogger("shelfsync.test.op")
        with caplog.at_level(logging.INFO, logger="shelfsync.test.op"):
            async with log_operation(logger, "ledger.apply", requested=2):
                pass

        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["ledger.apply.started", "ledger.apply.completed"]
        assert caplog.records[1].requested == 2
        assert caplog.records[1].duration_ms >= 0

    async def test_logs_failure_and_reraises(self, caplog: pytest.LogCaptureFixture):
        """Failures are logged with error details and re-raised."""
        logger = logging.getLogger("shelfsync.test.op")
        with caplog.at_level(logging.INFO, logger="shelfsync.test.op"):
            with pytest.raises(ValueError):
                async with log_operation(logger, "ledger.remove"):
                    raise ValueError("boom")

        failed = caplog.records[-1]
        assert failed.getMessage() == "ledger.remove.failed"
        assert failed.error == "boom"
        assert failed.error_type == "ValueError"
