"""Tests for logging configuration.

Tests verify:
- configure_logging sets up JSON logging on the root logger
- TraceIDFilter adds trace IDs to log records
"""

import json
import logging

import pytest

from libs.common.logging.config import TraceIDFilter, configure_logging
from libs.common.logging.context import TraceContext, clear_trace_id, set_trace_id


class TestTraceIDFilter:
    """Test suite for TraceIDFilter."""

    def setup_method(self) -> None:
        clear_trace_id()

    def teardown_method(self) -> None:
        clear_trace_id()

    def _record(self) -> logging.LogRecord:
        return logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="/path/to/file.py",
            lineno=42,
            msg="Test",
            args=(),
            exc_info=None,
        )

    def test_filter_adds_trace_id_to_record(self) -> None:
        record = self._record()

        set_trace_id("cycle-123")
        result = TraceIDFilter().filter(record)

        assert result is True
        assert record.trace_id == "cycle-123"

    def test_filter_without_trace_id(self) -> None:
        record = self._record()

        TraceIDFilter().filter(record)

        assert record.trace_id is None


class TestConfigureLogging:
    """Test suite for configure_logging."""

    @pytest.fixture(autouse=True)
    def _restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)
        clear_trace_id()

    def test_configures_root_logger(self) -> None:
        logger = configure_logging(service_name="rebalancer", log_level="DEBUG")

        assert logger is logging.getLogger()
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_invalid_level(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging(service_name="rebalancer", log_level="LOUD")

    def test_output_is_json_with_trace_id(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(service_name="rebalancer", log_level="INFO")

        with TraceContext("cycle-42"):
            logging.getLogger("apps.rebalancer.cycle").info(
                "Starting rebalancing cycle", extra={"account": "0"}
            )

        line = capsys.readouterr().out.strip().splitlines()[-1]
        log_dict = json.loads(line)
        assert log_dict["service"] == "rebalancer"
        assert log_dict["trace_id"] == "cycle-42"
        assert log_dict["context"] == {"account": "0"}
