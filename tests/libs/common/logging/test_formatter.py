"""Tests for JSON log formatter.

Tests verify that logs are formatted correctly with:
- Required schema fields (timestamp, level, service, trace_id, message)
- Context fields passed through `extra=`
- Exception information
"""

import json
import logging
import sys
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from libs.common.logging.formatter import JSONFormatter


def _record(msg: str = "Order placed", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="apps.rebalancer.executor",
        level=level,
        pathname="/path/to/executor.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    @pytest.fixture
    def formatter(self) -> JSONFormatter:
        return JSONFormatter(service_name="rebalancer")

    def test_basic_log_format(self, formatter: JSONFormatter) -> None:
        """Required fields are present and the output is one JSON object."""
        log_dict = json.loads(formatter.format(_record(trace_id="cycle-123")))

        assert log_dict["level"] == "INFO"
        assert log_dict["service"] == "rebalancer"
        assert log_dict["logger"] == "apps.rebalancer.executor"
        assert log_dict["trace_id"] == "cycle-123"
        assert log_dict["message"] == "Order placed"
        assert "context" not in log_dict

    def test_timestamp_format(self, formatter: JSONFormatter) -> None:
        """Timestamp is ISO 8601 UTC with millisecond precision."""
        record = _record()
        record.created = datetime(2026, 3, 10, 9, 30, 0, 123456, tzinfo=UTC).timestamp()

        log_dict = json.loads(formatter.format(record))

        assert log_dict["timestamp"] == "2026-03-10T09:30:00.123Z"

    def test_missing_trace_id_is_null(self, formatter: JSONFormatter) -> None:
        assert json.loads(formatter.format(_record()))["trace_id"] is None

    def test_extra_fields_become_context(self, formatter: JSONFormatter) -> None:
        """Fields passed with extra= end up under "context"."""
        record = _record(phase="SELL", ticker="TRUR", lots=-3)

        log_dict = json.loads(formatter.format(record))

        assert log_dict["context"] == {"phase": "SELL", "ticker": "TRUR", "lots": -3}

    def test_explicit_context_dict(self, formatter: JSONFormatter) -> None:
        record = _record(context={"account": "0"})

        assert json.loads(formatter.format(record))["context"] == {"account": "0"}

    def test_context_can_be_disabled(self) -> None:
        formatter = JSONFormatter(service_name="rebalancer", include_context=False)

        log_dict = json.loads(formatter.format(_record(ticker="TRUR")))

        assert "context" not in log_dict

    def test_non_serializable_values_use_str(self, formatter: JSONFormatter) -> None:
        log_dict = json.loads(formatter.format(_record(value=Decimal("150000.5"))))

        assert log_dict["context"]["value"] == "150000.5"

    def test_exception_info(self, formatter: JSONFormatter) -> None:
        """Exceptions are reported with type, message and traceback."""
        try:
            raise ValueError("bad lot size")
        except ValueError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        log_dict = json.loads(formatter.format(record))

        assert log_dict["exception"]["type"] == "ValueError"
        assert log_dict["exception"]["message"] == "bad lot size"
        assert "Traceback" in log_dict["exception"]["traceback"]
