"""Logging configuration for the rebalancer.

Installs structured JSON output on stdout with trace ID injection. The
runner calls configure_logging() once at startup; modules use the standard
`logging.getLogger(__name__)` afterwards.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="rebalancer", log_level="INFO")
    >>> logger.info("Rebalancer started", extra={"account_id": "0"})
"""

import logging
import sys

from libs.common.logging.context import get_trace_id
from libs.common.logging.formatter import JSONFormatter


class TraceIDFilter(logging.Filter):
    """Injects the current trace ID from context into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Configure structured JSON logging on the root logger.

    Existing root handlers are removed to avoid duplicate output.

    Args:
        service_name: Name reported in the "service" field
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include the context dict in output

    Returns:
        Configured root logger instance

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(TraceIDFilter())
    root_logger.addHandler(handler)

    # httpx logs every request at INFO; the gateway already logs each call.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    return root_logger
