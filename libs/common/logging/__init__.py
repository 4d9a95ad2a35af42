"""Structured logging for the rebalancer.

Usage:
    # At startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="rebalancer", log_level="INFO")

    # Around one rebalancing cycle
    from libs.common.logging import TraceContext
    with TraceContext():
        ...
"""

from libs.common.logging.config import TraceIDFilter, configure_logging
from libs.common.logging.context import (
    TraceContext,
    clear_trace_id,
    generate_trace_id,
    get_trace_id,
    set_trace_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    "configure_logging",
    "TraceIDFilter",
    "generate_trace_id",
    "get_trace_id",
    "set_trace_id",
    "clear_trace_id",
    "TraceContext",
    "JSONFormatter",
]
