"""Trace ID propagation for rebalancing cycles.

Each rebalancing cycle runs under one trace ID so every log line it emits,
including gateway retries and per-order outcomes, can be grouped together.
Trace IDs are UUIDv4 strings stored in a context variable, which keeps them
isolated between concurrently running asyncio tasks.

Example:
    >>> from libs.common.logging.context import TraceContext, get_trace_id
    >>> with TraceContext() as trace_id:
    ...     assert get_trace_id() == trace_id
"""

import contextvars
import uuid
from types import TracebackType

_trace_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("trace_id", default=None)


def generate_trace_id() -> str:
    """Generate a new unique trace ID (UUID v4 string)."""
    return str(uuid.uuid4())


def get_trace_id() -> str | None:
    """Get the trace ID of the current context, or None if unset."""
    return _trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    """Set the trace ID for the current context.

    Args:
        trace_id: The trace ID to set

    Raises:
        ValueError: If trace_id is empty
    """
    if not trace_id:
        raise ValueError("Trace ID cannot be empty")
    _trace_id_var.set(trace_id)


def clear_trace_id() -> None:
    """Remove the trace ID from the current context."""
    _trace_id_var.set(None)


class TraceContext:
    """Context manager that scopes a trace ID to one block (one cycle).

    The previous trace ID, if any, is restored on exit.

    Args:
        trace_id: Trace ID to use. If None, a new one is generated.

    Example:
        >>> with TraceContext("cycle-123"):
        ...     print(get_trace_id())
        cycle-123
    """

    def __init__(self, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or generate_trace_id()
        self.previous_trace_id: str | None = None

    def __enter__(self) -> str:
        self.previous_trace_id = get_trace_id()
        set_trace_id(self.trace_id)
        return self.trace_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.previous_trace_id is not None:
            set_trace_id(self.previous_trace_id)
        else:
            clear_trace_id()
