"""Cycle-scoped cancellation signal for cooperative suspension points."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """
    Cancellation signal shared by every suspension point of a cycle.

    Sleeps go through `sleep()`, which returns early once the token is
    cancelled. Callers decide what an interrupted wait means for them (the
    executor stops starting new phases, the gateway stops retrying).

    Example:
        >>> token = CancellationToken()
        >>> completed = await token.sleep(3.0)
        >>> if not completed:
        ...     logger.info("Stopping: cancellation requested")
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """
        Wait for `seconds` unless cancelled first.

        Returns:
            True if the full delay elapsed, False if cancellation cut it short
        """
        if self._event.is_set():
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False


__all__ = ["CancellationToken"]
