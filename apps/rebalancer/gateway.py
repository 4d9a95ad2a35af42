"""
Resilient gateway around the brokerage transport.

Every outbound call goes through ResilientGateway.call, which:
- classifies failures as retryable (timeouts, connection errors, rate
  limits, unavailable/internal server errors) or fatal (invalid argument,
  unauthenticated, permission denied)
- retries retryable failures with jittered exponential backoff
  (delay = base * 2^attempt, capped, +/-25% jitter)
- raises fatal failures after a single attempt
- tags the call with one correlation id for all of its attempts

Price and exchange-status lookups fail open: a price lookup that keeps
failing returns None, an exchange-status lookup returns "open".
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from apps.rebalancer import metrics
from apps.rebalancer.schemas import (
    BrokerAccount,
    OrderDirection,
    PortfolioResponse,
    PositionsResponse,
    PostOrderResponse,
)
from apps.rebalancer.transport import BrokerTransport, TransportError, new_order_id
from libs.common.cancellation import CancellationToken
from libs.common.exceptions import CycleCancelled, RebalancerError
from libs.portfolio.types import Instrument, Quotation

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
FATAL_STATUS_CODES = frozenset({400, 401, 403})
RETRYABLE_GRPC_CODES = frozenset(
    {"RESOURCE_EXHAUSTED", "UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED"}
)
FATAL_GRPC_CODES = frozenset({"INVALID_ARGUMENT", "UNAUTHENTICATED", "PERMISSION_DENIED"})
RETRYABLE_NETWORK_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


class GatewayError(RebalancerError):
    """
    Base exception for brokerage calls that did not succeed.

    Attributes:
        operation: Gateway operation name (e.g. "post_order")
        correlation_id: Id shared by all attempts of the call
        attempts: Number of attempts made
    """

    def __init__(self, operation: str, correlation_id: str, attempts: int, message: str) -> None:
        self.operation = operation
        self.correlation_id = correlation_id
        self.attempts = attempts
        super().__init__(message)


class RetryableGatewayError(GatewayError):
    """Transient failure (network, rate limit, server unavailable)."""

    pass


class FatalGatewayError(GatewayError):
    """Failure that retrying cannot fix (bad request, auth, permissions)."""

    pass


class RetriesExhaustedError(RetryableGatewayError):
    """
    Retryable failure that persisted for every allowed attempt.

    Attributes:
        last_error: Exception of the final attempt
    """

    def __init__(
        self, operation: str, correlation_id: str, attempts: int, last_error: BaseException | None
    ) -> None:
        self.last_error = last_error
        super().__init__(
            operation,
            correlation_id,
            attempts,
            f"{operation} failed after {attempts} attempts: {last_error}",
        )


def is_retryable(error: BaseException) -> bool:
    """
    Classify an upstream failure.

    The broker's status code name decides when known; the HTTP status is
    used otherwise. Unknown failures are treated as fatal.
    """
    if isinstance(error, RETRYABLE_NETWORK_ERRORS):
        return True
    if isinstance(error, TransportError):
        if error.code in RETRYABLE_GRPC_CODES:
            return True
        if error.code in FATAL_GRPC_CODES:
            return False
        return error.status_code in RETRYABLE_STATUS_CODES
    return False


class wait_jittered_exponential(wait_base):
    """
    Exponential backoff with symmetric jitter.

    Before retry n (n = 0 for the first retry) the delay is
    `min(base * 2^n, max_delay)` scaled by a random factor in
    [1 - jitter, 1 + jitter].
    """

    def __init__(
        self,
        base: float,
        max_delay: float,
        jitter: float = 0.25,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.base = base
        self.max_delay = max_delay
        self.jitter = jitter
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        exponent = max(0, retry_state.attempt_number - 1)
        delay = min(self.base * 2**exponent, self.max_delay)
        factor = 1 + self.jitter * (2 * self.rng() - 1)
        return max(0.0, delay * factor)


class stop_if_cancelled(stop_base):
    """Stop retrying once the cycle's cancellation token is set."""

    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.token.cancelled


class ResilientGateway:
    """
    Classification-aware retry wrapper for every brokerage operation.

    Attributes:
        transport: Brokerage transport to call
        token: Cancellation token of the running cycle
        max_attempts: Maximum attempts per call (retryable failures only)
        base_delay: Base backoff delay in seconds
        max_delay: Backoff cap in seconds before jitter

    Example:
        >>> gateway = ResilientGateway(transport, token, max_attempts=5)
        >>> accounts = await gateway.get_accounts()
        >>> price = await gateway.get_last_price("BBG000000001")
        >>> if price is None:
        ...     logger.info("No price, skipping instrument")
    """

    def __init__(
        self,
        transport: BrokerTransport,
        token: CancellationToken | None = None,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: float = 0.25,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.transport = transport
        self.token = token or CancellationToken()
        self.max_attempts = max_attempts
        self.wait = wait_jittered_exponential(base_delay, max_delay, jitter)

    async def _sleep(self, seconds: float) -> None:
        if not await self.token.sleep(seconds):
            raise CycleCancelled("Cancelled during gateway backoff")

    async def call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """
        Run one brokerage operation with retry.

        Args:
            operation: Name used in logs and metrics
            func: Transport coroutine function
            *args, **kwargs: Arguments for func

        Returns:
            The transport's response

        Raises:
            FatalGatewayError: Non-retryable failure (after exactly one attempt)
            RetriesExhaustedError: Retryable failure on every attempt
            CycleCancelled: Cancellation stopped the retries or interrupted a backoff sleep
        """
        correlation_id = str(uuid.uuid4())
        attempts = 0

        def before_sleep(retry_state: RetryCallState) -> None:
            metrics.gateway_retries_total.labels(operation=operation).inc()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"Retrying {operation} after retryable error",
                extra={
                    "operation": operation,
                    "correlation_id": correlation_id,
                    "attempt": retry_state.attempt_number,
                    "delay_seconds": round(retry_state.upcoming_sleep, 3),
                    "error": str(error),
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts) | stop_if_cancelled(self.token),
            wait=self.wait,
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=False,
        )

        logger.debug(
            f"Gateway call {operation}",
            extra={"operation": operation, "correlation_id": correlation_id},
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await func(*args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            if self.token.cancelled:
                metrics.gateway_calls_total.labels(operation=operation, outcome="cancelled").inc()
                logger.info(
                    f"{operation} cancelled after {attempts} attempts",
                    extra={"operation": operation, "correlation_id": correlation_id},
                )
                raise CycleCancelled(f"Cancelled while retrying {operation}") from last_error
            metrics.gateway_calls_total.labels(operation=operation, outcome="exhausted").inc()
            logger.error(
                f"{operation} failed after {attempts} attempts",
                extra={
                    "operation": operation,
                    "correlation_id": correlation_id,
                    "attempts": attempts,
                    "error": str(last_error),
                },
            )
            raise RetriesExhaustedError(operation, correlation_id, attempts, last_error) from last_error
        except CycleCancelled:
            metrics.gateway_calls_total.labels(operation=operation, outcome="cancelled").inc()
            raise
        except Exception as e:
            metrics.gateway_calls_total.labels(operation=operation, outcome="fatal").inc()
            logger.error(
                f"{operation} failed with non-retryable error",
                extra={
                    "operation": operation,
                    "correlation_id": correlation_id,
                    "attempts": attempts,
                    "error": str(e),
                },
            )
            raise FatalGatewayError(operation, correlation_id, attempts, str(e)) from e

        metrics.gateway_calls_total.labels(operation=operation, outcome="success").inc()
        return result

    async def get_accounts(self) -> list[BrokerAccount]:
        return await self.call("get_accounts", self.transport.get_accounts)

    async def get_portfolio(self, account_id: str) -> PortfolioResponse:
        return await self.call("get_portfolio", self.transport.get_portfolio, account_id)

    async def get_positions(self, account_id: str) -> PositionsResponse:
        return await self.call("get_positions", self.transport.get_positions, account_id)

    async def get_instruments(self, kind: str) -> list[Instrument]:
        return await self.call(f"get_instruments.{kind}", self.transport.get_instruments, kind)

    async def get_last_prices(self, figis: list[str]) -> dict[str, Quotation]:
        """
        Last prices by figi; instruments without a price are absent.

        Fails open: returns an empty map when the lookup keeps failing.
        """
        if not figis:
            return {}
        try:
            prices = await self.call("get_last_prices", self.transport.get_last_prices, figis)
        except GatewayError as e:
            metrics.gateway_fail_open_total.labels(operation="get_last_prices").inc()
            logger.warning(
                "Last price lookup failed, treating prices as unknown",
                extra={"figis": figis, "error": str(e)},
            )
            return {}
        return {
            p.figi: p.price
            for p in prices
            if p.price is not None and p.price.to_decimal() > 0
        }

    async def get_last_price(self, figi: str) -> Quotation | None:
        """Last price of one instrument; None means unknown and the caller must skip it."""
        prices = await self.get_last_prices([figi])
        return prices.get(figi)

    async def is_exchange_open(self, exchange: str, now: datetime | None = None) -> bool:
        """
        Whether `exchange` is trading at `now`.

        Fails open: returns True when the schedule cannot be fetched, since a
        closed market still rejects the orders downstream.
        """
        now = now or datetime.now(UTC)
        try:
            schedules = await self.call(
                "get_trading_schedules",
                self.transport.get_trading_schedules,
                exchange,
                now - timedelta(hours=12),
                now + timedelta(hours=12),
            )
        except GatewayError as e:
            metrics.gateway_fail_open_total.labels(operation="get_trading_schedules").inc()
            logger.warning(
                "Exchange status unavailable, assuming open",
                extra={"exchange": exchange, "error": str(e)},
            )
            return True

        for schedule in schedules:
            if schedule.exchange.upper() != exchange.upper():
                continue
            for day in schedule.days:
                if day.start_time is None or day.end_time is None:
                    continue
                if day.start_time <= now <= day.end_time:
                    return day.is_trading_day
            return False

        logger.warning(
            "No trading schedule returned, assuming open",
            extra={"exchange": exchange},
        )
        return True

    async def post_order(
        self, account_id: str, figi: str, lots: int, direction: OrderDirection
    ) -> PostOrderResponse:
        """
        Place a market order for `lots` lots.

        The idempotency key is generated once, so retries never duplicate
        the order.
        """
        order_id = new_order_id()
        return await self.call(
            "post_order", self.transport.post_order, account_id, figi, lots, direction, order_id
        )
