"""
Exception hierarchy for the rebalancer.

This module defines the custom exceptions shared across the rebalancer,
organized in a hierarchy for precise error handling. Gateway-specific errors
live next to the gateway in apps/rebalancer/gateway.py.
"""

from collections.abc import Sequence


class RebalancerError(Exception):
    """
    Base exception for all rebalancer errors.

    All custom exceptions in the project inherit from this class,
    allowing for catch-all error handling when needed.

    Example:
        >>> try:
        ...     # rebalancer code
        ...     pass
        ... except RebalancerError as e:
        ...     logger.error(f"Rebalancer error: {e}")
    """

    pass


class ConfigurationError(RebalancerError):
    """
    Raised when required configuration or secrets are missing or invalid.

    Example:
        >>> if account is None:
        ...     raise ConfigurationError(f"Account with id '{account_id}' not found")
    """

    pass


class BalancingDataError(RebalancerError):
    """
    Raised when an allocation mode cannot be computed from complete data.

    Balancing must halt rather than proceed with a partial allocation. The
    message reports the mode, the missing data categories and the affected
    tickers verbatim so an operator can diagnose a data-source outage.

    Attributes:
        mode: Allocation mode that was requested
        missing_data: Data categories that were absent (e.g. "market_cap")
        affected_tickers: Tickers that lacked the data

    Example:
        >>> err = BalancingDataError("aum", ["aum"], ["TGLD"])
        >>> str(err)
        'Balancing halted: aum mode requires aum data for tickers: TGLD'
    """

    def __init__(
        self,
        mode: str,
        missing_data: Sequence[str],
        affected_tickers: Sequence[str],
    ) -> None:
        self.mode = mode
        self.missing_data = list(missing_data)
        self.affected_tickers = list(affected_tickers)
        super().__init__(
            f"Balancing halted: {mode} mode requires {', '.join(self.missing_data)} "
            f"data for tickers: {', '.join(self.affected_tickers)}"
        )


class CycleCancelled(RebalancerError):
    """Raised when a rebalancing cycle is stopped by its cancellation token."""

    pass
