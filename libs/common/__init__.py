"""Common utilities and exceptions."""

from libs.common.cancellation import CancellationToken
from libs.common.exceptions import (
    BalancingDataError,
    ConfigurationError,
    CycleCancelled,
    RebalancerError,
)

__all__ = [
    "RebalancerError",
    "ConfigurationError",
    "BalancingDataError",
    "CycleCancelled",
    "CancellationToken",
]
