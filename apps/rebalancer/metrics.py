"""Prometheus metrics definitions for the Rebalancer.

Usage:
    from apps.rebalancer.metrics import orders_total, gateway_calls_total

    orders_total.labels(phase="SELL", status="placed").inc()
    gateway_calls_total.labels(operation="post_order", outcome="success").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Gateway Metrics
# ============================================================================

gateway_calls_total = Counter(
    "rebalancer_gateway_calls_total",
    "Total brokerage API calls",
    ["operation", "outcome"],  # outcome: success, fatal, exhausted, cancelled
)

gateway_retries_total = Counter(
    "rebalancer_gateway_retries_total",
    "Total retries of brokerage API calls after a retryable error",
    ["operation"],
)

gateway_fail_open_total = Counter(
    "rebalancer_gateway_fail_open_total",
    "Total calls answered with the fail-open default after persistent failure",
    ["operation"],
)

# ============================================================================
# Business Metrics
# ============================================================================

orders_total = Counter(
    "rebalancer_orders_total",
    "Total planned orders by execution outcome",
    ["phase", "status"],  # status: placed, skipped, errored
)

cycles_total = Counter(
    "rebalancer_cycles_total",
    "Total rebalancing cycles",
    ["status"],
)

cycle_duration_seconds = Histogram(
    "rebalancer_cycle_duration_seconds",
    "Wall-clock duration of one rebalancing cycle",
)

portfolio_value_rub = Gauge(
    "rebalancer_portfolio_value_rub",
    "Planning total of the last cycle in RUB",
    ["account"],
)
