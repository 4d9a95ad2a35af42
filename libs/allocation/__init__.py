"""
Rebalancing decisions: target allocation, margin policy, lot planning.

Modules:
- desired_builder: normalized target weights per allocation mode
- margin: margin limits, strategies and transfer costs
- planner: lot deltas between current and target allocation
- funding: extra sells that pay for priority buys
"""

from libs.allocation.desired_builder import (
    AllocationMode,
    AllocationResult,
    DesiredAllocationBuilder,
    MarketDataProvider,
    Metric,
    normalize_desire,
)
from libs.allocation.funding import SellInstruction, plan_funding_sells
from libs.allocation.margin import (
    AccountMarginConfig,
    MarginCalculator,
    MarginLimitCheck,
    MarginStrategy,
    MarginStrategyDecision,
    TransferCost,
)
from libs.allocation.planner import OrderPlan, OrderPlanner, PlannedTrade, SkipReason

__all__ = [
    "AllocationMode",
    "AllocationResult",
    "DesiredAllocationBuilder",
    "MarketDataProvider",
    "Metric",
    "normalize_desire",
    "AccountMarginConfig",
    "MarginCalculator",
    "MarginLimitCheck",
    "MarginStrategy",
    "MarginStrategyDecision",
    "TransferCost",
    "OrderPlan",
    "OrderPlanner",
    "PlannedTrade",
    "SkipReason",
    "SellInstruction",
    "plan_funding_sells",
]
