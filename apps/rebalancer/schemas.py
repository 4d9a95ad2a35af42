"""
Pydantic schemas for the Rebalancer.

Defines models for:
- T-Invest REST payloads (accounts, portfolio, positions, prices, schedules, orders)
- Per-order outcomes and execution phases
- Balancing report and cycle result
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from libs.allocation.desired_builder import Metric
from libs.portfolio.types import Quotation

# ==============================================================================
# T-Invest REST Models
# ==============================================================================


class BrokerModel(BaseModel):
    """Base for broker payloads: camelCase on the wire, unknown fields ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class BrokerAccount(BrokerModel):
    id: str
    type: str = "ACCOUNT_TYPE_UNSPECIFIED"
    name: str = ""
    status: str = "ACCOUNT_STATUS_UNSPECIFIED"


class PortfolioPosition(BrokerModel):
    """One entry of OperationsService/GetPortfolio."""

    figi: str
    instrument_type: str = ""
    quantity: Quotation = Field(default_factory=Quotation)
    average_position_price: Quotation | None = None
    current_price: Quotation | None = None
    blocked: bool = False
    blocked_lots: Quotation | None = None
    ticker: str | None = None


class PortfolioResponse(BrokerModel):
    positions: list[PortfolioPosition] = Field(default_factory=list)


class PositionsSecurity(BrokerModel):
    figi: str
    blocked: int = 0
    balance: int = 0
    instrument_type: str = ""
    ticker: str | None = None


class PositionsResponse(BrokerModel):
    """OperationsService/GetPositions: money balances and blocked quantities."""

    money: list[Quotation] = Field(default_factory=list)
    blocked: list[Quotation] = Field(default_factory=list)
    securities: list[PositionsSecurity] = Field(default_factory=list)


class LastPrice(BrokerModel):
    figi: str
    price: Quotation | None = None
    time: datetime | None = None


class TradingDay(BrokerModel):
    date: datetime
    is_trading_day: bool = False
    start_time: datetime | None = None
    end_time: datetime | None = None


class TradingSchedule(BrokerModel):
    exchange: str
    days: list[TradingDay] = Field(default_factory=list)


class OrderDirection(str, Enum):
    BUY = "ORDER_DIRECTION_BUY"
    SELL = "ORDER_DIRECTION_SELL"


class PostOrderResponse(BrokerModel):
    order_id: str
    execution_report_status: str = "EXECUTION_REPORT_STATUS_UNSPECIFIED"
    lots_requested: int = 0
    lots_executed: int = 0
    figi: str | None = None
    direction: str | None = None


# ==============================================================================
# Execution Models
# ==============================================================================


class Phase(str, Enum):
    SELL = "SELL"
    PRIORITY_BUY = "PRIORITY_BUY"
    REMAINDER = "REMAINDER"


class OutcomeStatus(str, Enum):
    PLACED = "placed"
    SKIPPED = "skipped"
    ERRORED = "errored"


class OrderOutcome(BaseModel):
    """Result of one planned order: placed, skipped for a business reason, or errored."""

    ticker: str
    figi: str | None = None
    phase: Phase | None = None
    lots: int
    status: OutcomeStatus
    order_id: str | None = None
    skip_reason: str | None = None
    error_message: str | None = None


class PhaseReport(BaseModel):
    phase: Phase
    outcomes: list[OrderOutcome] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None


class ExecutionReport(BaseModel):
    """Executor output; phases that never started are absent."""

    phases: list[PhaseReport] = Field(default_factory=list)
    skipped: list[OrderOutcome] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def outcomes(self) -> list[OrderOutcome]:
        return [o for phase in self.phases for o in phase.outcomes] + self.skipped

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)


# ==============================================================================
# Cycle Models
# ==============================================================================


class BalancingReport(BaseModel):
    """Share percentages before the cycle and as planned after it."""

    before_shares: dict[str, float]
    after_shares: dict[str, float]
    target_shares: dict[str, float]
    settlement_balance: Decimal
    total_value: Decimal


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"
    HALTED = "halted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CycleResult(BaseModel):
    """Result of one rebalancing cycle."""

    cycle_id: str
    account_id: str
    status: CycleStatus
    mode_applied: str | None = None
    metrics: list[Metric] = Field(default_factory=list)
    margin: dict[str, Any] | None = None
    execution: ExecutionReport | None = None
    report: BalancingReport | None = None
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
