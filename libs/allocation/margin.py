"""
Margin-trading policy.

The MarginCalculator validates and applies an account's margin policy to a
set of positions:
- validate_margin_limits: total borrowed notional against the configured cap
- apply_margin_strategy: whether margin should be unwound near session close
- calculate_transfer_cost: overnight transfer fee for positions above the free threshold
- identify_margin_positions: attribute a negative cash balance to the holdings it finances
- planning_total: portfolio value the planner may target given the policy

All money values are Decimal; configuration floats are converted via str()
to keep them exact.

Example:
    >>> config = AccountMarginConfig(enabled=True, multiplier=2, free_threshold=5000,
    ...                              max_margin_size=10000)
    >>> calc = MarginCalculator(config)
    >>> check = calc.validate_margin_limits(margin_positions)
    >>> if not check.is_valid:
    ...     logger.warning(f"Margin cap exceeded by {check.exceeded_amount}")
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from libs.portfolio.shares import settlement_balance
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import MarginPosition, Position, Wallet, is_margin_position

logger = logging.getLogger(__name__)

TRANSFER_FEE_RATE = Decimal("0.01")
# The last cycle of a session is always treated as "near close".
LAST_BALANCE_WINDOW_MINUTES = 15
EXCHANGE_TZ = ZoneInfo("Europe/Moscow")


class MarginStrategy(str, Enum):
    """How margin positions are treated near session close."""

    REMOVE = "remove"
    KEEP = "keep"
    KEEP_IF_SMALL = "keep_if_small"


class AccountMarginConfig(BaseModel):
    """
    Margin-trading policy of one account. Read-only for a cycle.

    `max_margin_size` falls back to `free_threshold` when not configured.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    multiplier: float = Field(default=1.0, ge=1.0, le=4.0)
    free_threshold: float = Field(default=5000.0, ge=0)
    max_margin_size: float | None = Field(default=None, ge=0)
    balancing_strategy: MarginStrategy = MarginStrategy.KEEP_IF_SMALL

    @property
    def effective_max_margin_size(self) -> float:
        return self.max_margin_size if self.max_margin_size is not None else self.free_threshold


@dataclass(frozen=True)
class MarginLimitCheck:
    """Result of validate_margin_limits; exceeded_amount is set only when invalid."""

    is_valid: bool
    total_margin_used: Decimal
    max_margin_allowed: Decimal
    exceeded_amount: Decimal | None = None


@dataclass(frozen=True)
class MarginUsage:
    is_valid: bool
    available_margin: Decimal
    used_margin: Decimal
    remaining_margin: Decimal
    risk_level: Literal["low", "medium", "high"]


@dataclass(frozen=True)
class TransferCostItem:
    ticker: str
    cost: Decimal
    is_free: bool


@dataclass(frozen=True)
class TransferCost:
    total_cost: Decimal
    free_transfers: int
    paid_transfers: int
    breakdown: tuple[TransferCostItem, ...]


@dataclass(frozen=True)
class MarginTimeInfo:
    minutes_to_close: int
    minutes_to_next_balance: float
    is_last_balance: bool


@dataclass(frozen=True)
class MarginStrategyDecision:
    should_remove_margin: bool
    reason: str
    transfer_cost: Decimal
    time_info: MarginTimeInfo


def _dec(value: float | int) -> Decimal:
    return Decimal(str(value))


class MarginCalculator:
    """
    Applies an immutable AccountMarginConfig to positions.

    Attributes:
        config: Margin policy of the account
        tz: Exchange time zone used for time-of-day comparisons
    """

    def __init__(self, config: AccountMarginConfig, tz: ZoneInfo = EXCHANGE_TZ) -> None:
        self.config = config
        self.tz = tz

    @property
    def max_margin_size(self) -> Decimal:
        return _dec(self.config.effective_max_margin_size)

    def calculate_available_margin(self, wallet: Sequence[Position]) -> Decimal:
        """Borrowing capacity: total value * (multiplier - 1)."""
        total = sum((p.total_price_number for p in wallet), Decimal(0))
        return total * (_dec(self.config.multiplier) - 1)

    def validate_margin_limits(self, positions: Sequence[Position]) -> MarginLimitCheck:
        """
        Compare the margin notional of flagged positions with the cap.

        Args:
            positions: Positions to inspect; only margin-flagged ones count

        Returns:
            MarginLimitCheck; exceeded_amount = used - allowed when invalid

        Example:
            >>> check = calc.validate_margin_limits([pos_with_margin_value_12000])
            >>> check.is_valid, check.exceeded_amount
            (False, Decimal('2000'))
        """
        total_used = sum(
            (p.margin_value for p in positions if is_margin_position(p)),  # type: ignore[attr-defined]
            Decimal(0),
        )
        max_allowed = self.max_margin_size
        is_valid = total_used <= max_allowed
        return MarginLimitCheck(
            is_valid=is_valid,
            total_margin_used=total_used,
            max_margin_allowed=max_allowed,
            exceeded_amount=None if is_valid else total_used - max_allowed,
        )

    def check_margin_limits(
        self, wallet: Sequence[Position], positions: Sequence[Position]
    ) -> MarginUsage:
        """Borrowing capacity usage with a coarse risk level (60% / 80% thresholds)."""
        available = self.calculate_available_margin(wallet)
        used = sum(
            (p.margin_value for p in positions if is_margin_position(p)),  # type: ignore[attr-defined]
            Decimal(0),
        )
        remaining = available - used

        if available > 0:
            usage = used / available
        else:
            usage = Decimal(1) if used > 0 else Decimal(0)

        risk_level: Literal["low", "medium", "high"] = "low"
        if usage > Decimal("0.8"):
            risk_level = "high"
        elif usage > Decimal("0.6"):
            risk_level = "medium"

        return MarginUsage(
            is_valid=remaining >= 0,
            available_margin=available,
            used_margin=used,
            remaining_margin=remaining,
            risk_level=risk_level,
        )

    def calculate_transfer_cost(self, positions: Sequence[Position]) -> TransferCost:
        """
        Overnight transfer cost of margin positions.

        Positions at or under the free threshold transfer for free; larger
        ones cost TRANSFER_FEE_RATE of their value.
        """
        threshold = _dec(self.config.free_threshold)
        total = Decimal(0)
        free = paid = 0
        breakdown: list[TransferCostItem] = []

        for position in positions:
            value = position.total_price_number
            is_free = value <= threshold
            cost = Decimal(0) if is_free else value * TRANSFER_FEE_RATE
            if is_free:
                free += 1
            else:
                paid += 1
                total += cost
            breakdown.append(TransferCostItem(ticker=position.ticker, cost=cost, is_free=is_free))

        return TransferCost(
            total_cost=total, free_transfers=free, paid_transfers=paid, breakdown=tuple(breakdown)
        )

    def time_info(
        self, now: datetime, interval_ms: int, cutoff_time_of_day: str
    ) -> MarginTimeInfo:
        """
        Minutes until the session cutoff and whether this is the last cycle.

        A cycle is the last one when the next cycle would start after the
        cutoff, when fewer than LAST_BALANCE_WINDOW_MINUTES remain, or when
        the cutoff has already passed.
        """
        local = now.astimezone(self.tz) if now.tzinfo is not None else now
        close_hour, close_minute = (int(part) for part in cutoff_time_of_day.split(":"))
        minutes_to_close = (close_hour * 60 + close_minute) - (local.hour * 60 + local.minute)
        minutes_to_next = interval_ms / 60_000

        is_last = (
            minutes_to_close <= 0
            or minutes_to_close < minutes_to_next
            or minutes_to_close < LAST_BALANCE_WINDOW_MINUTES
        )
        return MarginTimeInfo(
            minutes_to_close=minutes_to_close,
            minutes_to_next_balance=minutes_to_next,
            is_last_balance=is_last,
        )

    def apply_margin_strategy(
        self,
        positions: Sequence[Position],
        strategy: MarginStrategy | None = None,
        now: datetime | None = None,
        interval_ms: int = 3_600_000,
        cutoff_time_of_day: str = "18:45",
    ) -> MarginStrategyDecision:
        """
        Decide whether margin positions should be closed this cycle.

        Nothing is removed unless the evaluation time is within `interval_ms`
        of the cutoff. Near close:
        - remove: always unwind
        - keep: never unwind
        - keep_if_small: unwind only if the margin positions' total value
          exceeds the configured maximum margin size

        Args:
            positions: Margin positions to evaluate
            strategy: Overrides the configured strategy
            now: Evaluation time (defaults to current exchange time)
            interval_ms: Time between cycles in milliseconds
            cutoff_time_of_day: Session close as "HH:MM"
        """
        effective = strategy or self.config.balancing_strategy
        now = now or datetime.now(self.tz)
        info = self.time_info(now, interval_ms, cutoff_time_of_day)

        if not info.is_last_balance:
            return MarginStrategyDecision(
                should_remove_margin=False,
                reason="Not time to apply margin strategy",
                transfer_cost=Decimal(0),
                time_info=info,
            )

        transfer = self.calculate_transfer_cost(positions)
        minutes = info.minutes_to_close

        if effective is MarginStrategy.REMOVE:
            return MarginStrategyDecision(
                should_remove_margin=True,
                reason=f"Strategy: remove margin at market close (time to close: {minutes} min)",
                transfer_cost=transfer.total_cost,
                time_info=info,
            )

        if effective is MarginStrategy.KEEP:
            return MarginStrategyDecision(
                should_remove_margin=False,
                reason=f"Strategy: keep margin (time to close: {minutes} min)",
                transfer_cost=Decimal(0),
                time_info=info,
            )

        total_value = sum((p.total_price_number for p in positions), Decimal(0))
        max_allowed = self.max_margin_size
        should_remove = total_value > max_allowed
        if should_remove:
            reason = (
                f"Strategy: remove margin (sum {total_value:.2f} rub > max {max_allowed:.2f} rub, "
                f"time to close: {minutes} min)"
            )
        else:
            reason = (
                f"Strategy: keep margin (sum {total_value:.2f} rub <= max {max_allowed:.2f} rub, "
                f"time to close: {minutes} min)"
            )
        return MarginStrategyDecision(
            should_remove_margin=should_remove,
            reason=reason,
            transfer_cost=transfer.total_cost if should_remove else Decimal(0),
            time_info=info,
        )

    def identify_margin_positions(
        self, wallet: Wallet, non_margin_instruments: Sequence[str] = ()
    ) -> Wallet:
        """
        Flag the holdings financed by a negative settlement balance.

        The borrowed amount is attributed to tradeable, non-blocked
        securities outside `non_margin_instruments`, in proportion to their
        value. Other positions are returned unchanged.

        Returns:
            New wallet in the same order, with financed holdings replaced by
            MarginPosition instances
        """
        borrowed = -settlement_balance(wallet)
        if not self.config.enabled or borrowed <= 0:
            return list(wallet)

        excluded = {normalize_ticker(t) for t in non_margin_instruments}
        eligible = [
            p
            for p in wallet
            if not p.is_settlement_currency
            and not p.blocked
            and normalize_ticker(p.ticker) not in excluded
            and p.total_price_number > 0
        ]
        eligible_total = sum((p.total_price_number for p in eligible), Decimal(0))
        if eligible_total <= 0:
            return list(wallet)

        multiplier = _dec(self.config.multiplier)
        eligible_ids = {id(p) for p in eligible}
        result: Wallet = []
        for position in wallet:
            if id(position) not in eligible_ids:
                result.append(position)
                continue

            value = position.total_price_number
            margin_value = borrowed * value / eligible_total
            own_funds = value - margin_value
            leverage = value / own_funds if own_funds > 0 else None
            result.append(
                MarginPosition.model_validate(
                    {
                        **position.model_dump(),
                        "is_margin": True,
                        "margin_value": margin_value,
                        "leverage": leverage,
                        "margin_call": leverage is None or leverage > multiplier,
                    }
                )
            )

        logger.info(
            "Attributed borrowed funds to margin positions",
            extra={
                "borrowed": str(borrowed),
                "margin_positions": [p.ticker for p in eligible],
            },
        )
        return result

    def planning_total(self, equity: Decimal, remove_margin: bool) -> Decimal:
        """
        Portfolio value the planner may allocate.

        Without margin (disabled, being removed, or multiplier 1) this is the
        equity. Otherwise leverage is used up to
        min(equity * multiplier, equity + max margin size).
        """
        if not self.config.enabled or remove_margin or equity <= 0:
            return equity
        multiplier = _dec(self.config.multiplier)
        if multiplier <= 1:
            return equity
        return min(equity * multiplier, equity + self.max_margin_size)
