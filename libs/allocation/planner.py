"""
Order Planner.

Diffs the current wallet against the target allocation and produces one
PlannedTrade per position:

    lots = floor(|target value - current value| / lot price) * sign

Positions that cannot be traded get a distinct SkipReason instead of a
zero delta, so "skipped for business reasons" stays distinguishable from
"failed" further down the pipeline. Trades keep the wallet's order.
An empty target (no positive weight) plans no orders at all.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from enum import Enum

from libs.allocation.desired_builder import normalize_desire
from libs.portfolio.shares import available_value
from libs.portfolio.tickers import alias_weights, normalize_ticker
from libs.portfolio.types import DesiredWallet, Position, Wallet, validate_wallet

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    SETTLEMENT_CURRENCY = "settlement_currency"
    BLOCKED = "blocked"
    NO_INSTRUMENT_ID = "no_instrument_id"
    SUB_LOT = "sub_lot"
    NON_FINITE_DELTA = "non_finite_delta"
    ZERO_DELTA = "zero_delta"
    EMPTY_TARGET = "empty_target"


@dataclass(frozen=True)
class PlannedTrade:
    """
    Planned lot delta for one position.

    Attributes:
        position: Position with `lots_to_trade` set to `lots`
        target_value: Target value of the holding
        delta_value: Target minus current value
        skip_reason: Why no order is generated, None for actionable trades
    """

    position: Position
    target_value: Decimal
    delta_value: Decimal
    skip_reason: SkipReason | None = None

    @property
    def ticker(self) -> str:
        return self.position.ticker

    @property
    def lots(self) -> int:
        return self.position.lots_to_trade

    @property
    def is_actionable(self) -> bool:
        return self.skip_reason is None and self.lots != 0


@dataclass
class OrderPlan:
    """Planner output: trades in wallet order plus the planning inputs."""

    trades: list[PlannedTrade]
    total_value: Decimal
    desired: DesiredWallet = field(default_factory=dict)

    @property
    def wallet(self) -> Wallet:
        return [trade.position for trade in self.trades]

    @property
    def actionable(self) -> list[PlannedTrade]:
        return [trade for trade in self.trades if trade.is_actionable]

    def trade_for(self, ticker: str) -> PlannedTrade | None:
        key = normalize_ticker(ticker)
        return next((t for t in self.trades if normalize_ticker(t.ticker) == key), None)

    def apply_extra_sells(self, extra_lots: Mapping[str, int]) -> None:
        """
        Add funding sells on top of the planned deltas.

        Each entry lowers the ticker's lot delta by the given number of lots.
        A position previously skipped as sub-lot or zero-delta becomes
        actionable; other skip reasons are kept.
        """
        for ticker, lots in extra_lots.items():
            if lots <= 0:
                continue
            trade = self.trade_for(ticker)
            if trade is None:
                continue
            if trade.skip_reason not in (None, SkipReason.SUB_LOT, SkipReason.ZERO_DELTA):
                continue
            sellable = _sellable_lots(trade.position)
            new_lots = max(trade.lots - lots, -sellable)
            index = self.trades.index(trade)
            self.trades[index] = PlannedTrade(
                position=trade.position.model_copy(update={"lots_to_trade": new_lots}),
                target_value=trade.target_value,
                delta_value=trade.delta_value,
                skip_reason=None if new_lots != 0 else trade.skip_reason,
            )


def _sellable_lots(position: Position) -> int:
    return max(0, math.floor(position.lots - position.blocked_lots))


class OrderPlanner:
    """
    Computes per-position lot deltas toward a target allocation.

    The planning total is the value of all non-blocked positions including
    the settlement balance, unless a total is passed explicitly (margin
    planning).

    Example:
        >>> plan = OrderPlanner().plan(wallet, {"TRUR": 60, "TMOS": 40})
        >>> [(t.ticker, t.lots) for t in plan.actionable]
        [('TRUR', -1388), ('TMOS', 1240)]
    """

    def plan(
        self,
        wallet: Wallet,
        desired: DesiredWallet,
        total_value: Decimal | None = None,
    ) -> OrderPlan:
        """
        Plan lot deltas for every position of `wallet`.

        Args:
            wallet: Current positions (fresh snapshot of this cycle)
            desired: Target weights; normalized and aliased here
            total_value: Value to allocate; defaults to the available value

        Returns:
            OrderPlan with one PlannedTrade per position, in wallet order

        Raises:
            ValueError: If the wallet has more than one settlement entry
        """
        validate_wallet(wallet)
        target = normalize_desire(alias_weights(normalize_desire(desired)))
        total = available_value(wallet) if total_value is None else total_value

        if target:
            trades = [self._plan_position(position, target, total) for position in wallet]
        else:
            logger.warning(
                "Target allocation is empty, no orders planned",
                extra={"desired": dict(desired)},
            )
            trades = [self._hold(position) for position in wallet]

        skipped = {
            t.ticker: t.skip_reason.value
            for t in trades
            if t.skip_reason is not None and t.skip_reason is not SkipReason.SETTLEMENT_CURRENCY
        }
        logger.info(
            "Planned rebalancing orders",
            extra={
                "total_value": str(total),
                "orders": {t.ticker: t.lots for t in trades if t.is_actionable},
                "skipped": skipped,
            },
        )
        return OrderPlan(trades=trades, total_value=total, desired=target)

    def _plan_position(
        self, position: Position, target: DesiredWallet, total: Decimal
    ) -> PlannedTrade:
        current = position.total_price_number

        if position.is_settlement_currency:
            return self._skip(position, current, SkipReason.SETTLEMENT_CURRENCY)
        if position.blocked:
            return self._skip(position, current, SkipReason.BLOCKED)

        percent = target.get(normalize_ticker(position.ticker) or position.ticker, 0.0)
        target_value = total * Decimal(str(percent)) / 100
        delta = target_value - current

        if not position.figi:
            return self._skip(position, target_value, SkipReason.NO_INSTRUMENT_ID, delta)

        lot_price = position.lot_price_number
        if not delta.is_finite() or not lot_price.is_finite() or lot_price <= 0:
            return self._skip(position, target_value, SkipReason.NON_FINITE_DELTA, delta)

        if delta == 0:
            return self._skip(position, target_value, SkipReason.ZERO_DELTA, delta)

        magnitude = int((abs(delta) / lot_price).to_integral_value(rounding=ROUND_FLOOR))
        if delta < 0:
            magnitude = min(magnitude, _sellable_lots(position))
        if magnitude < 1:
            return self._skip(position, target_value, SkipReason.SUB_LOT, delta)

        lots = magnitude if delta > 0 else -magnitude
        return PlannedTrade(
            position=position.model_copy(update={"lots_to_trade": lots}),
            target_value=target_value,
            delta_value=delta,
        )

    def _hold(self, position: Position) -> PlannedTrade:
        current = position.total_price_number
        if position.is_settlement_currency:
            return self._skip(position, current, SkipReason.SETTLEMENT_CURRENCY)
        return self._skip(position, current, SkipReason.EMPTY_TARGET)

    @staticmethod
    def _skip(
        position: Position,
        target_value: Decimal,
        reason: SkipReason,
        delta: Decimal = Decimal(0),
    ) -> PlannedTrade:
        return PlannedTrade(
            position=position.model_copy(update={"lots_to_trade": 0}),
            target_value=target_value,
            delta_value=delta,
            skip_reason=reason,
        )
