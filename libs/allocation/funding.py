"""
Funding plan for priority (non-margin) buys.

Priority instruments must be bought with real money, never on margin. When
the planned sells and the cash balance do not cover their purchase, other
holdings may be sold according to the account's selling mode:
- only_positive_positions_sell: profitable holdings, most profitable first
- equal_in_percents: all eligible holdings, proportionally to their value
- none: nothing extra is sold
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from libs.allocation.planner import OrderPlan
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import Position, Wallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionProfit:
    amount: Decimal
    percent: Decimal


@dataclass(frozen=True)
class SellInstruction:
    ticker: str
    lots: int
    amount: Decimal


def calculate_position_profit(position: Position) -> PositionProfit | None:
    """
    Unrealized profit of a holding from its average purchase price.

    Returns:
        PositionProfit for profitable holdings; None when the holding is
        empty, the purchase price is unknown, or the position is not in profit
    """
    value = position.total_price_number
    if value <= 0 or position.amount <= 0 or not position.average_price:
        return None

    cost = position.average_price * position.amount
    profit = value - cost
    if profit <= 0:
        return None
    return PositionProfit(amount=profit, percent=profit / cost * 100)


def identify_positions_for_selling(
    wallet: Wallet, priority_instruments: Sequence[str], mode: str
) -> list[Position]:
    """
    Holdings that may be sold to fund priority buys under `mode`.

    Settlement currency, blocked and empty holdings and the priority
    instruments themselves are never candidates. Profitable candidates are
    ordered by profit, largest first.
    """
    if mode == "none":
        return []

    excluded = {normalize_ticker(t) for t in priority_instruments}
    candidates = [
        p
        for p in wallet
        if not p.is_settlement_currency
        and not p.blocked
        and p.amount > 0
        and normalize_ticker(p.ticker) not in excluded
    ]

    if mode == "equal_in_percents":
        return candidates
    if mode == "only_positive_positions_sell":
        profitable = [(p, calculate_position_profit(p)) for p in candidates]
        ranked = sorted(
            ((p, profit) for p, profit in profitable if profit is not None),
            key=lambda item: item[1].amount,
            reverse=True,
        )
        return [p for p, _ in ranked]

    logger.warning("Unknown selling mode, selling nothing", extra={"mode": mode})
    return []


def calculate_required_funds(
    plan: OrderPlan,
    priority_instruments: Sequence[str],
    min_buy_rebalance_percent: float = 0.0,
) -> dict[str, Decimal]:
    """
    Money needed for the planned priority buys.

    A buy is counted only when its value reaches `min_buy_rebalance_percent`
    of the planning total.

    Returns:
        Normalized ticker -> value of the planned buy
    """
    threshold = plan.total_value * Decimal(str(min_buy_rebalance_percent)) / 100
    required: dict[str, Decimal] = {}

    for instrument in priority_instruments:
        trade = plan.trade_for(instrument)
        if trade is None or not trade.is_actionable or trade.lots <= 0:
            continue
        amount = trade.position.lot_price_number * trade.lots
        if amount < threshold:
            logger.debug(
                "Priority buy below rebalance threshold",
                extra={"ticker": instrument, "amount": str(amount), "threshold": str(threshold)},
            )
            continue
        required[normalize_ticker(instrument) or instrument] = amount

    return required


def calculate_selling_amounts(
    candidates: Sequence[Position],
    required_funds: Mapping[str, Decimal],
    mode: str,
    cash_balance: Decimal = Decimal(0),
) -> list[SellInstruction]:
    """
    Lots to sell from `candidates` to cover `required_funds`.

    A negative cash balance adds to the need; a positive one reduces it.
    In only_positive_positions_sell mode candidates are drained in order,
    rounding lots up; in equal_in_percents mode each candidate contributes
    its value share, rounding lots down.
    """
    purchases = sum(required_funds.values(), Decimal(0))
    if cash_balance < 0:
        needed = -cash_balance + purchases
    else:
        needed = max(Decimal(0), purchases - cash_balance)
    if needed <= 0 or mode == "none":
        return []

    available = sum((p.total_price_number for p in candidates), Decimal(0))
    if available < needed:
        logger.warning(
            "Sellable holdings do not cover priority buys",
            extra={"needed": str(needed), "available": str(available)},
        )

    instructions: list[SellInstruction] = []
    remaining = needed

    for position in candidates:
        if remaining <= 0:
            break
        lot_price = position.lot_price_number
        value = position.total_price_number
        if lot_price <= 0 or value <= 0:
            continue

        max_lots = math.floor(position.lots - position.blocked_lots)
        if mode == "only_positive_positions_sell":
            wanted = int((remaining / lot_price).to_integral_value(rounding=ROUND_CEILING))
        else:
            share = min(value / available * needed, value, remaining)
            wanted = int((share / lot_price).to_integral_value(rounding=ROUND_FLOOR))

        lots = min(wanted, max_lots)
        if lots <= 0:
            continue
        amount = lot_price * lots
        instructions.append(SellInstruction(ticker=position.ticker, lots=lots, amount=amount))
        remaining -= amount

    if instructions:
        logger.info(
            "Planned funding sells for priority buys",
            extra={
                "mode": mode,
                "sells": {i.ticker: i.lots for i in instructions},
                "still_needed": str(max(Decimal(0), remaining)),
            },
        )
    return instructions


def plan_funding_sells(
    plan: OrderPlan,
    priority_instruments: Sequence[str],
    mode: str,
    min_buy_rebalance_percent: float,
    cash_balance: Decimal,
) -> list[SellInstruction]:
    """
    Extra sells needed so planned priority buys are paid for.

    Proceeds of sells already in the plan count toward the need, so extra
    sells cover only the remaining shortfall.
    """
    required = calculate_required_funds(plan, priority_instruments, min_buy_rebalance_percent)
    if not required:
        return []

    planned_proceeds = sum(
        (-t.lots * t.position.lot_price_number for t in plan.actionable if t.lots < 0),
        Decimal(0),
    )
    already_selling = {normalize_ticker(t.ticker) for t in plan.actionable if t.lots < 0}
    candidates = [
        p
        for p in identify_positions_for_selling(plan.wallet, priority_instruments, mode)
        if normalize_ticker(p.ticker) not in already_selling
    ]
    return calculate_selling_amounts(candidates, required, mode, cash_balance + planned_proceeds)
