"""
Portfolio share reporting.

Computes percentage shares of securities for the before/after balancing
report. Settlement currency and frozen (blocked) holdings are excluded.
"""

from __future__ import annotations

from decimal import Decimal

from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import Position, Wallet


def filter_frozen(wallet: Wallet) -> Wallet:
    """Drop blocked positions."""
    return [p for p in wallet if not p.blocked]


def available_value(wallet: Wallet) -> Decimal:
    """Total value of the wallet excluding blocked positions (cash included)."""
    return sum((p.total_price_number for p in filter_frozen(wallet)), Decimal(0))


def calculate_portfolio_shares(wallet: Wallet) -> dict[str, float]:
    """
    Percentage share of each tradeable security in the wallet.

    Returns:
        Normalized ticker -> percent of the securities total; empty when the
        total is not positive
    """
    securities = [p for p in wallet if not p.is_settlement_currency and not p.blocked]
    total = sum((p.total_price_number for p in securities), Decimal(0))
    if total <= 0:
        return {}

    shares: dict[str, float] = {}
    for position in securities:
        ticker = normalize_ticker(position.ticker) or position.ticker
        shares[ticker] = shares.get(ticker, 0.0) + float(position.total_price_number / total * 100)
    return shares


def calculate_planned_shares(wallet: Wallet) -> dict[str, float]:
    """
    Percentage shares after the planned lot deltas are filled.

    Each security's final value is `price * (current lots + planned lots) *
    lot size`, floored at zero.
    """
    final_values: dict[str, Decimal] = {}
    for position in wallet:
        if position.is_settlement_currency or position.blocked:
            continue
        final_lots = position.lots + position.lots_to_trade
        value = max(Decimal(0), position.price_number * final_lots * position.lot_size)
        ticker = normalize_ticker(position.ticker) or position.ticker
        final_values[ticker] = final_values.get(ticker, Decimal(0)) + value

    total = sum(final_values.values(), Decimal(0))
    if total <= 0:
        return {}
    return {ticker: float(value / total * 100) for ticker, value in final_values.items()}


def settlement_balance(wallet: Wallet) -> Decimal:
    """Cash balance of the settlement-currency entry (negative when borrowed)."""
    cash: Position | None = next((p for p in wallet if p.is_settlement_currency), None)
    return cash.total_price_number if cash is not None else Decimal(0)
