"""
Root conftest for tests.

Provides factories for the portfolio objects most tests build:
- make_position: securities and the RUB settlement entry
- make_trade: planned trades with a given lot delta
"""

from collections.abc import Callable
from decimal import Decimal
from typing import Any

import pytest

from libs.allocation.planner import PlannedTrade, SkipReason
from libs.common.cancellation import CancellationToken
from libs.portfolio.types import MarginPosition, Position, Quotation


def _position(
    ticker: str,
    price: str | int | float = 1,
    amount: str | int | float = 0,
    lot: int = 1,
    figi: str | None = "auto",
    margin: bool = False,
    **kwargs: Any,
) -> Position:
    if figi == "auto":
        figi = None if ticker == "RUB" else f"FIGI-{ticker}"
    cls = MarginPosition if margin else Position
    return cls(
        ticker=ticker,
        quote="RUB",
        figi=figi,
        amount=Decimal(str(amount)),
        lot_size=lot,
        price=Quotation.from_decimal(Decimal(str(price))),
        **kwargs,
    )


@pytest.fixture()
def make_position() -> Callable[..., Position]:
    """Factory: make_position("TRUR", price="7.5", amount=100, lot=1)."""
    return _position


@pytest.fixture()
def make_cash() -> Callable[..., Position]:
    """Factory for the RUB settlement entry."""

    def _cash(amount: str | int | float) -> Position:
        return _position("RUB", price=1, amount=amount, figi=None)

    return _cash


@pytest.fixture()
def make_trade() -> Callable[..., PlannedTrade]:
    """Factory: make_trade("TMON", lots=3, margin=False)."""

    def _trade(
        ticker: str,
        lots: int,
        price: str | int | float = 100,
        margin: bool = False,
        skip_reason: SkipReason | None = None,
        **kwargs: Any,
    ) -> PlannedTrade:
        position = _position(ticker, price=price, amount=10, margin=margin, **kwargs)
        position = position.model_copy(update={"lots_to_trade": lots})
        return PlannedTrade(
            position=position,
            target_value=Decimal(0),
            delta_value=Decimal(lots) * position.lot_price_number,
            skip_reason=skip_reason,
        )

    return _trade


@pytest.fixture()
def token() -> CancellationToken:
    return CancellationToken()
