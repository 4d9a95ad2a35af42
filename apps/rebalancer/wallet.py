"""
Wallet assembly from a fresh broker snapshot.

The wallet of a cycle consists of:
- the settlement-currency entry (RUB/RUB, price 1, lot 1) from the money balances
- one position per held security, priced with the last price (falling back
  to the portfolio's current price), with frozen quantities from GetPositions
- zero-amount positions for desired instruments not held yet, when the
  catalog knows them and a price is available
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from apps.rebalancer.catalog import InstrumentCatalog
from apps.rebalancer.gateway import ResilientGateway
from apps.rebalancer.schemas import PortfolioResponse, PositionsResponse
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import Position, Quotation, Wallet

logger = logging.getLogger(__name__)

SETTLEMENT_CURRENCY = "RUB"


def settlement_position(positions: PositionsResponse, currency: str = SETTLEMENT_CURRENCY) -> Position:
    """Cash entry built from the money balances in `currency` (zero when absent)."""
    amount = sum(
        (m.to_decimal() for m in positions.money if (m.currency or "").upper() == currency),
        Decimal(0),
    )
    return Position(
        ticker=currency,
        quote=currency,
        amount=amount,
        lot_size=1,
        price=Quotation(units=1, nano=0, currency=currency.lower()),
    )


def _blocked_units(positions: PositionsResponse) -> dict[str, tuple[int, int]]:
    return {s.figi: (s.blocked, s.balance) for s in positions.securities}


def securities_positions(
    portfolio: PortfolioResponse,
    positions: PositionsResponse,
    catalog: InstrumentCatalog,
    prices: dict[str, Quotation],
) -> Wallet:
    """
    Positions for held securities, in portfolio order.

    Holdings whose figi is not in the catalog are kept (they count toward
    the portfolio value) but get no figi, so no order is ever placed for them.
    """
    frozen = _blocked_units(positions)
    wallet: Wallet = []

    for item in portfolio.positions:
        if item.instrument_type == "currency":
            continue

        instrument = catalog.by_figi(item.figi)
        price = prices.get(item.figi) or item.current_price or Quotation()

        if instrument is None:
            logger.warning(
                "Held instrument not found in catalog",
                extra={"figi": item.figi, "ticker": item.ticker},
            )
            wallet.append(
                Position(
                    ticker=item.ticker or item.figi,
                    figi=None,
                    amount=item.quantity.to_decimal(),
                    price=price,
                )
            )
            continue

        lot = instrument.lot
        blocked_units, balance = frozen.get(item.figi, (0, 0))
        blocked_lots = Decimal(blocked_units) / lot
        if item.blocked_lots is not None:
            blocked_lots = max(blocked_lots, item.blocked_lots.to_decimal())
        fully_blocked = item.blocked or (blocked_units > 0 and balance <= 0)

        average = item.average_position_price.to_decimal() if item.average_position_price else None
        wallet.append(
            Position(
                ticker=instrument.ticker,
                quote=instrument.currency.upper(),
                figi=instrument.figi,
                amount=item.quantity.to_decimal(),
                lot_size=lot,
                price=price,
                blocked=fully_blocked,
                blocked_lots=blocked_lots,
                average_price=average or None,
            )
        )

    return wallet


async def add_missing_desired(
    wallet: Wallet,
    desired_tickers: Iterable[str],
    catalog: InstrumentCatalog,
    gateway: ResilientGateway,
) -> Wallet:
    """
    Append zero-amount positions for desired tickers not yet held.

    Tickers unknown to the catalog or without a last price are skipped.
    """
    held = {normalize_ticker(p.ticker) for p in wallet}
    missing = []
    for ticker in desired_tickers:
        key = normalize_ticker(ticker)
        if key in held:
            continue
        instrument = catalog.by_ticker(key)
        if instrument is None:
            logger.warning("Desired ticker not found in catalog, skipping", extra={"ticker": key})
            continue
        held.add(key)
        missing.append(instrument)

    if not missing:
        return wallet

    prices = await gateway.get_last_prices([i.figi for i in missing])
    result = list(wallet)
    for instrument in missing:
        price = prices.get(instrument.figi)
        if price is None:
            logger.warning(
                "No last price for desired ticker, skipping",
                extra={"ticker": instrument.ticker, "figi": instrument.figi},
            )
            continue
        result.append(
            Position(
                ticker=instrument.ticker,
                quote=instrument.currency.upper(),
                figi=instrument.figi,
                amount=Decimal(0),
                lot_size=instrument.lot,
                price=price,
            )
        )
    return result


async def build_wallet(
    gateway: ResilientGateway,
    catalog: InstrumentCatalog,
    account_id: str,
    desired_tickers: Iterable[str] = (),
) -> Wallet:
    """
    Assemble this cycle's wallet: cash first, then securities, then new desired instruments.

    Raises:
        GatewayError: If the portfolio or positions cannot be fetched
    """
    portfolio = await gateway.get_portfolio(account_id)
    positions = await gateway.get_positions(account_id)

    figis = [p.figi for p in portfolio.positions if p.instrument_type != "currency"]
    prices = await gateway.get_last_prices(figis)

    wallet: Wallet = [settlement_position(positions)]
    wallet.extend(securities_positions(portfolio, positions, catalog, prices))
    wallet = await add_missing_desired(wallet, desired_tickers, catalog, gateway)

    logger.info(
        "Wallet assembled",
        extra={
            "positions": len(wallet),
            "value": str(sum((p.total_price_number for p in wallet), Decimal(0))),
            "priced_from_last": len(prices),
        },
    )
    return wallet
