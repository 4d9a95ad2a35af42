"""
Market figures for the allocation modes.

- JsonMetricsProvider: per-ticker JSON files ({metrics_dir}/{TICKER}.json)
- BrokerMarketDataProvider: the JSON files first, then a live market cap
  computed as shares outstanding x last price
"""

from __future__ import annotations

import json
import logging
import math
from decimal import Decimal
from pathlib import Path
from typing import Any

from apps.rebalancer.catalog import CatalogStore
from apps.rebalancer.gateway import ResilientGateway
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import Instrument

logger = logging.getLogger(__name__)


class JsonMetricsProvider:
    """
    MarketDataProvider backed by JSON files with `marketCap` and `aum` numbers (RUB).

    A missing file, unreadable JSON or a non-numeric field all mean "no
    data" for that figure.
    """

    def __init__(self, metrics_dir: str | Path) -> None:
        self.metrics_dir = Path(metrics_dir)

    def _read(self, ticker: str) -> dict[str, Any]:
        name = normalize_ticker(ticker) or ticker
        path = self.metrics_dir / f"{name}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.debug("No metrics file", extra={"ticker": name, "path": str(path)})
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Unreadable metrics file", extra={"ticker": name, "path": str(path), "error": str(e)}
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _number(self, ticker: str, field: str) -> float | None:
        value = self._read(ticker).get(field)
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return float(value) if math.isfinite(value) else None

    async def get_market_cap(self, ticker: str) -> float | None:
        return self._number(ticker, "marketCap")

    async def get_aum(self, ticker: str) -> float | None:
        return self._number(ticker, "aum")


class BrokerMarketDataProvider:
    """
    MarketDataProvider backed by the metrics files and the brokerage.

    Market cap is read from the metrics file; when the file has none it is
    computed as shares outstanding (from the instrument catalog) times the
    last price. AUM only comes from the metrics files.

    Example:
        >>> provider = BrokerMarketDataProvider(JsonMetricsProvider("etf_metrics"),
        ...                                     catalog_store, gateway)
        >>> await provider.get_market_cap("TMOS")
        41250000000.0
    """

    def __init__(
        self, files: JsonMetricsProvider, catalog_store: CatalogStore, gateway: ResilientGateway
    ) -> None:
        self.files = files
        self.catalog_store = catalog_store
        self.gateway = gateway

    def _instrument(self, ticker: str) -> Instrument | None:
        return self.catalog_store.snapshot.by_ticker(ticker)

    async def get_current_price(self, ticker: str) -> Decimal | None:
        instrument = self._instrument(ticker)
        if instrument is None:
            return None
        price = await self.gateway.get_last_price(instrument.figi)
        return price.to_decimal() if price is not None else None

    def get_shares_outstanding(self, ticker: str) -> Decimal | None:
        instrument = self._instrument(ticker)
        return instrument.num_shares if instrument is not None else None

    async def get_market_cap(self, ticker: str) -> float | None:
        market_cap = await self.files.get_market_cap(ticker)
        if market_cap is not None:
            return market_cap

        num_shares = self.get_shares_outstanding(ticker)
        if num_shares is None:
            return None
        price = await self.get_current_price(ticker)
        if price is None:
            return None

        market_cap = float(num_shares * price)
        logger.info(
            "Market cap computed from live data",
            extra={"ticker": ticker, "num_shares": str(num_shares), "price": str(price)},
        )
        return market_cap

    async def get_aum(self, ticker: str) -> float | None:
        return await self.files.get_aum(ticker)
