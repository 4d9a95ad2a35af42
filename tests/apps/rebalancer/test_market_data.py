"""Unit tests for the market data providers."""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.rebalancer.catalog import InstrumentCatalog
from apps.rebalancer.market_data import BrokerMarketDataProvider, JsonMetricsProvider
from libs.portfolio.types import Instrument, Quotation


@pytest.fixture()
def metrics_dir(tmp_path: Path) -> Path:
    (tmp_path / "TRUR.json").write_text(json.dumps({"marketCap": 1.5e10, "aum": 1.2e10}))
    (tmp_path / "TMOS.json").write_text(json.dumps({"marketCap": "n/a", "aum": 7}))
    (tmp_path / "TGLD.json").write_text("{not json")
    return tmp_path


class TestJsonMetricsProvider:
    @pytest.mark.asyncio()
    async def test_reads_figures(self, metrics_dir: Path) -> None:
        provider = JsonMetricsProvider(metrics_dir)

        assert await provider.get_market_cap("TRUR") == 1.5e10
        assert await provider.get_aum("TRUR") == 1.2e10

    @pytest.mark.asyncio()
    async def test_ticker_is_normalized(self, metrics_dir: Path) -> None:
        provider = JsonMetricsProvider(str(metrics_dir))

        assert await provider.get_aum(" TRUR@") == 1.2e10

    @pytest.mark.asyncio()
    async def test_non_numeric_field_is_missing(self, metrics_dir: Path) -> None:
        provider = JsonMetricsProvider(metrics_dir)

        assert await provider.get_market_cap("TMOS") is None
        assert await provider.get_aum("TMOS") == 7.0

    @pytest.mark.asyncio()
    async def test_missing_or_broken_file(self, metrics_dir: Path) -> None:
        provider = JsonMetricsProvider(metrics_dir)

        assert await provider.get_market_cap("NOPE") is None
        assert await provider.get_aum("TGLD") is None


@pytest.fixture()
def catalog_store() -> MagicMock:
    store = MagicMock()
    store.snapshot = InstrumentCatalog(
        [
            Instrument(figi="BBG-TRUR", ticker="TRUR", kind="etf", num_shares=Decimal(1000)),
            Instrument(figi="BBG-TMOS", ticker="TMOS", kind="etf", num_shares=Decimal(2000)),
            Instrument(figi="BBG-TGLD", ticker="TGLD", kind="etf"),
        ]
    )
    return store


@pytest.fixture()
def gateway() -> MagicMock:
    gateway = MagicMock()
    gateway.get_last_price = AsyncMock(
        side_effect=lambda figi: {"BBG-TMOS": Quotation(units=7, nano=500000000)}.get(figi)
    )
    return gateway


class TestBrokerMarketDataProvider:
    @pytest.mark.asyncio()
    async def test_metrics_file_wins(self, metrics_dir, catalog_store, gateway) -> None:
        provider = BrokerMarketDataProvider(JsonMetricsProvider(metrics_dir), catalog_store, gateway)

        assert await provider.get_market_cap("TRUR") == 1.5e10
        gateway.get_last_price.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_live_market_cap_fallback(self, metrics_dir, catalog_store, gateway) -> None:
        provider = BrokerMarketDataProvider(JsonMetricsProvider(metrics_dir), catalog_store, gateway)

        assert await provider.get_market_cap("TMOS") == 15000.0
        assert await provider.get_aum("TMOS") == 7.0
        gateway.get_last_price.assert_awaited_once_with("BBG-TMOS")

    @pytest.mark.asyncio()
    async def test_no_live_figures(self, tmp_path: Path, catalog_store, gateway) -> None:
        provider = BrokerMarketDataProvider(JsonMetricsProvider(tmp_path), catalog_store, gateway)

        # TGLD has no shares outstanding, TRUR has no price, NOPE is not in the catalog
        assert await provider.get_market_cap("TGLD") is None
        assert await provider.get_market_cap("TRUR") is None
        assert await provider.get_market_cap("NOPE") is None

    @pytest.mark.asyncio()
    async def test_price_and_shares_outstanding(self, tmp_path: Path, catalog_store, gateway) -> None:
        provider = BrokerMarketDataProvider(JsonMetricsProvider(tmp_path), catalog_store, gateway)

        assert await provider.get_current_price("TMOS@") == Decimal("7.5")
        assert provider.get_shares_outstanding("TMOS") == Decimal(2000)
        assert provider.get_shares_outstanding("NOPE") is None
