"""Tests for the desired allocation builder."""

import math

import pytest

from libs.allocation.desired_builder import (
    AllocationMode,
    DesiredAllocationBuilder,
    normalize_desire,
)
from libs.common.exceptions import BalancingDataError


class StaticMarketData:
    """In-memory market data keyed by ticker."""

    def __init__(self, market_caps=None, aums=None):
        self.market_caps = market_caps or {}
        self.aums = aums or {}
        self.requested: list[str] = []

    async def get_market_cap(self, ticker):
        self.requested.append(ticker)
        return self.market_caps.get(ticker)

    async def get_aum(self, ticker):
        return self.aums.get(ticker)


class TestNormalizeDesire:
    def test_sums_to_hundred(self) -> None:
        result = normalize_desire({"TRUR": 1, "TMOS": 3})

        assert result == {"TRUR": 25.0, "TMOS": 75.0}
        assert sum(result.values()) == pytest.approx(100.0)

    def test_idempotent(self) -> None:
        once = normalize_desire({"TRUR": 7, "TMOS": 11, "TGLD": 13})

        assert normalize_desire(once) == pytest.approx(once)

    def test_drops_non_positive_and_non_finite(self) -> None:
        result = normalize_desire({"TRUR": 50, "TMOS": 0, "TGLD": -5, "BAD": math.nan})

        assert result == {"TRUR": 100.0}

    def test_all_zero_is_empty(self) -> None:
        assert normalize_desire({"TRUR": 0}) == {}
        assert normalize_desire({}) == {}


class TestBuilderModes:
    @pytest.mark.asyncio()
    async def test_manual_mode_passes_weights_through(self) -> None:
        builder = DesiredAllocationBuilder()
        desired = {"TRUR": 30, "TMOS": 30}

        result = await builder.build(desired, AllocationMode.MANUAL)

        assert result.wallet == desired
        assert result.metrics == []
        assert result.mode_applied is AllocationMode.MANUAL

    @pytest.mark.asyncio()
    async def test_equal_weight(self) -> None:
        builder = DesiredAllocationBuilder()

        result = await builder.build({"TRUR": 10, "TMOS": 80, "TGLD": 10}, AllocationMode.EQUAL_WEIGHT)

        assert result.wallet == pytest.approx({"TRUR": 100 / 3, "TMOS": 100 / 3, "TGLD": 100 / 3})

    @pytest.mark.asyncio()
    async def test_marketcap_weights(self) -> None:
        provider = StaticMarketData(market_caps={"TRUR": 300.0, "TMOS": 100.0})
        builder = DesiredAllocationBuilder(provider)

        result = await builder.build({"TRUR": 1, "TMOS@": 1}, AllocationMode.MARKETCAP)

        assert result.wallet == {"TRUR": 75.0, "TMOS": 25.0}
        assert provider.requested == ["TRUR", "TMOS"]
        assert {m.ticker: m.market_cap for m in result.metrics} == {"TRUR": 300.0, "TMOS": 100.0}

    @pytest.mark.asyncio()
    async def test_aum_weights(self) -> None:
        builder = DesiredAllocationBuilder(StaticMarketData(aums={"TRUR": 1.0, "TMOS": 1.0}))

        result = await builder.build({"TRUR": 90, "TMOS": 10}, AllocationMode.AUM)

        assert result.wallet == {"TRUR": 50.0, "TMOS": 50.0}

    @pytest.mark.asyncio()
    async def test_marketcap_aum_falls_back_to_aum(self) -> None:
        provider = StaticMarketData(market_caps={"TRUR": 100.0}, aums={"TMOS": 300.0})
        builder = DesiredAllocationBuilder(provider)

        result = await builder.build({"TRUR": 1, "TMOS": 1}, AllocationMode.MARKETCAP_AUM)

        assert result.wallet == {"TRUR": 25.0, "TMOS": 75.0}

    @pytest.mark.asyncio()
    async def test_decorrelation_favours_lagging_market_cap(self) -> None:
        provider = StaticMarketData(
            market_caps={"TRUR": 110.0, "TMOS": 100.0, "TGLD": 95.0},
            aums={"TRUR": 100.0, "TMOS": 100.0, "TGLD": 100.0},
        )
        builder = DesiredAllocationBuilder(provider)

        result = await builder.build({"TRUR": 1, "TMOS": 1, "TGLD": 1}, AllocationMode.DECORRELATION)

        assert result.wallet == pytest.approx({"TMOS": 40.0, "TGLD": 60.0})
        metrics = {m.ticker: m for m in result.metrics}
        assert metrics["TRUR"].decorrelation_pct == pytest.approx(10.0)
        assert metrics["TRUR"].weight == 0.0
        assert metrics["TGLD"].decorrelation_pct == pytest.approx(-5.0)

    @pytest.mark.asyncio()
    async def test_rebuild_is_identical(self) -> None:
        provider = StaticMarketData(
            market_caps={"TRUR": 120.0, "TMOS": 80.0}, aums={"TRUR": 100.0, "TMOS": 100.0}
        )
        builder = DesiredAllocationBuilder(provider)

        first = await builder.build({"TRUR": 1, "TMOS": 1}, AllocationMode.DECORRELATION)
        second = await builder.build({"TRUR": 1, "TMOS": 1}, AllocationMode.DECORRELATION)

        assert first == second
        assert sum(first.wallet.values()) == pytest.approx(100.0, abs=1e-6)

    @pytest.mark.asyncio()
    async def test_market_mode_without_provider(self) -> None:
        with pytest.raises(ValueError, match="market data provider"):
            await DesiredAllocationBuilder().build({"TRUR": 1}, AllocationMode.AUM)


class TestMissingData:
    @pytest.mark.asyncio()
    async def test_missing_aum_halts(self) -> None:
        builder = DesiredAllocationBuilder(StaticMarketData(aums={"TRUR": 1.0}))

        with pytest.raises(BalancingDataError) as exc_info:
            await builder.build({"TRUR": 1, "TGLD": 1}, AllocationMode.AUM)

        assert str(exc_info.value) == (
            "Balancing halted: aum mode requires aum data for tickers: TGLD"
        )
        assert exc_info.value.affected_tickers == ["TGLD"]

    @pytest.mark.asyncio()
    async def test_marketcap_aum_needs_one_figure(self) -> None:
        builder = DesiredAllocationBuilder(StaticMarketData(market_caps={"TRUR": 1.0}))

        with pytest.raises(BalancingDataError) as exc_info:
            await builder.build({"TRUR": 1, "TMOS": 1}, AllocationMode.MARKETCAP_AUM)

        assert exc_info.value.missing_data == ["market cap", "aum"]
        assert exc_info.value.affected_tickers == ["TMOS"]

    @pytest.mark.asyncio()
    async def test_decorrelation_reports_every_missing_category(self) -> None:
        provider = StaticMarketData(market_caps={"TMOS": 1.0}, aums={"TRUR": 1.0})
        builder = DesiredAllocationBuilder(provider)

        with pytest.raises(BalancingDataError) as exc_info:
            await builder.build({"TRUR": 1, "TMOS": 1}, AllocationMode.DECORRELATION)

        assert exc_info.value.missing_data == ["market cap", "aum"]
        assert exc_info.value.affected_tickers == ["TRUR", "TMOS"]

    @pytest.mark.asyncio()
    async def test_nan_figure_counts_as_missing(self) -> None:
        builder = DesiredAllocationBuilder(StaticMarketData(market_caps={"TRUR": math.nan}))

        with pytest.raises(BalancingDataError):
            await builder.build({"TRUR": 1}, AllocationMode.MARKETCAP)
