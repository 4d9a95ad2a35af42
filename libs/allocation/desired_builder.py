"""
Desired Allocation Builder.

Turns the configured desired wallet into the target weights of one cycle.
Modes:
- manual / default: configured weights are used as-is
- equal_weight: every configured ticker gets the same weight
- marketcap: weights proportional to market capitalization
- aum: weights proportional to assets under management
- marketcap_aum: market cap, falling back to AUM per ticker
- decorrelation: favours funds whose market cap lags their AUM
  (d = (mcap - aum) / aum * 100, weight proportional to max(d) - d)

Market-data modes never proceed on partial data: a single missing figure
raises BalancingDataError and halts the cycle.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from libs.common.exceptions import BalancingDataError
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import DesiredWallet

logger = logging.getLogger(__name__)

MARKET_CAP = "market cap"
AUM = "aum"


class AllocationMode(str, Enum):
    MANUAL = "manual"
    DEFAULT = "default"
    EQUAL_WEIGHT = "equal_weight"
    MARKETCAP = "marketcap"
    AUM = "aum"
    MARKETCAP_AUM = "marketcap_aum"
    DECORRELATION = "decorrelation"

    @property
    def requires_market_data(self) -> bool:
        return self in _MARKET_DATA_MODES


_MARKET_DATA_MODES = frozenset(
    {
        AllocationMode.MARKETCAP,
        AllocationMode.AUM,
        AllocationMode.MARKETCAP_AUM,
        AllocationMode.DECORRELATION,
    }
)


class MarketDataProvider(Protocol):
    """Source of per-ticker market figures in RUB; None means unavailable."""

    async def get_market_cap(self, ticker: str) -> float | None: ...

    async def get_aum(self, ticker: str) -> float | None: ...


class Metric(BaseModel):
    """
    Per-ticker figures a market-data mode used, kept for auditing.

    Attributes:
        ticker: Normalized ticker
        value: Raw weighting metric (market cap, AUM or decorrelation score)
        weight: Resulting target weight in percent
        market_cap: Market capitalization, when fetched
        aum: Assets under management, when fetched
        decorrelation_pct: (mcap - aum) / aum * 100, decorrelation mode only
    """

    model_config = ConfigDict(frozen=True)

    ticker: str
    value: float
    weight: float
    market_cap: float | None = None
    aum: float | None = None
    decorrelation_pct: float | None = None


class AllocationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    wallet: DesiredWallet
    metrics: list[Metric]
    mode_applied: AllocationMode


def normalize_desire(wallet: Mapping[str, float]) -> DesiredWallet:
    """
    Scale weights so they sum to 100.

    Non-positive and non-finite weights are dropped. An empty or all-zero
    input yields an empty wallet.

    Example:
        >>> normalize_desire({"TRUR": 1, "TMOS": 3})
        {'TRUR': 25.0, 'TMOS': 75.0}
    """
    positive = {
        ticker: float(weight)
        for ticker, weight in wallet.items()
        if math.isfinite(float(weight)) and float(weight) > 0
    }
    total = sum(positive.values())
    if total <= 0:
        return {}
    return {ticker: weight / total * 100 for ticker, weight in positive.items()}


def _is_number(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


class DesiredAllocationBuilder:
    """
    Builds the normalized target allocation for one cycle.

    Runs in a single pass: failures fetching market data are not retried
    here and end the cycle.

    Example:
        >>> builder = DesiredAllocationBuilder(JsonMetricsProvider("etf_metrics"))
        >>> result = await builder.build({"TRUR": 50, "TMOS": 50}, AllocationMode.MARKETCAP)
        >>> result.wallet
        {'TRUR': 38.2, 'TMOS': 61.8}
    """

    def __init__(self, market_data: MarketDataProvider | None = None) -> None:
        self.market_data = market_data

    async def build(self, desired: DesiredWallet, mode: AllocationMode) -> AllocationResult:
        """
        Compute target weights for `mode`.

        Args:
            desired: Configured ticker -> weight map
            mode: Allocation mode

        Returns:
            AllocationResult with the target wallet, the metrics used and the
            applied mode. Manual and default modes return `desired`
            unchanged with no metrics.

        Raises:
            BalancingDataError: If any ticker lacks a figure the mode needs
            ValueError: If a market-data mode is requested without a provider
        """
        if mode in (AllocationMode.MANUAL, AllocationMode.DEFAULT):
            return AllocationResult(wallet=dict(desired), metrics=[], mode_applied=mode)

        tickers = list(dict.fromkeys(normalize_ticker(t) or t for t in desired))

        if mode is AllocationMode.EQUAL_WEIGHT:
            raw = {ticker: 1.0 for ticker in tickers}
            return self._result(mode, raw, {})

        if self.market_data is None:
            raise ValueError(f"{mode.value} mode requires a market data provider")

        if mode is AllocationMode.DECORRELATION:
            raw, details = await self._decorrelation(tickers)
        else:
            raw, details = await self._size_metrics(tickers, mode)
        return self._result(mode, raw, details)

    async def _fetch(self, tickers: list[str]) -> dict[str, tuple[float | None, float | None]]:
        if self.market_data is None:
            raise ValueError("Market data provider is not configured")
        figures: dict[str, tuple[float | None, float | None]] = {}
        for ticker in tickers:
            market_cap = await self.market_data.get_market_cap(ticker)
            aum = await self.market_data.get_aum(ticker)
            figures[ticker] = (market_cap, aum)
        return figures

    async def _size_metrics(
        self, tickers: list[str], mode: AllocationMode
    ) -> tuple[dict[str, float], dict[str, dict[str, float | None]]]:
        figures = await self._fetch(tickers)
        raw: dict[str, float] = {}
        details: dict[str, dict[str, float | None]] = {}
        missing: list[str] = []

        for ticker in tickers:
            market_cap, aum = figures[ticker]
            details[ticker] = {"market_cap": market_cap, "aum": aum}
            if mode is AllocationMode.MARKETCAP:
                value = market_cap
            elif mode is AllocationMode.AUM:
                value = aum
            else:
                value = market_cap if _is_number(market_cap) and market_cap else aum

            if not _is_number(value):
                missing.append(ticker)
                continue
            raw[ticker] = max(0.0, float(value))  # type: ignore[arg-type]

        if missing:
            categories = {
                AllocationMode.MARKETCAP: [MARKET_CAP],
                AllocationMode.AUM: [AUM],
                AllocationMode.MARKETCAP_AUM: [MARKET_CAP, AUM],
            }[mode]
            raise BalancingDataError(mode.value, categories, missing)
        return raw, details

    async def _decorrelation(
        self, tickers: list[str]
    ) -> tuple[dict[str, float], dict[str, dict[str, float | None]]]:
        figures = await self._fetch(tickers)
        missing_categories: list[str] = []
        affected: list[str] = []
        for ticker in tickers:
            market_cap, aum = figures[ticker]
            absent = []
            if not _is_number(market_cap):
                absent.append(MARKET_CAP)
            if not _is_number(aum):
                absent.append(AUM)
            if absent:
                affected.append(ticker)
                missing_categories.extend(c for c in absent if c not in missing_categories)
        if affected:
            raise BalancingDataError(AllocationMode.DECORRELATION.value, missing_categories, affected)

        d_pct: dict[str, float] = {}
        for ticker in tickers:
            market_cap, aum = figures[ticker]
            if market_cap is None or aum is None or aum <= 0:
                d_pct[ticker] = 0.0
            else:
                d_pct[ticker] = (market_cap - aum) / aum * 100

        max_d = max(d_pct.values(), default=0.0)
        raw = {ticker: max(0.0, max_d - d) for ticker, d in d_pct.items()}
        details = {
            ticker: {
                "market_cap": figures[ticker][0],
                "aum": figures[ticker][1],
                "decorrelation_pct": d_pct[ticker],
            }
            for ticker in tickers
        }
        return raw, details

    def _result(
        self,
        mode: AllocationMode,
        raw: dict[str, float],
        details: dict[str, dict[str, float | None]],
    ) -> AllocationResult:
        wallet = normalize_desire(raw)
        if not wallet:
            logger.warning(
                "Allocation metrics sum to zero, target wallet is empty",
                extra={"mode": mode.value, "tickers": list(raw)},
            )
        metrics = [
            Metric(ticker=ticker, value=value, weight=wallet.get(ticker, 0.0), **details.get(ticker, {}))
            for ticker, value in raw.items()
        ]
        logger.info(
            "Built desired allocation",
            extra={"mode": mode.value, "wallet": wallet},
        )
        return AllocationResult(wallet=wallet, metrics=metrics, mode_applied=mode)
