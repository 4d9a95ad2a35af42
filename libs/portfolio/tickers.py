"""Ticker normalization shared by configuration, catalog lookups and planning."""

from __future__ import annotations

from collections.abc import Mapping

# Ticker renames on the exchange (old -> new).
TICKER_ALIASES: dict[str, str] = {
    "TRAY": "TPAY",
}


def normalize_ticker(ticker: str | None) -> str | None:
    """
    Return the canonical form of a ticker.

    Strips whitespace and a trailing '@' (e.g. "TGLD@" -> "TGLD"), then
    applies known aliases.

    Example:
        >>> normalize_ticker(" TRAY ")
        'TPAY'
        >>> normalize_ticker("TGLD@")
        'TGLD'
    """
    if not ticker:
        return ticker
    t = ticker.strip()
    if t.endswith("@"):
        t = t[:-1]
    return TICKER_ALIASES.get(t, t)


def tickers_equal(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return normalize_ticker(a) == normalize_ticker(b)


def alias_weights(weights: Mapping[str, float]) -> dict[str, float]:
    """Merge weights whose tickers normalize to the same symbol."""
    merged: dict[str, float] = {}
    for ticker, weight in weights.items():
        key = normalize_ticker(ticker) or ticker
        merged[key] = merged.get(key, 0.0) + float(weight)
    return merged
