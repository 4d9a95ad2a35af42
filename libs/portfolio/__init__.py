"""Portfolio data model: quotations, instruments, positions and wallets."""

from libs.portfolio.tickers import alias_weights, normalize_ticker, tickers_equal
from libs.portfolio.types import (
    DesiredWallet,
    Instrument,
    MarginPosition,
    Position,
    Quotation,
    Wallet,
    is_margin_position,
    validate_wallet,
)

__all__ = [
    "Quotation",
    "Instrument",
    "Position",
    "MarginPosition",
    "Wallet",
    "DesiredWallet",
    "is_margin_position",
    "validate_wallet",
    "normalize_ticker",
    "tickers_equal",
    "alias_weights",
]
