"""Configuration management."""

from config.accounts import (
    AccountConfig,
    BuyRequiresTotalMarginalSellConfig,
    ConfigLoader,
    ExchangeClosureBehavior,
    ExchangeClosureMode,
)
from config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "AccountConfig",
    "BuyRequiresTotalMarginalSellConfig",
    "ConfigLoader",
    "ExchangeClosureBehavior",
    "ExchangeClosureMode",
]
