"""
Account configuration provider.

Loads CONFIG.json once, validates it with Pydantic models and exposes
per-account lookups. Each account entry describes the target allocation,
the margin-trading policy and execution parameters for one brokerage
account.

Example CONFIG.json:
    {
      "accounts": [
        {
          "id": "0",
          "name": "Main",
          "t_invest_token": "${T_INVEST_TOKEN}",
          "account_id": "BROKER",
          "desired_wallet": {"TRUR": 50, "TMOS": 30, "TMON": 20},
          "desired_mode": "manual",
          "balance_interval": 3600000,
          "sleep_between_orders": 3000,
          "margin_trading": {"enabled": false, "multiplier": 1,
                             "free_threshold": 10000, "balancing_strategy": "keep_if_small"},
          "buy_requires_total_marginal_sell": {"enabled": true, "instruments": ["TMON"]}
        }
      ]
    }
"""

from __future__ import annotations

import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from libs.allocation.desired_builder import AllocationMode
from libs.allocation.margin import AccountMarginConfig
from libs.common.exceptions import ConfigurationError
from libs.portfolio.types import DesiredWallet

logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


SellingMode = Literal["only_positive_positions_sell", "equal_in_percents", "none"]


class SellOthersConfig(BaseModel):
    """Which other positions may be sold to fund priority buys."""

    mode: SellingMode = "none"


class BuyRequiresTotalMarginalSellConfig(BaseModel):
    """
    Priority (non-margin) instruments that must be funded from sells.

    Instruments listed here are bought in the priority phase, right after
    the sells settle, and are never bought on margin.
    """

    enabled: bool = False
    instruments: list[str] = Field(default_factory=list)
    allow_to_sell_others_positions_to_buy_non_marginal_positions: SellOthersConfig = Field(
        default_factory=SellOthersConfig
    )
    min_buy_rebalance_percent: float = Field(default=0.0, ge=0, le=100)

    @property
    def priority_instruments(self) -> list[str]:
        return list(self.instruments) if self.enabled else []


class ExchangeClosureMode(str, Enum):
    SKIP_ITERATION = "skip_iteration"
    FORCE_ORDERS = "force_orders"
    DRY_RUN = "dry_run"


class ExchangeClosureBehavior(BaseModel):
    """What a cycle does when the exchange is closed."""

    mode: ExchangeClosureMode = ExchangeClosureMode.SKIP_ITERATION
    update_iteration_result: bool = False


class AccountConfig(BaseModel):
    """One account entry of CONFIG.json."""

    id: str
    name: str
    t_invest_token: str
    account_id: str
    desired_wallet: DesiredWallet
    desired_mode: AllocationMode = AllocationMode.MANUAL
    balance_interval: int = Field(default=3_600_000, gt=0, description="Milliseconds")
    sleep_between_orders: int = Field(default=3000, ge=0, description="Milliseconds")
    margin_trading: AccountMarginConfig = Field(default_factory=AccountMarginConfig)
    buy_requires_total_marginal_sell: BuyRequiresTotalMarginalSellConfig = Field(
        default_factory=BuyRequiresTotalMarginalSellConfig
    )
    exchange_closure_behavior: ExchangeClosureBehavior = Field(
        default_factory=ExchangeClosureBehavior
    )

    @field_validator("desired_wallet")
    @classmethod
    def _non_empty_wallet(cls, value: DesiredWallet) -> DesiredWallet:
        if not value:
            raise ValueError("desired_wallet must not be empty")
        return value

    @model_validator(mode="after")
    def _warn_on_weight_sum(self) -> AccountConfig:
        total = sum(self.desired_wallet.values())
        if abs(total - 100) > 1:
            logger.warning(
                "Desired wallet weights do not sum to 100%",
                extra={"account": self.id, "total_weight": total},
            )
        return self


class ProjectConfig(BaseModel):
    accounts: list[AccountConfig]


class ConfigLoader:
    """
    Loads and caches the accounts configuration file.

    Example:
        >>> loader = ConfigLoader("CONFIG.json")
        >>> account = loader.get_account_by_id("0")
        >>> token = loader.get_account_token("0")
    """

    def __init__(self, path: str | Path = "CONFIG.json") -> None:
        self.path = Path(path)
        self._config: ProjectConfig | None = None

    def load(self) -> ProjectConfig:
        """
        Parse and validate the configuration file (once).

        Raises:
            ConfigurationError: If the file is missing, not JSON or invalid
        """
        if self._config is not None:
            return self._config

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._config = ProjectConfig.model_validate(raw)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {self.path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file is not valid JSON: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        logger.info(
            "Loaded accounts configuration",
            extra={"path": str(self.path), "accounts": len(self._config.accounts)},
        )
        return self._config

    def get_all_accounts(self) -> list[AccountConfig]:
        return self.load().accounts

    def get_account_by_id(self, account_id: str) -> AccountConfig:
        """
        Raises:
            ConfigurationError: If no account has this id
        """
        for account in self.load().accounts:
            if account.id == account_id:
                return account
        raise ConfigurationError(f"Account with id '{account_id}' not found in {self.path}")

    def get_account_token(self, account_id: str) -> str:
        """
        Resolve the API token of an account.

        A value of the form `${VAR}` is read from the environment.

        Raises:
            ConfigurationError: If the referenced environment variable is unset
        """
        raw = self.get_account_by_id(account_id).t_invest_token
        match = _ENV_REFERENCE.match(raw)
        if match is None:
            return raw
        token = os.getenv(match.group(1))
        if not token:
            raise ConfigurationError(
                f"Environment variable {match.group(1)} referenced by account "
                f"'{account_id}' is not set"
            )
        return token

    def is_token_from_env(self, account_id: str) -> bool:
        return _ENV_REFERENCE.match(self.get_account_by_id(account_id).t_invest_token) is not None
