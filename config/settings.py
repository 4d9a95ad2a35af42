"""
Process settings loaded from environment variables.

Uses Pydantic Settings for type-safe configuration with validation.
All settings can be overridden via environment variables or .env file.
Per-account trading parameters live in CONFIG.json (see config/accounts.py).
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Rebalancer process configuration.

    All settings are loaded from environment variables or .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Account selection
    account_id: str = Field(
        default="0",
        description="Id of the account entry in CONFIG.json to rebalance",
    )
    config_path: str = Field(
        default="CONFIG.json",
        description="Path to the accounts configuration file",
    )

    # Brokerage REST API
    tinvest_api_url: str = Field(
        default="https://invest-public-api.tinkoff.ru/rest",
        description="Base URL of the T-Invest REST gateway",
    )
    tinvest_request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout in seconds",
    )

    # Resilient gateway
    gateway_max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum attempts per gateway call (retryable errors only)",
    )
    gateway_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Base backoff delay in seconds (delay = base * 2^attempt)",
    )
    gateway_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Backoff delay cap in seconds before jitter",
    )

    # Execution
    settlement_delay: float = Field(
        default=3.0,
        ge=0,
        description="Seconds to wait between the sell phase and priority buys",
    )
    exchange: str = Field(
        default="MOEX",
        description="Exchange whose trading schedule gates each cycle",
    )
    market_close_time: str = Field(
        default="18:45",
        pattern=r"^\d{1,2}:\d{2}$",
        description="Session close time of day (HH:MM) used by margin strategies",
    )

    # Market data
    metrics_dir: str = Field(
        default="etf_metrics",
        description="Directory with per-ticker metrics JSON files ({TICKER}.json)",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
