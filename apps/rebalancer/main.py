"""
Rebalancer entrypoint.

Usage:
    python -m apps.rebalancer.main            # rebalance every balance_interval
    python -m apps.rebalancer.main --once     # one cycle, then exit

Exit codes:
    0: Success (or stopped by signal)
    1: Last cycle failed or halted
    3: Configuration errors
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from apps.rebalancer.catalog import CatalogStore
from apps.rebalancer.cycle import RebalanceCycle
from apps.rebalancer.gateway import GatewayError, ResilientGateway
from apps.rebalancer.market_data import BrokerMarketDataProvider, JsonMetricsProvider
from apps.rebalancer.schemas import CycleResult, CycleStatus
from apps.rebalancer.transport import TInvestRestTransport, resolve_account_id
from config.accounts import ConfigLoader
from config.settings import Settings, get_settings
from libs.allocation.desired_builder import DesiredAllocationBuilder
from libs.common.cancellation import CancellationToken
from libs.common.exceptions import ConfigurationError
from libs.common.logging import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CYCLE_FAILED = 1
EXIT_CONFIG_ERROR = 3


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rebalance a T-Invest portfolio toward its target allocation",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument(
        "--account",
        default=None,
        help="Account id in CONFIG.json (default: ACCOUNT_ID env var)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to CONFIG.json (default: CONFIG_PATH env var)",
    )
    return parser.parse_args(argv)


def install_signal_handlers(token: CancellationToken) -> None:
    """Cancel the token on SIGINT/SIGTERM so the running cycle stops cleanly."""
    loop = asyncio.get_running_loop()

    def _cancel(sig: signal.Signals) -> None:
        logger.info("Stop signal received", extra={"signal": sig.name})
        token.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _cancel, sig)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform")


async def run(args: argparse.Namespace, settings: Settings, token: CancellationToken) -> int:
    """
    Run one or more cycles for the configured account.

    Returns:
        Process exit code
    """
    loader = ConfigLoader(args.config or settings.config_path)
    account_ref = args.account or settings.account_id
    try:
        account = loader.get_account_by_id(account_ref)
        api_token = loader.get_account_token(account_ref)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    transport = TInvestRestTransport(
        settings.tinvest_api_url, api_token, timeout=settings.tinvest_request_timeout
    )
    gateway = ResilientGateway(
        transport,
        token,
        max_attempts=settings.gateway_max_attempts,
        base_delay=settings.gateway_base_delay,
        max_delay=settings.gateway_max_delay,
    )

    try:
        try:
            accounts = await gateway.get_accounts()
            broker_account_id = resolve_account_id(account.account_id, accounts)
            catalog_store = CatalogStore(gateway)
            await catalog_store.refresh()
        except (GatewayError, ValueError) as e:
            logger.error(f"Startup failed: {e}")
            return EXIT_CONFIG_ERROR if isinstance(e, ValueError) else EXIT_CYCLE_FAILED

        logger.info(
            "Rebalancer started",
            extra={"account": account.id, "broker_account": broker_account_id, "once": args.once},
        )
        market_data = BrokerMarketDataProvider(
            JsonMetricsProvider(settings.metrics_dir), catalog_store, gateway
        )
        cycle = RebalanceCycle(
            account,
            settings,
            gateway,
            catalog_store,
            DesiredAllocationBuilder(market_data),
            token,
            broker_account_id,
        )

        result: CycleResult | None = None
        while not token.cancelled:
            result = await cycle.run()
            if args.once:
                break
            if not await token.sleep(account.balance_interval / 1000):
                break
    finally:
        await transport.close()

    if result is not None and result.status in (CycleStatus.FAILED, CycleStatus.HALTED):
        return EXIT_CYCLE_FAILED
    return EXIT_OK


async def main(argv: list[str] | None = None) -> int:
    args = parse_arguments(argv)
    settings = get_settings()
    configure_logging(service_name="rebalancer", log_level=settings.log_level)

    token = CancellationToken()
    install_signal_handlers(token)
    return await run(args, settings, token)


def cli() -> None:
    """Console script entrypoint."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
