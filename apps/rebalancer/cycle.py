"""
One rebalancing cycle for one account.

Flow:
1. Check the exchange schedule (fail-open) and apply the closure behaviour
2. Build the target allocation (halts on incomplete market data)
3. Assemble the wallet from a fresh broker snapshot
4. Apply the margin policy and pick the planning total
5. Plan lot deltas and the funding sells for priority buys
6. Execute SELL -> PRIORITY_BUY -> REMAINDER
7. Report share percentages before and after
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from apps.rebalancer import metrics
from apps.rebalancer.catalog import CatalogStore
from apps.rebalancer.executor import SequentialOrderExecutor
from apps.rebalancer.gateway import GatewayError, ResilientGateway
from apps.rebalancer.schemas import (
    BalancingReport,
    CycleResult,
    CycleStatus,
)
from apps.rebalancer.wallet import build_wallet
from config.accounts import AccountConfig, ExchangeClosureMode
from config.settings import Settings
from libs.allocation.desired_builder import DesiredAllocationBuilder
from libs.allocation.funding import plan_funding_sells
from libs.allocation.margin import MarginCalculator
from libs.allocation.planner import OrderPlan, OrderPlanner
from libs.common.cancellation import CancellationToken
from libs.common.exceptions import BalancingDataError, CycleCancelled
from libs.common.logging import TraceContext, generate_trace_id
from libs.portfolio.shares import (
    available_value,
    calculate_planned_shares,
    calculate_portfolio_shares,
    settlement_balance,
)
from libs.portfolio.types import Wallet, is_margin_position

logger = logging.getLogger(__name__)


def build_report(wallet: Wallet, plan: OrderPlan | None) -> BalancingReport:
    """Share percentages before the cycle and after the planned orders fill."""
    before = calculate_portfolio_shares(wallet)
    return BalancingReport(
        before_shares=before,
        after_shares=calculate_planned_shares(plan.wallet) if plan else before,
        target_shares=plan.desired if plan else {},
        settlement_balance=settlement_balance(wallet),
        total_value=plan.total_value if plan else available_value(wallet),
    )


class RebalanceCycle:
    """
    Runs rebalancing cycles for one account.

    Example:
        >>> cycle = RebalanceCycle(account, settings, gateway, catalog_store,
        ...                        builder, token, broker_account_id="2000123456")
        >>> result = await cycle.run()
        >>> print(result.status)
        'completed'
    """

    def __init__(
        self,
        account: AccountConfig,
        settings: Settings,
        gateway: ResilientGateway,
        catalog_store: CatalogStore,
        builder: DesiredAllocationBuilder,
        token: CancellationToken,
        broker_account_id: str,
    ) -> None:
        self.account = account
        self.settings = settings
        self.gateway = gateway
        self.catalog_store = catalog_store
        self.builder = builder
        self.token = token
        self.broker_account_id = broker_account_id
        self.planner = OrderPlanner()
        self.margin = MarginCalculator(account.margin_trading)

    async def run(self, now: datetime | None = None) -> CycleResult:
        """
        Run one cycle.

        Never raises for business or brokerage failures; they are reported
        through the result status:
        - halted: market data incomplete for the allocation mode
        - failed: a brokerage call failed fatally or exhausted its retries
        - cancelled: the token was cancelled
        - skipped: exchange closed and the account skips closed sessions
        """
        cycle_id = generate_trace_id()
        started = time.monotonic()
        now = now or datetime.now(UTC)
        result = CycleResult(
            cycle_id=cycle_id,
            account_id=self.account.id,
            status=CycleStatus.FAILED,
            started_at=now,
        )

        with TraceContext(cycle_id):
            logger.info(
                "Starting rebalancing cycle",
                extra={"account": self.account.id, "mode": self.account.desired_mode.value},
            )
            try:
                await self._run(result, now)
            except BalancingDataError as e:
                result.status = CycleStatus.HALTED
                result.error_message = str(e)
                logger.error(
                    str(e),
                    extra={"mode": e.mode, "missing_data": e.missing_data, "tickers": e.affected_tickers},
                )
            except CycleCancelled as e:
                result.status = CycleStatus.CANCELLED
                result.error_message = str(e)
                logger.info("Rebalancing cycle cancelled")
            except GatewayError as e:
                result.status = CycleStatus.FAILED
                result.error_message = str(e)
                logger.error(
                    f"Rebalancing cycle failed: {e}",
                    extra={"operation": e.operation, "correlation_id": e.correlation_id},
                )
            except Exception as e:
                result.status = CycleStatus.FAILED
                result.error_message = str(e)
                logger.error(f"Rebalancing cycle failed: {e}", exc_info=True)

            result.completed_at = datetime.now(UTC)
            duration = time.monotonic() - started
            metrics.cycles_total.labels(status=result.status.value).inc()
            metrics.cycle_duration_seconds.observe(duration)
            logger.info(
                "Rebalancing cycle finished",
                extra={"status": result.status.value, "duration_seconds": round(duration, 3)},
            )
        return result

    async def _run(self, result: CycleResult, now: datetime) -> None:
        behavior = self.account.exchange_closure_behavior
        dry_run = False

        if not await self.gateway.is_exchange_open(self.settings.exchange, now):
            logger.info(
                "Exchange is closed",
                extra={"exchange": self.settings.exchange, "behavior": behavior.mode.value},
            )
            if behavior.mode is ExchangeClosureMode.SKIP_ITERATION:
                result.status = CycleStatus.SKIPPED
                if behavior.update_iteration_result:
                    wallet = await self._wallet(self.account.desired_wallet)
                    result.report = build_report(wallet, None)
                return
            dry_run = behavior.mode is ExchangeClosureMode.DRY_RUN

        allocation = await self.builder.build(self.account.desired_wallet, self.account.desired_mode)
        result.mode_applied = allocation.mode_applied.value
        result.metrics = allocation.metrics

        wallet = await self._wallet(allocation.wallet)
        priority = self.account.buy_requires_total_marginal_sell.priority_instruments

        total, wallet, result.margin = self._apply_margin(wallet, priority, now)
        plan = self.planner.plan(wallet, allocation.wallet, total)
        metrics.portfolio_value_rub.labels(account=self.account.id).set(float(plan.total_value))

        self._add_funding_sells(plan, wallet)

        executor = SequentialOrderExecutor(
            self.gateway,
            self.broker_account_id,
            self.token,
            settlement_delay=self.settings.settlement_delay,
            sleep_between_orders=self.account.sleep_between_orders / 1000,
            priority_instruments=priority,
            dry_run=dry_run,
        )
        result.execution = await executor.execute(plan.trades)

        if dry_run:
            result.status = CycleStatus.DRY_RUN
            if behavior.update_iteration_result:
                result.report = build_report(wallet, plan)
            return

        result.report = build_report(wallet, plan)
        result.status = CycleStatus.CANCELLED if result.execution.cancelled else CycleStatus.COMPLETED

    async def _wallet(self, desired: dict[str, float]) -> Wallet:
        catalog = self.catalog_store.snapshot
        if len(catalog) == 0:
            catalog = await self.catalog_store.refresh()
        return await build_wallet(self.gateway, catalog, self.broker_account_id, desired.keys())

    def _apply_margin(
        self, wallet: Wallet, priority: list[str], now: datetime
    ) -> tuple[Decimal | None, Wallet, dict[str, Any] | None]:
        if not self.account.margin_trading.enabled:
            return None, wallet, None

        wallet = self.margin.identify_margin_positions(wallet, priority)
        margin_positions = [p for p in wallet if is_margin_position(p)]
        limits = self.margin.validate_margin_limits(margin_positions)
        decision = self.margin.apply_margin_strategy(
            margin_positions,
            now=now,
            interval_ms=self.account.balance_interval,
            cutoff_time_of_day=self.settings.market_close_time,
        )
        if not limits.is_valid:
            logger.warning(
                "Margin limit exceeded",
                extra={
                    "used": str(limits.total_margin_used),
                    "allowed": str(limits.max_margin_allowed),
                    "exceeded": str(limits.exceeded_amount),
                },
            )
        logger.info(
            decision.reason,
            extra={"remove_margin": decision.should_remove_margin, "positions": len(margin_positions)},
        )

        total = self.margin.planning_total(available_value(wallet), decision.should_remove_margin)
        summary = {
            "limits": asdict(limits),
            "decision": {
                "should_remove_margin": decision.should_remove_margin,
                "reason": decision.reason,
                "transfer_cost": decision.transfer_cost,
            },
            "usage": asdict(self.margin.check_margin_limits(wallet, margin_positions)),
        }
        return total, wallet, summary

    def _add_funding_sells(self, plan: OrderPlan, wallet: Wallet) -> None:
        config = self.account.buy_requires_total_marginal_sell
        mode = config.allow_to_sell_others_positions_to_buy_non_marginal_positions.mode
        if not config.enabled or mode == "none":
            return

        sells = plan_funding_sells(
            plan,
            config.instruments,
            mode,
            config.min_buy_rebalance_percent,
            settlement_balance(wallet),
        )
        plan.apply_extra_sells({s.ticker: s.lots for s in sells})
