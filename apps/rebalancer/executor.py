"""
Sequential Order Executor.

Places the planned orders of one cycle in three phases:
1. SELL: every negative lot delta
2. PRIORITY_BUY: positive deltas of non-margin positions whose ticker is a
   priority instrument (bought with this cycle's sell proceeds)
3. REMAINDER: every other non-zero delta, margin buys included

The executor waits a settlement delay after the sells, throttles order
submissions, and logs and records a failing order without stopping the
rest. Once the cycle's token is cancelled, the running phase finishes but no
further phase starts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from apps.rebalancer import metrics
from apps.rebalancer.gateway import GatewayError, ResilientGateway
from apps.rebalancer.schemas import (
    ExecutionReport,
    OrderDirection,
    OrderOutcome,
    OutcomeStatus,
    Phase,
    PhaseReport,
)
from libs.allocation.planner import PlannedTrade
from libs.common.cancellation import CancellationToken
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import is_margin_position

logger = logging.getLogger(__name__)

PHASE_ORDER = (Phase.SELL, Phase.PRIORITY_BUY, Phase.REMAINDER)


def categorize(trade: PlannedTrade, priority_instruments: Iterable[str]) -> Phase:
    """
    Execution phase of an actionable trade.

    Margin positions are never priority buys, even when their ticker is
    listed as a priority instrument.
    """
    if trade.lots < 0:
        return Phase.SELL
    priority = {normalize_ticker(t) for t in priority_instruments}
    if (
        trade.lots > 0
        and not is_margin_position(trade.position)
        and normalize_ticker(trade.ticker) in priority
    ):
        return Phase.PRIORITY_BUY
    return Phase.REMAINDER


def group_by_phase(
    trades: Sequence[PlannedTrade], priority_instruments: Iterable[str]
) -> dict[Phase, list[PlannedTrade]]:
    """Actionable trades per phase, each list in planner order."""
    priority = list(priority_instruments)
    groups: dict[Phase, list[PlannedTrade]] = {phase: [] for phase in PHASE_ORDER}
    for trade in trades:
        if trade.is_actionable:
            groups[categorize(trade, priority)].append(trade)
    return groups


class SequentialOrderExecutor:
    """
    Runs the SELL -> PRIORITY_BUY -> REMAINDER phases of one cycle.

    Attributes:
        gateway: Resilient gateway used to place orders
        account_id: Broker account id
        token: Cancellation token of the cycle
        settlement_delay: Seconds to wait after the sell phase
        sleep_between_orders: Seconds to wait between two order submissions
        priority_instruments: Tickers bought in the PRIORITY_BUY phase
        dry_run: Record orders as skipped instead of placing them

    Example:
        >>> executor = SequentialOrderExecutor(gateway, "2000123456", token,
        ...                                    priority_instruments=["TMON"])
        >>> report = await executor.execute(plan.trades)
        >>> [(p.phase, [o.ticker for o in p.outcomes]) for p in report.phases]
        [(SELL, ['TRUR']), (PRIORITY_BUY, ['TMON']), (REMAINDER, ['TMOS'])]
    """

    def __init__(
        self,
        gateway: ResilientGateway,
        account_id: str,
        token: CancellationToken,
        settlement_delay: float = 3.0,
        sleep_between_orders: float = 3.0,
        priority_instruments: Sequence[str] = (),
        dry_run: bool = False,
    ) -> None:
        self.gateway = gateway
        self.account_id = account_id
        self.token = token
        self.settlement_delay = settlement_delay
        self.sleep_between_orders = sleep_between_orders
        self.priority_instruments = list(priority_instruments)
        self.dry_run = dry_run
        self._orders_sent = 0

    async def execute(self, trades: Sequence[PlannedTrade]) -> ExecutionReport:
        """
        Execute the planned trades phase by phase.

        Args:
            trades: Planner output in planner order; non-actionable trades
                are reported as skipped

        Returns:
            ExecutionReport with one PhaseReport per phase that ran
        """
        report = ExecutionReport()
        for trade in trades:
            if trade.skip_reason is not None and not trade.position.is_settlement_currency:
                report.skipped.append(
                    OrderOutcome(
                        ticker=trade.ticker,
                        figi=trade.position.figi,
                        lots=0,
                        status=OutcomeStatus.SKIPPED,
                        skip_reason=trade.skip_reason.value,
                    )
                )

        groups = group_by_phase(trades, self.priority_instruments)
        logger.info(
            "Executing rebalancing orders",
            extra={
                "phases": {phase.value: [t.ticker for t in group] for phase, group in groups.items()},
                "dry_run": self.dry_run,
            },
        )

        self._orders_sent = 0
        for phase in PHASE_ORDER:
            if self.token.cancelled:
                report.cancelled = True
                logger.info("Cancellation requested, not starting phase", extra={"phase": phase.value})
                break

            if (
                phase is Phase.PRIORITY_BUY
                and not self.dry_run
                and groups[Phase.SELL]
                and groups[Phase.PRIORITY_BUY]
            ):
                logger.info(
                    "Waiting for sell proceeds to settle",
                    extra={"delay_seconds": self.settlement_delay},
                )
                if not await self.token.sleep(self.settlement_delay):
                    report.cancelled = True
                    logger.info("Cancelled during settlement delay")
                    break

            if groups[phase]:
                report.phases.append(await self._run_phase(phase, groups[phase]))

        return report

    async def _run_phase(self, phase: Phase, trades: list[PlannedTrade]) -> PhaseReport:
        phase_report = PhaseReport(phase=phase, started_at=datetime.now(UTC))
        for trade in trades:
            if self._orders_sent > 0:
                await self.token.sleep(self.sleep_between_orders)
            outcome = await self._place(phase, trade)
            phase_report.outcomes.append(outcome)
            metrics.orders_total.labels(phase=phase.value, status=outcome.status.value).inc()

        phase_report.completed_at = datetime.now(UTC)
        logger.info(
            f"Phase {phase.value} finished",
            extra={
                "phase": phase.value,
                "placed": sum(1 for o in phase_report.outcomes if o.status is OutcomeStatus.PLACED),
                "errored": sum(1 for o in phase_report.outcomes if o.status is OutcomeStatus.ERRORED),
            },
        )
        return phase_report

    async def _place(self, phase: Phase, trade: PlannedTrade) -> OrderOutcome:
        position = trade.position
        direction = OrderDirection.BUY if trade.lots > 0 else OrderDirection.SELL
        lots = abs(trade.lots)
        if not position.figi:
            logger.error(
                f"No instrument id for {trade.ticker}, order not placed",
                extra={"phase": phase.value, "ticker": trade.ticker, "lots": trade.lots},
            )
            return self._errored(phase, trade, "missing instrument id")

        if self.dry_run:
            logger.info(
                f"Dry run: would {direction.name.lower()} {lots} lots of {trade.ticker}",
                extra={"phase": phase.value, "ticker": trade.ticker, "lots": trade.lots},
            )
            return OrderOutcome(
                ticker=trade.ticker,
                figi=position.figi,
                phase=phase,
                lots=trade.lots,
                status=OutcomeStatus.SKIPPED,
                skip_reason="dry_run",
            )

        self._orders_sent += 1
        try:
            response = await self.gateway.post_order(self.account_id, position.figi, lots, direction)
        except GatewayError as e:
            logger.error(
                f"Order failed for {trade.ticker}: {e}",
                extra={
                    "phase": phase.value,
                    "ticker": trade.ticker,
                    "lots": trade.lots,
                    "correlation_id": e.correlation_id,
                    "attempts": e.attempts,
                },
            )
            return self._errored(phase, trade, str(e))
        except Exception as e:
            logger.error(f"Unexpected error placing order for {trade.ticker}: {e}", exc_info=True)
            return self._errored(phase, trade, str(e))

        logger.info(
            f"Order placed: {direction.name.lower()} {lots} lots of {trade.ticker}",
            extra={
                "phase": phase.value,
                "ticker": trade.ticker,
                "order_id": response.order_id,
                "status": response.execution_report_status,
            },
        )
        return OrderOutcome(
            ticker=trade.ticker,
            figi=position.figi,
            phase=phase,
            lots=trade.lots,
            status=OutcomeStatus.PLACED,
            order_id=response.order_id,
        )

    @staticmethod
    def _errored(phase: Phase, trade: PlannedTrade, message: str) -> OrderOutcome:
        return OrderOutcome(
            ticker=trade.ticker,
            figi=trade.position.figi,
            phase=phase,
            lots=trade.lots,
            status=OutcomeStatus.ERRORED,
            error_message=message,
        )
