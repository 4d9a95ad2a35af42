"""Unit tests for the sequential order executor."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, call

import pytest

from apps.rebalancer.executor import SequentialOrderExecutor, categorize, group_by_phase
from apps.rebalancer.gateway import FatalGatewayError, RetriesExhaustedError
from apps.rebalancer.schemas import OrderDirection, OutcomeStatus, Phase, PostOrderResponse
from libs.allocation.planner import SkipReason


@pytest.fixture()
def gateway() -> MagicMock:
    gateway = MagicMock()
    gateway.post_order = AsyncMock(
        side_effect=lambda account, figi, lots, direction: PostOrderResponse(order_id=f"order-{figi}")
    )
    return gateway


def _executor(gateway, token, **kwargs) -> SequentialOrderExecutor:
    kwargs.setdefault("settlement_delay", 0)
    kwargs.setdefault("sleep_between_orders", 0)
    kwargs.setdefault("priority_instruments", ["TMON"])
    return SequentialOrderExecutor(gateway, "2000", token, **kwargs)


class TestCategorize:
    def test_phases(self, make_trade) -> None:
        assert categorize(make_trade("TMON", -1), ["TMON"]) is Phase.SELL
        assert categorize(make_trade("TMON", 2), ["TMON"]) is Phase.PRIORITY_BUY
        assert categorize(make_trade("TMOS", 2), ["TMON"]) is Phase.REMAINDER

    def test_margin_priority_buy_goes_to_remainder(self, make_trade) -> None:
        assert categorize(make_trade("TMON", 2, margin=True), ["TMON"]) is Phase.REMAINDER

    def test_group_keeps_planner_order_and_drops_skips(self, make_trade) -> None:
        trades = [
            make_trade("TRUR", -1),
            make_trade("TGLD", 0, skip_reason=SkipReason.SUB_LOT),
            make_trade("TMOS", 1),
            make_trade("TBRU", -2),
            make_trade("TPAY", 4),
        ]

        groups = group_by_phase(trades, [])

        assert [t.ticker for t in groups[Phase.SELL]] == ["TRUR", "TBRU"]
        assert groups[Phase.PRIORITY_BUY] == []
        assert [t.ticker for t in groups[Phase.REMAINDER]] == ["TMOS", "TPAY"]


class TestExecute:
    @pytest.mark.asyncio()
    async def test_phases_run_in_order(self, gateway, token, make_trade) -> None:
        trades = [make_trade("TMOS", 2), make_trade("TMON", 3), make_trade("TRUR", -5)]

        report = await _executor(gateway, token).execute(trades)

        assert [(p.phase, [o.ticker for o in p.outcomes]) for p in report.phases] == [
            (Phase.SELL, ["TRUR"]),
            (Phase.PRIORITY_BUY, ["TMON"]),
            (Phase.REMAINDER, ["TMOS"]),
        ]
        assert gateway.post_order.await_args_list == [
            call("2000", "FIGI-TRUR", 5, OrderDirection.SELL),
            call("2000", "FIGI-TMON", 3, OrderDirection.BUY),
            call("2000", "FIGI-TMOS", 2, OrderDirection.BUY),
        ]
        assert report.count(OutcomeStatus.PLACED) == 3
        assert report.phases[0].outcomes[0].order_id == "order-FIGI-TRUR"
        assert not report.cancelled

    @pytest.mark.asyncio()
    async def test_empty_phases_are_omitted(self, gateway, token, make_trade) -> None:
        report = await _executor(gateway, token).execute([make_trade("TMOS", 1)])

        assert [p.phase for p in report.phases] == [Phase.REMAINDER]

    @pytest.mark.asyncio()
    async def test_skipped_trades_reported(self, gateway, token, make_trade) -> None:
        trades = [
            make_trade("RUB", 0, figi=None, skip_reason=SkipReason.SETTLEMENT_CURRENCY),
            make_trade("TGLD", 0, skip_reason=SkipReason.SUB_LOT),
            make_trade("FROZEN", 0, skip_reason=SkipReason.BLOCKED),
        ]

        report = await _executor(gateway, token).execute(trades)

        assert [(o.ticker, o.skip_reason) for o in report.skipped] == [
            ("TGLD", "sub_lot"),
            ("FROZEN", "blocked"),
        ]
        assert report.phases == []
        gateway.post_order.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_failed_order_does_not_stop_others(self, gateway, token, make_trade) -> None:
        gateway.post_order = AsyncMock(
            side_effect=[
                RetriesExhaustedError("post_order", "cid-1", 5, None),
                FatalGatewayError("post_order", "cid-2", 1, "insufficient funds"),
                PostOrderResponse(order_id="order-3"),
            ]
        )
        trades = [make_trade("TRUR", -1), make_trade("TMON", 1), make_trade("TMOS", 1)]

        report = await _executor(gateway, token).execute(trades)

        statuses = [(o.ticker, o.status) for o in report.outcomes]
        assert statuses == [
            ("TRUR", OutcomeStatus.ERRORED),
            ("TMON", OutcomeStatus.ERRORED),
            ("TMOS", OutcomeStatus.PLACED),
        ]
        assert report.outcomes[1].error_message == "insufficient funds"

    @pytest.mark.asyncio()
    async def test_unexpected_error_is_recorded(self, gateway, token, make_trade) -> None:
        gateway.post_order = AsyncMock(side_effect=RuntimeError("boom"))

        report = await _executor(gateway, token).execute([make_trade("TMOS", 1)])

        assert report.outcomes[0].status is OutcomeStatus.ERRORED

    @pytest.mark.asyncio()
    async def test_dry_run_places_nothing(self, gateway, token, make_trade) -> None:
        trades = [make_trade("TRUR", -1), make_trade("TMOS", 1)]

        report = await _executor(gateway, token, dry_run=True).execute(trades)

        gateway.post_order.assert_not_awaited()
        assert [(o.status, o.skip_reason) for o in report.outcomes] == [
            (OutcomeStatus.SKIPPED, "dry_run"),
            (OutcomeStatus.SKIPPED, "dry_run"),
        ]

    @pytest.mark.asyncio()
    async def test_missing_figi_is_errored(self, gateway, token, make_trade) -> None:
        trades = [make_trade("TMOS", 1, figi=None), make_trade("TRUR", 2)]

        report = await _executor(gateway, token).execute(trades)

        outcome = report.outcomes[0]
        assert outcome.status is OutcomeStatus.ERRORED
        assert outcome.error_message == "missing instrument id"
        gateway.post_order.assert_awaited_once_with("2000", "FIGI-TRUR", 2, OrderDirection.BUY)


class TestTiming:
    def _token(self) -> MagicMock:
        token = MagicMock()
        token.cancelled = False
        token.sleep = AsyncMock(return_value=True)
        return token

    @pytest.mark.asyncio()
    async def test_settlement_delay_between_sells_and_priority_buys(
        self, gateway, make_trade
    ) -> None:
        token = self._token()
        executor = _executor(gateway, token, settlement_delay=5.0, sleep_between_orders=1.0)

        await executor.execute([make_trade("TRUR", -1), make_trade("TMON", 1)])

        assert token.sleep.await_args_list == [call(5.0), call(1.0)]

    @pytest.mark.asyncio()
    async def test_no_settlement_delay_without_priority_buys(self, gateway, make_trade) -> None:
        token = self._token()
        executor = _executor(gateway, token, settlement_delay=5.0, sleep_between_orders=1.0)

        await executor.execute([make_trade("TRUR", -1), make_trade("TMOS", 1)])

        assert token.sleep.await_args_list == [call(1.0)]

    @pytest.mark.asyncio()
    async def test_dry_run_skips_settlement_delay(self, gateway, make_trade) -> None:
        token = self._token()
        executor = _executor(gateway, token, settlement_delay=5.0, dry_run=True)

        report = await executor.execute([make_trade("TRUR", -1), make_trade("TMON", 1)])

        token.sleep.assert_not_awaited()
        assert [p.phase for p in report.phases] == [Phase.SELL, Phase.PRIORITY_BUY]


class TestCancellation:
    @pytest.mark.asyncio()
    async def test_running_phase_completes_but_next_does_not_start(
        self, gateway, token, make_trade
    ) -> None:
        async def place(account, figi, lots, direction):
            token.cancel()
            return PostOrderResponse(order_id=f"order-{figi}")

        gateway.post_order = AsyncMock(side_effect=place)
        trades = [make_trade("TRUR", -1), make_trade("TBRU", -1), make_trade("TMON", 2)]

        report = await _executor(gateway, token).execute(trades)

        assert report.cancelled
        assert [p.phase for p in report.phases] == [Phase.SELL]
        assert [o.ticker for o in report.phases[0].outcomes] == ["TRUR", "TBRU"]
        assert gateway.post_order.await_count == 2

    @pytest.mark.asyncio()
    async def test_cancelled_before_start(self, gateway, token, make_trade) -> None:
        token.cancel()

        report = await _executor(gateway, token).execute([make_trade("TMOS", 1)])

        assert report.cancelled
        assert report.phases == []
        gateway.post_order.assert_not_awaited()
