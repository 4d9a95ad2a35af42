"""Unit tests for the rebalancer entrypoint."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.rebalancer import main as main_mod
from apps.rebalancer.schemas import BrokerAccount, CycleResult, CycleStatus
from config.settings import Settings


class FakeTransport:
    instances: list[FakeTransport] = []

    def __init__(self, *args, **kwargs) -> None:
        self.closed = False
        FakeTransport.instances.append(self)

    async def get_accounts(self) -> list[BrokerAccount]:
        return [BrokerAccount(id="2000", type="ACCOUNT_TYPE_TINKOFF")]

    async def get_instruments(self, kind: str) -> list:
        return []

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "CONFIG.json"
    path.write_text(
        json.dumps(
            {
                "accounts": [
                    {
                        "id": "0",
                        "name": "Main",
                        "t_invest_token": "token",
                        "account_id": "BROKER",
                        "desired_wallet": {"TRUR": 100},
                    },
                    {
                        "id": "iis",
                        "name": "IIS",
                        "t_invest_token": "token",
                        "account_id": "ISS",
                        "desired_wallet": {"TRUR": 100},
                    },
                ]
            }
        )
    )
    return path


@pytest.fixture()
def fake_transport(monkeypatch: pytest.MonkeyPatch) -> type[FakeTransport]:
    FakeTransport.instances = []
    monkeypatch.setattr(main_mod, "TInvestRestTransport", FakeTransport)
    return FakeTransport


def _cycle_returning(monkeypatch: pytest.MonkeyPatch, status: CycleStatus) -> MagicMock:
    cycle = MagicMock()
    cycle.run = AsyncMock(
        return_value=CycleResult(
            cycle_id="cycle-1", account_id="0", status=status, started_at=datetime.now(UTC)
        )
    )
    monkeypatch.setattr(main_mod, "RebalanceCycle", MagicMock(return_value=cycle))
    return cycle


class TestParseArguments:
    def test_defaults(self) -> None:
        args = main_mod.parse_arguments([])

        assert not args.once
        assert args.account is None
        assert args.config is None

    def test_flags(self) -> None:
        args = main_mod.parse_arguments(["--once", "--account", "iis", "--config", "x.json"])

        assert args.once
        assert args.account == "iis"
        assert args.config == "x.json"


class TestRun:
    @pytest.mark.asyncio()
    async def test_missing_config_file(self, tmp_path: Path, token) -> None:
        args = main_mod.parse_arguments(["--once", "--config", str(tmp_path / "missing.json")])

        assert await main_mod.run(args, Settings(), token) == main_mod.EXIT_CONFIG_ERROR

    @pytest.mark.asyncio()
    async def test_unknown_account(self, config_file: Path, token) -> None:
        args = main_mod.parse_arguments(["--once", "--config", str(config_file), "--account", "x"])

        assert await main_mod.run(args, Settings(), token) == main_mod.EXIT_CONFIG_ERROR

    @pytest.mark.asyncio()
    async def test_unresolvable_broker_account(self, config_file, fake_transport, token) -> None:
        args = main_mod.parse_arguments(["--once", "--config", str(config_file), "--account", "iis"])

        code = await main_mod.run(args, Settings(), token)

        assert code == main_mod.EXIT_CONFIG_ERROR
        assert fake_transport.instances[0].closed

    @pytest.mark.asyncio()
    async def test_single_cycle_success(self, config_file, fake_transport, token, monkeypatch) -> None:
        cycle = _cycle_returning(monkeypatch, CycleStatus.COMPLETED)
        args = main_mod.parse_arguments(["--once", "--config", str(config_file), "--account", "0"])

        code = await main_mod.run(args, Settings(), token)

        assert code == main_mod.EXIT_OK
        cycle.run.assert_awaited_once()
        assert fake_transport.instances[0].closed

    @pytest.mark.asyncio()
    async def test_halted_cycle_exit_code(self, config_file, fake_transport, token, monkeypatch) -> None:
        _cycle_returning(monkeypatch, CycleStatus.HALTED)
        args = main_mod.parse_arguments(["--once", "--config", str(config_file), "--account", "0"])

        assert await main_mod.run(args, Settings(), token) == main_mod.EXIT_CYCLE_FAILED

    @pytest.mark.asyncio()
    async def test_loop_stops_when_cancelled(
        self, config_file, fake_transport, token, monkeypatch
    ) -> None:
        cycle = _cycle_returning(monkeypatch, CycleStatus.COMPLETED)

        async def run_and_cancel(*args, **kwargs):
            token.cancel()
            return cycle.run.return_value

        cycle.run.side_effect = run_and_cancel
        args = main_mod.parse_arguments(["--config", str(config_file), "--account", "0"])

        assert await main_mod.run(args, Settings(), token) == main_mod.EXIT_OK
        cycle.run.assert_awaited_once()
