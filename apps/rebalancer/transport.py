"""
T-Invest brokerage transport.

Thin async REST client for the T-Invest public API. Every call is a JSON
POST to `{base_url}/tinkoff.public.invest.api.contract.v1.{Service}/{Method}`
with a bearer token. Non-2xx responses raise TransportError carrying the
HTTP status and the broker's gRPC status code name; network failures
surface as httpx exceptions. Retry policy lives in the gateway, not here.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import httpx

from apps.rebalancer.schemas import (
    BrokerAccount,
    LastPrice,
    OrderDirection,
    PortfolioResponse,
    PositionsResponse,
    PostOrderResponse,
    TradingSchedule,
)
from libs.portfolio.types import Instrument, Quotation

logger = logging.getLogger(__name__)

CONTRACT_PREFIX = "tinkoff.public.invest.api.contract.v1"

INSTRUMENT_KINDS: dict[str, str] = {
    "share": "Shares",
    "etf": "Etfs",
    "bond": "Bonds",
    "currency": "Currencies",
    "future": "Futures",
}

# gRPC status codes by number, as returned in REST error bodies.
GRPC_CODE_NAMES: dict[int, str] = {
    0: "OK",
    1: "CANCELLED",
    2: "UNKNOWN",
    3: "INVALID_ARGUMENT",
    4: "DEADLINE_EXCEEDED",
    5: "NOT_FOUND",
    6: "ALREADY_EXISTS",
    7: "PERMISSION_DENIED",
    8: "RESOURCE_EXHAUSTED",
    9: "FAILED_PRECONDITION",
    10: "ABORTED",
    11: "OUT_OF_RANGE",
    12: "UNIMPLEMENTED",
    13: "INTERNAL",
    14: "UNAVAILABLE",
    15: "DATA_LOSS",
    16: "UNAUTHENTICATED",
}

ACCOUNT_TYPE_ALIASES: dict[str, str] = {
    "BROKER": "ACCOUNT_TYPE_TINKOFF",
    "ISS": "ACCOUNT_TYPE_TINKOFF_IIS",
}


class TransportError(Exception):
    """
    Error response from the brokerage API.

    Attributes:
        status_code: HTTP status, None when not an HTTP-level failure
        code: gRPC status code name (e.g. "UNAVAILABLE"), None if unknown
        message: Broker-provided message
    """

    def __init__(self, status_code: int | None, code: str | None, message: str) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"[{status_code} {code}] {message}")


class BrokerTransport(Protocol):
    """Brokerage operations the gateway wraps."""

    async def get_accounts(self) -> list[BrokerAccount]: ...

    async def get_portfolio(self, account_id: str) -> PortfolioResponse: ...

    async def get_positions(self, account_id: str) -> PositionsResponse: ...

    async def get_instruments(self, kind: str) -> list[Instrument]: ...

    async def get_last_prices(self, figis: list[str]) -> list[LastPrice]: ...

    async def get_trading_schedules(
        self, exchange: str, start: datetime, end: datetime
    ) -> list[TradingSchedule]: ...

    async def post_order(
        self,
        account_id: str,
        figi: str,
        quantity: int,
        direction: OrderDirection,
        order_id: str,
    ) -> PostOrderResponse: ...

    async def close(self) -> None: ...


def _shares_outstanding(raw: dict[str, Any]) -> Decimal | None:
    """ETF `numShares` (a Quotation) or share `issueSize`; None when absent or zero."""
    num_shares = raw.get("numShares")
    if isinstance(num_shares, dict):
        value = Quotation.model_validate(num_shares).to_decimal()
    else:
        value = Decimal(str(raw.get("issueSize") or 0))
    return value if value > 0 else None


def _error_code(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    code = body.get("code")
    if isinstance(code, int):
        return GRPC_CODE_NAMES.get(code)
    if isinstance(code, str):
        return GRPC_CODE_NAMES.get(int(code)) if code.isdigit() else code.upper()
    return None


class TInvestRestTransport:
    """
    HTTP client for the T-Invest REST gateway.

    Example:
        >>> transport = TInvestRestTransport("https://invest-public-api.tinkoff.ru/rest", token)
        >>> accounts = await transport.get_accounts()
        >>> print(accounts[0].id)
        '2000123456'
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the transport.

        Args:
            base_url: REST gateway URL (e.g. "https://invest-public-api.tinkoff.ru/rest")
            token: API token of the account
            timeout: Request timeout in seconds (default: 30.0)
            client: Preconfigured client (tests inject one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def _call(self, service: str, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{CONTRACT_PREFIX}.{service}/{method}"
        response = await self.client.post(url, json=payload, headers=self._headers)

        if response.is_success:
            data: dict[str, Any] = response.json()
            return data

        try:
            body = response.json()
        except ValueError:
            body = None
        message = body.get("message", response.text) if isinstance(body, dict) else response.text
        logger.debug(
            f"T-Invest {service}/{method} returned {response.status_code}",
            extra={"response": response.text[:500]},
        )
        raise TransportError(response.status_code, _error_code(body), message)

    async def get_accounts(self) -> list[BrokerAccount]:
        data = await self._call("UsersService", "GetAccounts", {})
        return [BrokerAccount.model_validate(a) for a in data.get("accounts", [])]

    async def get_portfolio(self, account_id: str) -> PortfolioResponse:
        data = await self._call(
            "OperationsService", "GetPortfolio", {"accountId": account_id, "currency": "RUB"}
        )
        return PortfolioResponse.model_validate(data)

    async def get_positions(self, account_id: str) -> PositionsResponse:
        data = await self._call("OperationsService", "GetPositions", {"accountId": account_id})
        return PositionsResponse.model_validate(data)

    async def get_instruments(self, kind: str) -> list[Instrument]:
        """
        List base-status instruments of one kind.

        Raises:
            ValueError: If kind is not one of INSTRUMENT_KINDS
        """
        if kind not in INSTRUMENT_KINDS:
            raise ValueError(f"Unknown instrument kind: {kind}")
        data = await self._call(
            "InstrumentsService",
            INSTRUMENT_KINDS[kind],
            {"instrumentStatus": "INSTRUMENT_STATUS_BASE"},
        )
        instruments = []
        for raw in data.get("instruments", []):
            if not raw.get("figi") or not raw.get("ticker"):
                continue
            instruments.append(
                Instrument(
                    figi=raw["figi"],
                    ticker=raw["ticker"],
                    lot=max(1, int(raw.get("lot") or 1)),
                    currency=raw.get("currency", "rub"),
                    name=raw.get("name", ""),
                    kind=kind,
                    num_shares=_shares_outstanding(raw),
                )
            )
        return instruments

    async def get_last_prices(self, figis: list[str]) -> list[LastPrice]:
        data = await self._call("MarketDataService", "GetLastPrices", {"figi": figis})
        return [LastPrice.model_validate(p) for p in data.get("lastPrices", [])]

    async def get_trading_schedules(
        self, exchange: str, start: datetime, end: datetime
    ) -> list[TradingSchedule]:
        data = await self._call(
            "InstrumentsService",
            "TradingSchedules",
            {"exchange": exchange, "from": start.isoformat(), "to": end.isoformat()},
        )
        return [TradingSchedule.model_validate(s) for s in data.get("exchanges", [])]

    async def post_order(
        self,
        account_id: str,
        figi: str,
        quantity: int,
        direction: OrderDirection,
        order_id: str,
    ) -> PostOrderResponse:
        payload = {
            "accountId": account_id,
            "figi": figi,
            "quantity": str(quantity),
            "direction": direction.value,
            "orderType": "ORDER_TYPE_MARKET",
            "orderId": order_id,
        }
        data = await self._call("OrdersService", "PostOrder", payload)
        return PostOrderResponse.model_validate(data)


def resolve_account_id(value: str, accounts: list[BrokerAccount]) -> str:
    """
    Resolve a configured account reference to a broker account id.

    Accepted forms:
    - "BROKER" / "ISS": first account of that type
    - "INDEX:n" or a short number "n": n-th account of the list
    - anything else: a literal account id

    Raises:
        ValueError: If the reference matches no account
    """
    ref = value.strip()
    upper = ref.upper()

    if upper in ACCOUNT_TYPE_ALIASES:
        account_type = ACCOUNT_TYPE_ALIASES[upper]
        for account in accounts:
            if account.type == account_type:
                return account.id
        raise ValueError(f"No account of type {upper} found")

    index: int | None = None
    if upper.startswith("INDEX:"):
        index = int(upper.split(":", 1)[1])
    elif ref.isdigit() and len(ref) <= 2:
        index = int(ref)

    if index is not None:
        if not 0 <= index < len(accounts):
            raise ValueError(f"Account index {index} out of range ({len(accounts)} accounts)")
        return accounts[index].id

    return ref


def new_order_id() -> str:
    """Idempotency key for PostOrder."""
    return str(uuid.uuid4())
