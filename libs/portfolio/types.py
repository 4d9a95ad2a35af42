"""
Portfolio data model.

Defines the value types one rebalancing cycle works with:
- Quotation: broker fixed-point number ({units, nano}) with exact Decimal conversion
- Instrument: one entry of the broker instrument catalog
- Position / MarginPosition: one holding of the wallet
- Wallet / DesiredWallet: the current and the target portfolio

Wallets are rebuilt from a fresh portfolio snapshot every cycle. Derived
values (lot price, total value) are properties recomputed from price and
amount, so they can never drift from their inputs.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

NANO = Decimal(1_000_000_000)


class Quotation(BaseModel):
    """
    Fixed-point number as used by the brokerage API.

    The value is `units + nano / 10^9`; both parts carry the same sign.

    Example:
        >>> Quotation(units=142, nano=290000000).to_decimal()
        Decimal('142.29')
        >>> Quotation.from_decimal(Decimal("-1.5"))
        Quotation(units=-1, nano=-500000000, currency=None)
    """

    model_config = ConfigDict(frozen=True)

    units: int = 0
    nano: int = 0
    currency: str | None = None

    def to_decimal(self) -> Decimal:
        return (Decimal(self.units) + Decimal(self.nano) / NANO).normalize()

    @classmethod
    def from_decimal(cls, value: Decimal | int | float, currency: str | None = None) -> Quotation:
        value = Decimal(str(value))
        units = int(value)
        nano = int(((value - units) * NANO).to_integral_value())
        return cls(units=units, nano=nano, currency=currency)


class Instrument(BaseModel):
    """Catalog entry for a tradeable instrument."""

    model_config = ConfigDict(frozen=True)

    figi: str
    ticker: str
    lot: int = Field(default=1, ge=1)
    currency: str = "rub"
    name: str = ""
    kind: str = "share"  # share, etf, bond, currency, future
    num_shares: Decimal | None = None  # shares outstanding, when the broker reports it


class Position(BaseModel):
    """
    One holding of the wallet.

    The settlement-currency entry has `ticker == quote`, price 1 and lot 1.
    `lots_to_trade` is filled in by the order planner: positive means buy,
    negative means sell, always a whole number of lots.

    Attributes:
        ticker: Base symbol (e.g. "TRUR"), or the currency code for cash
        quote: Quote currency (e.g. "RUB")
        figi: Unique instrument id; None when unresolvable (no order possible)
        amount: Units held (not lots)
        lot_size: Units per lot
        price: Unit price
        blocked: Whether the holding is frozen and must not be traded
        blocked_lots: Frozen quantity in lots
        average_price: Average purchase price per unit, when known
        lots_to_trade: Planned signed lot delta
    """

    ticker: str
    quote: str = "RUB"
    figi: str | None = None
    amount: Decimal = Decimal(0)
    lot_size: int = Field(default=1, ge=1)
    price: Quotation = Field(default_factory=Quotation)
    blocked: bool = False
    blocked_lots: Decimal = Decimal(0)
    average_price: Decimal | None = None
    lots_to_trade: int = 0

    @property
    def pair(self) -> str:
        return f"{self.ticker}/{self.quote}"

    @property
    def is_settlement_currency(self) -> bool:
        return self.ticker.upper() == self.quote.upper()

    @property
    def price_number(self) -> Decimal:
        return self.price.to_decimal()

    @property
    def lot_price_number(self) -> Decimal:
        return self.price_number * self.lot_size

    @property
    def lot_price(self) -> Quotation:
        return Quotation.from_decimal(self.lot_price_number, currency=self.price.currency)

    @property
    def total_price_number(self) -> Decimal:
        return self.price_number * self.amount

    @property
    def total_price(self) -> Quotation:
        return Quotation.from_decimal(self.total_price_number, currency=self.price.currency)

    @property
    def lots(self) -> Decimal:
        return self.amount / self.lot_size


class MarginPosition(Position):
    """
    Position financed partly through broker-provided leverage.

    Attributes:
        is_margin: Whether the holding currently uses borrowed funds
        margin_value: Notional financed by leverage
        leverage: Position leverage (> 1 when margin is used)
        margin_call: Whether leverage exceeds the configured multiplier
    """

    is_margin: bool = True
    margin_value: Decimal = Decimal(0)
    leverage: Decimal | None = None
    margin_call: bool = False


Wallet = list[Position]

# Ticker -> target weight in percent; not necessarily normalized to 100.
DesiredWallet = dict[str, float]


def is_margin_position(position: Position) -> bool:
    """True for positions flagged as margin-financed."""
    return isinstance(position, MarginPosition) and position.is_margin


def settlement_entries(wallet: Wallet) -> list[Position]:
    """Return the settlement-currency entries (`ticker == quote`) of a wallet."""
    return [p for p in wallet if p.is_settlement_currency]


def validate_wallet(wallet: Wallet) -> None:
    """
    Check wallet invariants.

    Raises:
        ValueError: If more than one settlement-currency entry is present
    """
    cash = settlement_entries(wallet)
    if len(cash) > 1:
        raise ValueError(
            f"Wallet may hold at most one settlement-currency entry, got {[p.ticker for p in cash]}"
        )
