"""
Instrument catalog snapshot.

The catalog is fetched once per process start and read by every cycle.
InstrumentCatalog is immutable; CatalogStore.refresh builds a complete new
snapshot and swaps it in with one assignment, so readers see either the old
or the new catalog, never a partial one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import MappingProxyType

from apps.rebalancer.gateway import ResilientGateway
from apps.rebalancer.transport import INSTRUMENT_KINDS
from libs.portfolio.tickers import normalize_ticker
from libs.portfolio.types import Instrument

logger = logging.getLogger(__name__)


class InstrumentCatalog:
    """
    Read-only lookup of instruments by figi and by normalized ticker.

    When several instruments share a ticker (e.g. a share and a bond), the
    first one seen wins; kinds are loaded shares first.
    """

    def __init__(self, instruments: Iterable[Instrument]) -> None:
        by_figi: dict[str, Instrument] = {}
        by_ticker: dict[str, Instrument] = {}
        for instrument in instruments:
            by_figi.setdefault(instrument.figi, instrument)
            key = normalize_ticker(instrument.ticker) or instrument.ticker
            by_ticker.setdefault(key, instrument)
        self._by_figi = MappingProxyType(by_figi)
        self._by_ticker = MappingProxyType(by_ticker)

    def __len__(self) -> int:
        return len(self._by_figi)

    def by_figi(self, figi: str | None) -> Instrument | None:
        if not figi:
            return None
        return self._by_figi.get(figi)

    def by_ticker(self, ticker: str | None) -> Instrument | None:
        key = normalize_ticker(ticker)
        if not key:
            return None
        return self._by_ticker.get(key)


class CatalogStore:
    """
    Holder of the current catalog snapshot.

    Example:
        >>> store = CatalogStore(gateway)
        >>> catalog = await store.refresh()
        >>> catalog.by_ticker("TRUR").lot
        1
    """

    def __init__(self, gateway: ResilientGateway) -> None:
        self.gateway = gateway
        self._snapshot = InstrumentCatalog([])

    @property
    def snapshot(self) -> InstrumentCatalog:
        return self._snapshot

    async def refresh(self) -> InstrumentCatalog:
        """
        Fetch all instrument kinds and replace the snapshot.

        Raises:
            GatewayError: If any instrument list cannot be fetched; the
                previous snapshot stays in place
        """
        instruments: list[Instrument] = []
        for kind in INSTRUMENT_KINDS:
            instruments.extend(await self.gateway.get_instruments(kind))

        snapshot = InstrumentCatalog(instruments)
        self._snapshot = snapshot
        logger.info("Instrument catalog refreshed", extra={"instruments": len(snapshot)})
        return snapshot
