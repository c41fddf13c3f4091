"""
Market connector protocol. The core only ever talks to venues through this.

Any venue client (Predict.fun, Opinion, Probable, ...) that satisfies this
protocol can plug into the scanner, the gateway and the orchestrator with
zero changes to their code. All methods are coroutines; a connector may
suspend while waiting on the network.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from scanner.models import Market, Order, OrderBook, TradeResult


class ConnectorUnsupported(Exception):
    """Raised when a connector does not implement an optional capability."""
    pass


@runtime_checkable
class MarketConnector(Protocol):
    """
    Minimal interface for a prediction-market venue.

    get_positions may raise ConnectorUnsupported; get_orderbook may too, in
    which case scanners fall back to get_market_price.
    """

    @property
    def platform_name(self) -> str:
        """Short identifier: 'predictfun', 'opinion', etc."""
        ...

    async def get_markets(self, status: str = "active") -> list[Market]:
        """Fetch markets. status is 'active' or 'all'."""
        ...

    async def get_orderbook(self, market_id: str) -> OrderBook:
        """Fetch the YES orderbook for a market."""
        ...

    async def get_market_price(self, market_id: str) -> dict[str, float]:
        """Return {'yes': p, 'no': q} for a market."""
        ...

    async def place_order(self, order: Order) -> TradeResult:
        """Place an order. Rejections are reported via TradeResult.status."""
        ...

    async def get_positions(self, wallet: str) -> list[dict]:
        """
        Venue-reported positions for a wallet, one dict per holding with keys
        market_id, market_title, outcome_label, size, avg_entry_price and
        current_price.
        """
        ...
