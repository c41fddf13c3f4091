"""
In-memory paper venue. Satisfies MarketConnector without touching a network.

Used by run.py in paper mode (seeded from a JSON file) and by tests. Orders
fill immediately at their limit price unless the market is in the reject set
or the connector has been marked unavailable.
"""

from __future__ import annotations

import itertools
import json
import logging
from pathlib import Path

from client.platform import ConnectorUnsupported
from scanner.matching import canonical_hash
from scanner.models import (
    Market,
    Order,
    OrderBook,
    PriceLevel,
    TradeResult,
    TradeStatus,
)

logger = logging.getLogger(__name__)

_order_seq = itertools.count(1)


class PaperConnector:
    """Deterministic in-memory venue for dry runs and tests."""

    def __init__(
        self,
        platform: str,
        markets: list[Market] | None = None,
        books: dict[str, OrderBook] | None = None,
        prices: dict[str, dict[str, float]] | None = None,
        reject_markets: set[str] | None = None,
        supports_orderbook: bool = True,
        positions: list[dict] | None = None,
    ) -> None:
        self._platform = platform
        self.markets: list[Market] = list(markets or [])
        self.books: dict[str, OrderBook] = dict(books or {})
        self.prices: dict[str, dict[str, float]] = dict(prices or {})
        self.reject_markets: set[str] = set(reject_markets or ())
        self.supports_orderbook = supports_orderbook
        self.positions = positions
        self.available = True
        self.orders: list[Order] = []

    @property
    def platform_name(self) -> str:
        return self._platform

    def _check_available(self) -> None:
        if not self.available:
            raise ConnectionError(f"{self._platform} network unavailable")

    async def get_markets(self, status: str = "active") -> list[Market]:
        self._check_available()
        if status == "all":
            return list(self.markets)
        return [m for m in self.markets if m.status == status]

    async def get_orderbook(self, market_id: str) -> OrderBook:
        self._check_available()
        if not self.supports_orderbook:
            raise ConnectorUnsupported(f"{self._platform} does not serve orderbooks")
        book = self.books.get(market_id)
        if book is None:
            raise KeyError(f"No orderbook for market {market_id}")
        return book

    async def get_market_price(self, market_id: str) -> dict[str, float]:
        self._check_available()
        if market_id in self.prices:
            return dict(self.prices[market_id])
        book = self.books.get(market_id)
        if book is None:
            raise KeyError(f"Market {market_id} not found")
        yes = book.midpoint
        if yes is None:
            raise ValueError(f"Market {market_id} has no two-sided book")
        return {"yes": yes, "no": 1.0 - yes}

    async def place_order(self, order: Order) -> TradeResult:
        self._check_available()
        self.orders.append(order)
        order_id = f"paper_{self._platform}_{next(_order_seq)}"
        if order.market_id in self.reject_markets:
            logger.info("[PAPER] %s rejected %s %s", self._platform, order.market_id, order.outcome)
            return TradeResult(
                order_id=order_id,
                status=TradeStatus.REJECTED,
                filled_size=0.0,
                filled_price=0.0,
                cost=0.0,
            )
        logger.info(
            "[PAPER] %s filled %s %s %s %.2f @ %.4f",
            self._platform, order.side.value, order.market_id, order.outcome, order.size, order.price,
        )
        return TradeResult(
            order_id=order_id,
            status=TradeStatus.FILLED,
            filled_size=order.size,
            filled_price=order.price,
            cost=order.size * order.price,
        )

    async def get_positions(self, wallet: str) -> list[dict]:
        self._check_available()
        if self.positions is None:
            raise ConnectorUnsupported(f"{self._platform} paper venue has no position API")
        return [dict(p) for p in self.positions]


def _book_from_dict(market_id: str, platform: str, data: dict) -> OrderBook:
    return OrderBook(
        market_id=market_id,
        platform=platform,
        bids=tuple(PriceLevel(float(p), float(s)) for p, s in data.get("bids", [])),
        asks=tuple(PriceLevel(float(p), float(s)) for p, s in data.get("asks", [])),
    )


def load_paper_connectors(path: str | Path) -> list[PaperConnector]:
    """
    Build paper connectors from a seed file:

        {"predictfun": {"markets": [{"id": ..., "title": ..., "resolution_date": ...}],
                        "books": {"m1": {"bids": [[0.44, 100]], "asks": [[0.46, 100]]}},
                        "prices": {"m1": {"yes": 0.45, "no": 0.55}},
                        "positions": [{"market_id": "m1", "outcome_label": "YES", "size": 5}]}}

    "positions" is optional; without it the venue has no position API.
    """
    raw = json.loads(Path(path).read_text())
    connectors: list[PaperConnector] = []
    for platform, venue in raw.items():
        markets = []
        for m in venue.get("markets", []):
            title = m["title"]
            resolution = m.get("resolution_date", "")
            markets.append(Market(
                id=str(m["id"]),
                platform=platform,
                title=title,
                description=m.get("description", ""),
                resolution_date=resolution,
                liquidity=float(m.get("liquidity", 0.0)),
                status=m.get("status", "active"),
                outcomes=tuple(m.get("outcomes", ("YES", "NO"))),
                canonical_hash=m.get("canonical_hash") or canonical_hash(title, resolution),
            ))
        books = {
            mid: _book_from_dict(mid, platform, b) for mid, b in venue.get("books", {}).items()
        }
        prices = {
            mid: {"yes": float(p["yes"]), "no": float(p["no"])}
            for mid, p in venue.get("prices", {}).items()
        }
        connectors.append(PaperConnector(
            platform,
            markets=markets,
            books=books,
            prices=prices,
            reject_markets=set(venue.get("reject_markets", [])),
            positions=venue.get("positions"),
        ))
    logger.info("Loaded %d paper connector(s) from %s", len(connectors), path)
    return connectors
