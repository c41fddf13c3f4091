"""
Arbitrage scanner. Turns connector quotes into ranked opportunities.

Two families:
  - intra-platform: YES_ask + NO_ask < threshold on one venue. Buying both
    sides costs less than the guaranteed $1 payout.
  - cross-platform: the same event (matched by canonical hash) trades at
    different YES prices on two venues. Buy YES where it is cheap and NO on
    the other venue; if the pair costs < $1 the payout is locked in.

Scanning is best-effort. Every connector listing, market and venue pair is a
separate unit of work whose outcome (ok / skipped with reason) is collected
into the ScanReport, so coverage gaps are observable instead of silent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Awaitable, TypeVar

from client.platform import ConnectorUnsupported, MarketConnector
from scanner.matching import index_by_hash, market_hash
from scanner.models import (
    ArbLeg,
    ArbOpportunity,
    Market,
    OpportunityType,
    ScanItemResult,
    ScanReport,
    confidence_for_profit,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTRA_THRESHOLD = 0.995
CROSS_SPREAD_THRESHOLD = 0.015
INTRA_BATCH_SIZE = 20


class AllConnectorsUnavailable(Exception):
    """Raised by scan_all when no connector could list its markets."""
    pass


@dataclass
class _Listing:
    connector: MarketConnector
    markets: list[Market]


def _describe_error(e: BaseException) -> str:
    if isinstance(e, asyncio.TimeoutError):
        return "timeout"
    return f"{type(e).__name__}: {e}"


class ArbScanner:
    """
    Scans a fixed set of connectors for arbitrage.

    All outbound calls are bounded by timeout_sec. A slow or failing venue
    degrades coverage but never fails the scan as a whole.
    """

    def __init__(
        self,
        connectors: list[MarketConnector],
        intra_threshold: float = INTRA_THRESHOLD,
        cross_spread_threshold: float = CROSS_SPREAD_THRESHOLD,
        batch_size: int = INTRA_BATCH_SIZE,
        timeout_sec: float = 5.0,
    ) -> None:
        self._connectors = list(connectors)
        self._intra_threshold = intra_threshold
        self._cross_spread_threshold = cross_spread_threshold
        self._batch_size = batch_size
        self._timeout_sec = timeout_sec

    @property
    def connectors(self) -> list[MarketConnector]:
        return list(self._connectors)

    async def _call(self, aw: Awaitable[T]) -> T:
        return await asyncio.wait_for(aw, timeout=self._timeout_sec)

    # ── Listings ──

    async def _list_markets(self) -> tuple[list[_Listing], list[ScanItemResult]]:
        """Fetch active markets from every connector concurrently."""

        async def one(c: MarketConnector) -> tuple[_Listing | None, ScanItemResult]:
            try:
                markets = await self._call(c.get_markets(status="active"))
            except Exception as e:
                logger.warning("Market listing failed on %s: %s", c.platform_name, _describe_error(e))
                return None, ScanItemResult("connector", c.platform_name, "get_markets", False, _describe_error(e))
            return _Listing(c, markets), ScanItemResult("connector", c.platform_name, "get_markets", True)

        results = await asyncio.gather(*(one(c) for c in self._connectors))
        listings = [listing for listing, _ in results if listing is not None]
        items = [item for _, item in results]
        return listings, items

    # ── Intra-platform ──

    async def _intra_prices(self, c: MarketConnector, market: Market) -> tuple[float, float]:
        """Best YES ask and synthetic NO ask (1 - best YES bid)."""
        try:
            book = await self._call(c.get_orderbook(market.id))
        except ConnectorUnsupported:
            prices = await self._call(c.get_market_price(market.id))
            return float(prices["yes"]), float(prices["no"])
        yes_ask = book.best_ask.price if book.best_ask else 1.0
        no_ask = 1.0 - (book.best_bid.price if book.best_bid else 0.0)
        return yes_ask, no_ask

    async def _check_intra_market(
        self, c: MarketConnector, market: Market,
    ) -> tuple[ArbOpportunity | None, ScanItemResult]:
        platform = c.platform_name
        try:
            yes_ask, no_ask = await self._intra_prices(c, market)
        except Exception as e:
            logger.debug("Skipping %s/%s: %s", platform, market.id, _describe_error(e))
            return None, ScanItemResult("market", platform, market.id, False, _describe_error(e))

        total_cost = yes_ask + no_ask
        item = ScanItemResult("market", platform, market.id, True)
        if total_cost <= 0 or total_cost >= self._intra_threshold:
            return None, item

        profit = 1.0 - total_cost
        opp = ArbOpportunity(
            type=OpportunityType.INTRA_PLATFORM,
            description=(
                f"Buy YES + NO on {platform} for ${total_cost:.4f}, guaranteed payout $1.00"
            ),
            platforms=(platform,),
            market_title=market.title,
            legs=(
                ArbLeg(platform, market.id, "YES", yes_ask),
                ArbLeg(platform, market.id, "NO", no_ask),
            ),
            total_cost=total_cost,
            profit=profit,
            profit_percent=profit / total_cost * 100.0,
            confidence=confidence_for_profit(profit),
        )
        return opp, item

    async def _scan_intra_listings(self, listings: list[_Listing]) -> ScanReport:
        tasks = [
            self._check_intra_market(listing.connector, market)
            for listing in listings
            for market in listing.markets[: self._batch_size]
        ]
        results = await asyncio.gather(*tasks)
        opps = tuple(opp for opp, _ in results if opp is not None)
        items = tuple(item for _, item in results)
        if opps:
            logger.info("Intra-platform scan: %d opportunit%s", len(opps), "y" if len(opps) == 1 else "ies")
        return ScanReport(opportunities=opps, items=items)

    async def scan_intra_platform(self) -> ScanReport:
        """Scan each venue's own YES/NO pair for sub-$1 bundles."""
        listings, items = await self._list_markets()
        report = await self._scan_intra_listings(listings)
        return ScanReport(report.opportunities, tuple(items) + report.items)

    # ── Cross-platform ──

    async def _check_cross_pair(
        self, a: _Listing, market_a: Market, b: _Listing, market_b: Market,
    ) -> tuple[ArbOpportunity | None, ScanItemResult]:
        pa, pb = a.connector.platform_name, b.connector.platform_name
        key = f"{pa}:{market_a.id}|{pb}:{market_b.id}"
        try:
            prices_a, prices_b = await asyncio.gather(
                self._call(a.connector.get_market_price(market_a.id)),
                self._call(b.connector.get_market_price(market_b.id)),
            )
            yes_a, no_a = float(prices_a["yes"]), float(prices_a["no"])
            yes_b, no_b = float(prices_b["yes"]), float(prices_b["no"])
        except Exception as e:
            logger.debug("Skipping pair %s: %s", key, _describe_error(e))
            return None, ScanItemResult("pair", f"{pa}/{pb}", key, False, _describe_error(e))

        item = ScanItemResult("pair", f"{pa}/{pb}", key, True)
        spread = abs(yes_a - yes_b)
        if spread <= self._cross_spread_threshold:
            return None, item

        if yes_a < yes_b:
            yes_platform, yes_market, yes_price = pa, market_a.id, yes_a
            no_platform, no_market, no_price = pb, market_b.id, no_b
        else:
            yes_platform, yes_market, yes_price = pb, market_b.id, yes_b
            no_platform, no_market, no_price = pa, market_a.id, no_a

        total_cost = yes_price + no_price
        if total_cost <= 0 or total_cost >= 1.0:
            return None, item

        profit = 1.0 - total_cost
        opp = ArbOpportunity(
            type=OpportunityType.CROSS_PLATFORM,
            description=(
                f"Buy YES on {yes_platform} (${yes_price:.2f}) + NO on {no_platform} (${no_price:.2f})"
            ),
            platforms=(yes_platform, no_platform),
            market_title=market_a.title,
            legs=(
                ArbLeg(yes_platform, yes_market, "YES", yes_price),
                ArbLeg(no_platform, no_market, "NO", no_price),
            ),
            total_cost=total_cost,
            profit=profit,
            profit_percent=profit / total_cost * 100.0,
            confidence=confidence_for_profit(profit),
        )
        return opp, item

    async def _scan_cross_listings(self, listings: list[_Listing]) -> ScanReport:
        available = [listing for listing in listings if listing.markets]
        if len(available) < 2:
            return ScanReport(opportunities=())

        tasks = []
        for a, b in combinations(available, 2):
            b_index = index_by_hash(b.markets)
            for market_a in a.markets:
                h = market_hash(market_a)
                if not h:
                    continue
                market_b = b_index.get(h)
                if market_b is None:
                    continue
                tasks.append(self._check_cross_pair(a, market_a, b, market_b))

        results = await asyncio.gather(*tasks)
        opps = tuple(opp for opp, _ in results if opp is not None)
        items = tuple(item for _, item in results)
        if opps:
            logger.info("Cross-platform scan: %d opportunit%s", len(opps), "y" if len(opps) == 1 else "ies")
        return ScanReport(opportunities=opps, items=items)

    async def scan_cross_platform(self) -> ScanReport:
        """Compare every pair of venues on hash-matched events."""
        listings, items = await self._list_markets()
        report = await self._scan_cross_listings(listings)
        return ScanReport(report.opportunities, tuple(items) + report.items)

    # ── Combined ──

    async def scan_all(self) -> ScanReport:
        """
        Run intra and cross scans concurrently over one shared market listing.

        Opportunities are sorted by profit_percent descending. Raises
        AllConnectorsUnavailable only when every connector failed to list.
        """
        listings, items = await self._list_markets()
        if self._connectors and not listings:
            reasons = "; ".join(f"{i.platform}: {i.reason}" for i in items)
            raise AllConnectorsUnavailable(f"All connectors unreachable ({reasons})")

        intra, cross = await asyncio.gather(
            self._scan_intra_listings(listings),
            self._scan_cross_listings(listings),
        )
        opps = sorted(
            intra.opportunities + cross.opportunities,
            key=lambda o: o.profit_percent,
            reverse=True,
        )
        report = ScanReport(
            opportunities=tuple(opps),
            items=tuple(items) + intra.items + cross.items,
        )
        logger.info(
            "Scan complete: %d opportunities, coverage %.0f%% (%d skipped)",
            len(opps), report.coverage * 100, len(report.skipped),
        )
        return report
