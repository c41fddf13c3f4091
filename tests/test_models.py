"""
Unit tests for scanner/models.py.
"""

from scanner.models import (
    ArbLeg,
    ArbOpportunity,
    Confidence,
    Market,
    OpportunityType,
    Order,
    OrderBook,
    PriceLevel,
    ScanItemResult,
    ScanReport,
    Side,
    TradeResult,
    TradeStatus,
    confidence_for_profit,
    flip_outcome,
    now_iso,
)


class TestOrderBook:
    def test_best_levels_and_midpoint(self):
        book = OrderBook(
            "m1", "p",
            bids=(PriceLevel(0.40, 10), PriceLevel(0.39, 5)),
            asks=(PriceLevel(0.44, 10),),
        )
        assert book.best_bid.price == 0.40
        assert book.best_ask.price == 0.44
        assert abs(book.spread - 0.04) < 1e-9
        assert abs(book.midpoint - 0.42) < 1e-9

    def test_empty_sides(self):
        book = OrderBook("m1", "p", bids=(), asks=())
        assert book.best_bid is None
        assert book.best_ask is None
        assert book.spread is None
        assert book.midpoint is None


class TestHelpers:
    def test_flip_outcome(self):
        assert flip_outcome("YES") == "NO"
        assert flip_outcome("yes") == "NO"
        assert flip_outcome("NO") == "YES"

    def test_confidence_bands(self):
        assert confidence_for_profit(0.05) == Confidence.HIGH
        assert confidence_for_profit(0.03) == Confidence.MEDIUM
        assert confidence_for_profit(0.02) == Confidence.MEDIUM
        assert confidence_for_profit(0.01) == Confidence.LOW

    def test_now_iso_is_utc_z(self):
        ts = now_iso()
        assert ts.endswith("Z")
        assert "T" in ts


class TestTradeResult:
    def test_accepted_statuses(self):
        for status in (TradeStatus.FILLED, TradeStatus.PARTIAL, TradeStatus.PENDING, TradeStatus.SUBMITTED):
            assert TradeResult("o", status, 1, 0.5, 0.5).accepted
        assert not TradeResult("o", TradeStatus.REJECTED, 0, 0, 0).accepted

    def test_to_dict_omits_missing_tx_hash(self):
        d = TradeResult("o1", TradeStatus.FILLED, 2, 0.5, 1.0).to_dict()
        assert d["orderId"] == "o1"
        assert d["status"] == "filled"
        assert "txHash" not in d


class TestSerialization:
    def test_market_to_dict_camel_case(self):
        d = Market("m1", "predictfun", "Title", resolution_date="2026-01-01").to_dict()
        assert d["resolutionDate"] == "2026-01-01"
        assert d["canonicalHash"] == ""
        assert d["outcomes"] == ["YES", "NO"]

    def test_order_to_dict(self):
        d = Order("m1", "p", "YES", Side.BUY, 0.4, 10).to_dict()
        assert d == {
            "marketId": "m1", "platform": "p", "outcome": "YES", "side": "buy",
            "price": 0.4, "size": 10, "type": "limit",
        }

    def test_opportunity_to_dict(self):
        opp = ArbOpportunity(
            type=OpportunityType.INTRA_PLATFORM,
            description="d",
            platforms=("p",),
            market_title="T",
            legs=(ArbLeg("p", "m", "YES", 0.4), ArbLeg("p", "m", "NO", 0.5)),
            total_cost=0.9,
            profit=0.1,
            profit_percent=11.1,
            confidence=Confidence.HIGH,
        )
        d = opp.to_dict()
        assert d["type"] == "intra_platform"
        assert d["guaranteedPayout"] == 1.0
        assert len(d["legs"]) == 2
        assert d["confidence"] == "high"


class TestScanReport:
    def test_coverage_no_items(self):
        assert ScanReport(opportunities=()).coverage == 1.0

    def test_coverage_and_skips(self):
        report = ScanReport(
            opportunities=(),
            items=(
                ScanItemResult("market", "p", "m1", True),
                ScanItemResult("market", "p", "m2", False, "timeout"),
                ScanItemResult("market", "p", "m3", True),
                ScanItemResult("connector", "q", "get_markets", False, "down"),
            ),
        )
        assert report.coverage == 0.5
        assert [i.key for i in report.skipped] == ["m2", "get_markets"]
        d = report.coverage_dict()
        assert d["attempted"] == 4
        assert d["skipped"] == 2
        assert d["skips"][0]["reason"] == "timeout"
