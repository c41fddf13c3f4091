"""
Data models for the arbitrage scanner and connectors. Pure data, no behavior.

Prices are implied probabilities in [0, 1]; one YES share plus one NO share of
the same event always pays out exactly 1 unit at resolution.
"""

from __future__ import annotations

import time
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone


class OpportunityType(str, Enum):
    INTRA_PLATFORM = "intra_platform"
    CROSS_PLATFORM = "cross_platform"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TradeStatus(str, Enum):
    FILLED = "filled"
    PARTIAL = "partial"
    PENDING = "pending"
    SUBMITTED = "submitted"
    REJECTED = "rejected"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def flip_outcome(outcome: str) -> str:
    return "NO" if outcome.upper() == "YES" else "YES"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    market_id: str
    platform: str
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]

    @property
    def best_bid(self) -> PriceLevel | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> PriceLevel | None:
        return self.asks[0] if self.asks else None

    @property
    def spread(self) -> float | None:
        if self.best_bid and self.best_ask:
            return self.best_ask.price - self.best_bid.price
        return None

    @property
    def midpoint(self) -> float | None:
        if self.best_bid and self.best_ask:
            return (self.best_ask.price + self.best_bid.price) / 2.0
        return None


@dataclass(frozen=True)
class Quote:
    """YES/NO prices for one market at fetch time. Never persisted."""
    platform: str
    market_id: str
    yes: float
    no: float
    liquidity: float = 0.0
    fetched_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Market:
    id: str
    platform: str
    title: str
    description: str = ""
    resolution_date: str = ""  # ISO 8601, empty = unknown
    liquidity: float = 0.0
    status: str = "active"     # "active" | "resolved" | "paused"
    url: str = ""
    outcomes: tuple[str, ...] = ("YES", "NO")
    canonical_hash: str = ""   # cross-venue event fingerprint

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "title": self.title,
            "description": self.description,
            "resolutionDate": self.resolution_date,
            "liquidity": self.liquidity,
            "status": self.status,
            "outcomes": list(self.outcomes),
            "url": self.url,
            "canonicalHash": self.canonical_hash,
        }


@dataclass(frozen=True)
class Order:
    market_id: str
    platform: str
    outcome: str  # "YES" | "NO"
    side: Side
    price: float
    size: float   # shares
    type: str = "limit"

    def to_dict(self) -> dict:
        return {
            "marketId": self.market_id,
            "platform": self.platform,
            "outcome": self.outcome,
            "side": self.side.value,
            "price": self.price,
            "size": self.size,
            "type": self.type,
        }


@dataclass(frozen=True)
class TradeResult:
    """Connector response to an order placement."""
    order_id: str
    status: TradeStatus
    filled_size: float
    filled_price: float
    cost: float
    timestamp: str = field(default_factory=now_iso)
    tx_hash: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status != TradeStatus.REJECTED

    def to_dict(self) -> dict:
        out = {
            "orderId": self.order_id,
            "status": self.status.value,
            "filledSize": self.filled_size,
            "filledPrice": self.filled_price,
            "cost": self.cost,
            "timestamp": self.timestamp,
        }
        if self.tx_hash:
            out["txHash"] = self.tx_hash
        return out


@dataclass(frozen=True)
class ArbLeg:
    platform: str
    market_id: str
    outcome: str  # "YES" | "NO"
    price: float
    side: Side = Side.BUY

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "marketId": self.market_id,
            "outcome": self.outcome,
            "side": self.side.value,
            "price": self.price,
        }


@dataclass(frozen=True)
class ArbOpportunity:
    type: OpportunityType
    description: str
    platforms: tuple[str, ...]
    market_title: str
    legs: tuple[ArbLeg, ...]
    total_cost: float        # per share set
    profit: float            # per share set, gross
    profit_percent: float
    confidence: Confidence
    guaranteed_payout: float = 1.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "description": self.description,
            "platforms": list(self.platforms),
            "marketTitle": self.market_title,
            "legs": [leg.to_dict() for leg in self.legs],
            "totalCost": self.total_cost,
            "guaranteedPayout": self.guaranteed_payout,
            "profit": self.profit,
            "profitPercent": self.profit_percent,
            "confidence": self.confidence.value,
        }


def confidence_for_profit(profit: float) -> Confidence:
    if profit > 0.03:
        return Confidence.HIGH
    if profit > 0.01:
        return Confidence.MEDIUM
    return Confidence.LOW


@dataclass(frozen=True)
class ScanItemResult:
    """Outcome of one unit of scan work (a connector, a market, or a venue pair)."""
    scope: str      # "connector" | "market" | "pair"
    platform: str
    key: str
    ok: bool
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "platform": self.platform,
            "key": self.key,
            "ok": self.ok,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScanReport:
    opportunities: tuple[ArbOpportunity, ...]
    items: tuple[ScanItemResult, ...] = ()

    @property
    def skipped(self) -> tuple[ScanItemResult, ...]:
        return tuple(i for i in self.items if not i.ok)

    @property
    def coverage(self) -> float:
        """Fraction of attempted scan items that completed (1.0 when nothing was attempted)."""
        if not self.items:
            return 1.0
        return sum(1 for i in self.items if i.ok) / len(self.items)

    def coverage_dict(self) -> dict:
        return {
            "attempted": len(self.items),
            "skipped": len(self.skipped),
            "coverage": round(self.coverage, 4),
            "skips": [i.to_dict() for i in self.skipped],
        }
