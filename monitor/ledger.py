"""
Position ledger with an append-only JSON-lines fill log.

Every accepted fill (gateway trade, bundle leg, unwind) is appended as one
line and never rewritten. Positions are derived on read by replaying fills
per (platform, market, outcome), so the ledger is the single source of truth
for what the agent actually holds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path

from client.platform import ConnectorUnsupported, MarketConnector
from scanner.models import Order, Side, TradeResult, now_iso

logger = logging.getLogger(__name__)

LEDGER_FILE = ".arb/trade-fills.jsonl"
MAX_LEDGER_ROWS = 10_000
RECORD_TYPE = "trade_fill_v1"

FILL_SOURCES = ("agent_action", "gateway", "bundle")
_TEXT_FIELDS = ("order_id", "platform", "market_id", "market_title", "outcome_label", "side", "timestamp")


@dataclass(frozen=True)
class TradeFillRecord:
    order_id: str
    platform: str
    market_id: str
    market_title: str
    outcome_label: str
    side: str  # "buy" | "sell"
    filled_size: float
    filled_price: float
    status: str
    timestamp: str
    source: str = "agent_action"
    tx_hash: str | None = None
    agent_id: str | None = None
    record_type: str = RECORD_TYPE


@dataclass(frozen=True)
class Position:
    platform: str
    market_id: str
    market_title: str
    outcome_label: str
    size: float
    avg_entry_price: float
    current_price: float
    pnl: float = 0.0
    pnl_percent: float = 0.0

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "marketId": self.market_id,
            "marketTitle": self.market_title,
            "outcomeLabel": self.outcome_label,
            "size": self.size,
            "avgEntryPrice": self.avg_entry_price,
            "currentPrice": self.current_price,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
        }


def _finite_positive(n: float) -> float:
    return n if math.isfinite(n) and n > 0 else 0.0


def _parse_line(line: str) -> TradeFillRecord | None:
    """Decode one ledger line. Malformed or foreign lines yield None."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("record_type") != RECORD_TYPE:
        return None
    if not all(isinstance(data.get(k), str) for k in _TEXT_FIELDS):
        return None
    if not data["order_id"] or not data["market_id"] or not data["platform"]:
        return None
    try:
        record = TradeFillRecord(**data)
        size, price = float(record.filled_size), float(record.filled_price)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(size) and math.isfinite(price)):
        return None
    return replace(record, filled_size=size, filled_price=price)


def _timestamp_key(record: TradeFillRecord) -> float:
    try:
        return datetime.fromisoformat(record.timestamp.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def build_positions(fills: list[TradeFillRecord]) -> list[Position]:
    """
    Replay fills into open positions.

    Buys add shares and cost basis. Sells reduce shares by at most what is
    held and release cost at the running average; a group never goes short.
    Fully closed groups are dropped. Sorted by market title.
    """
    groups: dict[str, dict] = {}
    for fill in fills:
        outcome = fill.outcome_label.upper()
        key = f"{fill.platform}|{fill.market_id}|{outcome}"
        agg = groups.setdefault(key, {
            "platform": fill.platform,
            "market_id": fill.market_id,
            "market_title": fill.market_title,
            "outcome_label": outcome,
            "shares": 0.0,
            "cost": 0.0,
        })

        if fill.side == Side.BUY.value:
            agg["shares"] += fill.filled_size
            agg["cost"] += fill.filled_size * fill.filled_price
        else:
            reducible = min(agg["shares"], fill.filled_size)
            avg = agg["cost"] / agg["shares"] if agg["shares"] > 0 else 0.0
            agg["shares"] -= reducible
            agg["cost"] -= reducible * avg
            if agg["shares"] <= 0:
                agg["shares"] = 0.0
                agg["cost"] = 0.0

        agg["market_title"] = fill.market_title or agg["market_title"]

    positions = []
    for agg in groups.values():
        if agg["shares"] <= 0:
            continue
        avg_entry = agg["cost"] / agg["shares"]
        positions.append(Position(
            platform=agg["platform"],
            market_id=agg["market_id"],
            market_title=agg["market_title"] or agg["market_id"],
            outcome_label=agg["outcome_label"],
            size=agg["shares"],
            avg_entry_price=avg_entry,
            current_price=avg_entry,
        ))
    positions.sort(key=lambda p: p.market_title)
    return positions


async def refresh_live_prices(
    positions: list[Position],
    connectors: dict[str, MarketConnector],
) -> list[Position]:
    """Overlay live prices and P&L. A failed lookup leaves that position unchanged."""

    async def one(position: Position) -> Position:
        connector = connectors.get(position.platform)
        if connector is None:
            return position
        try:
            prices = await connector.get_market_price(position.market_id)
            live = float(prices["yes"] if position.outcome_label.upper() == "YES" else prices["no"])
        except Exception as e:
            logger.debug("Live price unavailable for %s/%s: %s", position.platform, position.market_id, e)
            return position
        if not math.isfinite(live):
            return position
        entry = position.avg_entry_price
        return replace(
            position,
            current_price=live,
            pnl=(live - entry) * position.size,
            pnl_percent=(live - entry) / entry * 100.0 if entry > 0 else 0.0,
        )

    return list(await asyncio.gather(*(one(p) for p in positions)))


def position_from_venue(platform: str, data: dict) -> Position | None:
    """Normalise one venue-reported holding. Unusable rows yield None."""
    try:
        market_id = str(data["market_id"])
        outcome = str(data["outcome_label"]).upper()
        size = float(data["size"])
        entry = float(data.get("avg_entry_price", 0.0))
        current = float(data.get("current_price", entry))
    except (KeyError, TypeError, ValueError):
        return None
    if not all(math.isfinite(n) for n in (size, entry, current)) or size <= 0:
        return None
    return Position(
        platform=platform,
        market_id=market_id,
        market_title=str(data.get("market_title") or market_id),
        outcome_label=outcome,
        size=size,
        avg_entry_price=entry,
        current_price=current,
        pnl=(current - entry) * size,
        pnl_percent=(current - entry) / entry * 100.0 if entry > 0 else 0.0,
    )


def merge_positions(*groups: list[Position]) -> list[Position]:
    """
    Combine position lists that may overlap (ledger replay, venue APIs).

    Rows for the same platform|market|OUTCOME are summed; entry and current
    prices become size-weighted averages and P&L is recomputed.
    """
    merged: dict[str, Position] = {}
    for group in groups:
        for p in group:
            key = f"{p.platform}|{p.market_id}|{p.outcome_label.upper()}"
            existing = merged.get(key)
            if existing is None:
                merged[key] = replace(p, outcome_label=p.outcome_label.upper())
                continue
            size = existing.size + p.size
            entry = (existing.avg_entry_price * existing.size + p.avg_entry_price * p.size) / size
            current = (existing.current_price * existing.size + p.current_price * p.size) / size
            merged[key] = replace(
                existing,
                market_title=existing.market_title or p.market_title,
                size=size,
                avg_entry_price=entry,
                current_price=current,
                pnl=(current - entry) * size,
                pnl_percent=(current - entry) / entry * 100.0 if entry > 0 else 0.0,
            )
    return sorted(merged.values(), key=lambda p: p.market_title)


async def fetch_venue_positions(
    connectors: dict[str, MarketConnector],
    wallet: str,
    timeout_sec: float,
) -> tuple[list[Position], dict[str, bool], list[str]]:
    """
    Ask every connector for the wallet's holdings, concurrently.

    Returns (positions, sources, diagnostics). sources maps "<platform>Api" to
    whether that venue answered; a venue without a position API or one that
    fails adds a diagnostic line instead.
    """

    async def one(name: str, connector: MarketConnector) -> tuple[str, list[dict] | None, str | None]:
        try:
            rows = await asyncio.wait_for(connector.get_positions(wallet), timeout=timeout_sec)
        except ConnectorUnsupported:
            return name, None, f"{name} positions unsupported"
        except asyncio.TimeoutError:
            return name, None, f"{name} positions unavailable: timed out after {timeout_sec:.1f}s"
        except Exception as e:
            logger.warning("Venue positions failed on %s: %s", name, e)
            return name, None, f"{name} positions unavailable: {e}"
        return name, rows, None

    results = await asyncio.gather(*(one(n, c) for n, c in connectors.items()))
    positions: list[Position] = []
    sources: dict[str, bool] = {}
    diagnostics: list[str] = []
    for name, rows, problem in results:
        sources[f"{name}Api"] = rows is not None
        if problem:
            diagnostics.append(problem)
            continue
        for row in rows or []:
            position = position_from_venue(name, row) if isinstance(row, dict) else None
            if position is None:
                logger.debug("Skipping unusable %s position row: %r", name, row)
                continue
            positions.append(position)
    return positions, sources, diagnostics


class PositionLedger:
    """Append-only fill log plus position derivation. One instance per ledger file."""

    def __init__(self, path: str | Path = LEDGER_FILE, max_rows: int = MAX_LEDGER_ROWS) -> None:
        self.path = Path(path)
        self.max_rows = max_rows
        self._lock = asyncio.Lock()

    async def record_fill(self, record: TradeFillRecord) -> bool:
        """Append one fill. Non-positive sizes are ignored. Returns True if written."""
        if record.filled_size <= 0:
            return False
        line = json.dumps(asdict(record), separators=(",", ":"))
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug(
            "Ledger: %s %s %s/%s %.4f @ %.4f",
            record.source, record.side, record.platform, record.market_id,
            record.filled_size, record.filled_price,
        )
        return True

    async def record_trade_result(
        self,
        order: Order,
        trade: TradeResult,
        market_title: str,
        outcome_label: str,
        source: str = "agent_action",
        agent_id: str | None = None,
    ) -> bool:
        if trade.filled_size <= 0:
            return False
        return await self.record_fill(TradeFillRecord(
            order_id=trade.order_id,
            platform=order.platform,
            market_id=order.market_id,
            market_title=market_title,
            outcome_label=outcome_label,
            side=order.side.value,
            filled_size=_finite_positive(trade.filled_size),
            filled_price=_finite_positive(trade.filled_price),
            status=trade.status.value,
            timestamp=trade.timestamp or now_iso(),
            source=source,
            tx_hash=trade.tx_hash,
            agent_id=agent_id,
        ))

    def read_fills(self, limit: int | None = None, agent_id: str | None = None) -> list[TradeFillRecord]:
        """Last `limit` valid fills, oldest first. Missing file reads as empty."""
        limit = limit or self.max_rows
        try:
            lines = self.path.read_text(encoding="utf-8", errors="replace").splitlines()
        except FileNotFoundError:
            return []
        lines = [ln for ln in lines if ln.strip()][-limit:]
        records = [r for r in (_parse_line(ln) for ln in lines) if r is not None]
        if agent_id:
            records = [r for r in records if r.agent_id == agent_id]
        records.sort(key=_timestamp_key)
        return records

    def get_positions(self, agent_id: str | None = None) -> list[Position]:
        return build_positions(self.read_fills(agent_id=agent_id))
