"""
Bundle execution engine.

Runs a planned two-leg bundle to a terminal state:
1. Claim the bundle (planned -> executing) and persist
2. Place leg A; if rejected, the bundle fails and leg B is never sent
3. Place leg B; if accepted, the bundle succeeds
4. If leg B is rejected, unwind leg A by buying the opposite outcome at
   clamp(1 - legA.price) for the same share count

Legs are strictly sequential. A connector exception or timeout on any leg
counts as a rejection of that leg. Every accepted fill is appended to the position
ledger. The optional post-trade hook runs fire-and-forget and can never
change the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from client.platform import MarketConnector
from executor.bundle_state import BundleStatus, ExecutionBundle, ExecutionLeg
from executor.bundle_store import BundleNotFound, BundleStore
from monitor.ledger import PositionLedger
from scanner.models import Order, TradeResult, TradeStatus, flip_outcome

logger = logging.getLogger(__name__)

_UNWIND_MIN_PRICE = 0.01
_UNWIND_MAX_PRICE = 0.99

TradeHook = Callable[["BundleExecutionResult"], Awaitable[None]]


class BundleNotExecutable(Exception):
    """Raised when a bundle is not in the planned state."""
    pass


@dataclass(frozen=True)
class BundleExecutionResult:
    bundle: ExecutionBundle
    leg_results: tuple[TradeResult, ...]
    unwind_result: TradeResult | None = None
    realized_profit_estimate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "bundle": self.bundle.to_dict(),
            "legResults": [r.to_dict() for r in self.leg_results],
            "unwindResult": self.unwind_result.to_dict() if self.unwind_result else None,
            "realizedProfitEstimate": self.realized_profit_estimate,
        }


def _rejected() -> TradeResult:
    return TradeResult(order_id="", status=TradeStatus.REJECTED, filled_size=0.0, filled_price=0.0, cost=0.0)


def unwind_order(leg: ExecutionLeg) -> Order:
    """Opposite-outcome buy that neutralises a filled leg."""
    price = min(max(1.0 - leg.price, _UNWIND_MIN_PRICE), _UNWIND_MAX_PRICE)
    return Order(
        market_id=leg.market_id,
        platform=leg.platform,
        outcome=flip_outcome(leg.outcome),
        side=leg.side,
        price=price,
        size=leg.shares,
    )


class ExecutionOrchestrator:
    def __init__(
        self,
        connectors: dict[str, MarketConnector],
        store: BundleStore,
        ledger: PositionLedger,
        on_trade_complete: TradeHook | None = None,
        timeout_sec: float = 5.0,
    ) -> None:
        self._connectors = connectors
        self._store = store
        self._ledger = ledger
        self._on_trade_complete = on_trade_complete
        self._timeout_sec = timeout_sec
        self._background: set[asyncio.Task] = set()

    def _persist(self, bundle: ExecutionBundle, to_status: BundleStatus, reason: str | None = None) -> ExecutionBundle:
        updated = bundle.transition(to_status, failure_reason=reason)
        self._store.save(updated)
        return updated

    async def _place(self, order: Order) -> TradeResult:
        """Send one order. Missing connector, timeout or a raised error reads as a rejection."""
        connector = self._connectors.get(order.platform)
        if connector is None:
            logger.error("No connector for platform '%s'", order.platform)
            return _rejected()
        try:
            return await asyncio.wait_for(connector.place_order(order), timeout=self._timeout_sec)
        except asyncio.TimeoutError:
            logger.error(
                "Order timed out on %s for %s %s after %.1fs",
                order.platform, order.market_id, order.outcome, self._timeout_sec,
            )
            return _rejected()
        except Exception as e:
            logger.error(
                "Order failed on %s for %s %s: %s",
                order.platform, order.market_id, order.outcome, e,
            )
            return _rejected()

    async def _record(
        self, order: Order, result: TradeResult, market_title: str, agent_id: str | None,
    ) -> None:
        if result.filled_size <= 0:
            return
        try:
            await self._ledger.record_trade_result(
                order, result, market_title=market_title, outcome_label=order.outcome,
                source="bundle", agent_id=agent_id,
            )
        except OSError as e:
            logger.error("Ledger write failed for order %s: %s", result.order_id, e)

    def _notify(self, result: BundleExecutionResult) -> None:
        if self._on_trade_complete is None:
            return

        async def run_hook() -> None:
            try:
                await self._on_trade_complete(result)
            except Exception as e:
                logger.warning("Post-trade hook failed for %s: %s", result.bundle.bundle_id, e)

        task = asyncio.get_running_loop().create_task(run_hook())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def execute(
        self, bundle_or_id: ExecutionBundle | str, agent_id: str | None = None,
    ) -> BundleExecutionResult:
        if isinstance(bundle_or_id, str):
            bundle = self._store.get(bundle_or_id)
            if bundle is None:
                raise BundleNotFound(bundle_or_id)
        else:
            bundle = bundle_or_id

        if bundle.status != BundleStatus.PLANNED:
            raise BundleNotExecutable(
                f"Bundle {bundle.bundle_id} is {bundle.status.value}, only planned bundles can execute"
            )
        if len(bundle.legs) != 2:
            raise BundleNotExecutable(f"Bundle {bundle.bundle_id} has {len(bundle.legs)} legs, expected 2")

        leg_a, leg_b = bundle.legs
        bundle = self._persist(bundle, BundleStatus.EXECUTING)
        logger.info(
            "Executing %s: %s %s on %s, then %s on %s",
            bundle.bundle_id, bundle.market_title, leg_a.outcome, leg_a.platform,
            leg_b.outcome, leg_b.platform,
        )

        # Leg A
        order_a = leg_a.to_order()
        result_a = await self._place(order_a)
        if not result_a.accepted:
            bundle = self._persist(bundle, BundleStatus.FAILED, "Leg A rejected")
            logger.warning("Bundle %s failed: leg A rejected", bundle.bundle_id)
            return self._finish(BundleExecutionResult(bundle, (result_a,)))

        # Leg B
        order_b = leg_b.to_order()
        result_b = await self._place(order_b)
        if result_b.accepted:
            await self._record(order_a, result_a, bundle.market_title, agent_id)
            await self._record(order_b, result_b, bundle.market_title, agent_id)
            bundle = self._persist(bundle, BundleStatus.SUCCESS)
            logger.info(
                "Bundle %s succeeded: expected profit $%.2f",
                bundle.bundle_id, bundle.expected_total_profit,
            )
            return self._finish(BundleExecutionResult(
                bundle, (result_a, result_b), realized_profit_estimate=bundle.expected_total_profit,
            ))

        # Leg B rejected: unwind leg A
        await self._record(order_a, result_a, bundle.market_title, agent_id)
        unwind = unwind_order(leg_a)
        logger.warning(
            "Bundle %s: leg B rejected, unwinding leg A via %s @ %.4f x %.2f",
            bundle.bundle_id, unwind.outcome, unwind.price, unwind.size,
        )
        unwind_result = await self._place(unwind)
        if unwind_result.accepted:
            await self._record(unwind, unwind_result, bundle.market_title, agent_id)
            bundle = self._persist(bundle, BundleStatus.PARTIAL_UNWOUND, "Leg B rejected; leg A unwound")
        else:
            bundle = self._persist(bundle, BundleStatus.FAILED, "Leg B rejected; unwind failed")
            logger.error(
                "Bundle %s: unwind rejected, %s %s x %.2f left open on %s",
                bundle.bundle_id, leg_a.market_id, leg_a.outcome, leg_a.shares, leg_a.platform,
            )
        return self._finish(BundleExecutionResult(bundle, (result_a, result_b), unwind_result))

    def _finish(self, result: BundleExecutionResult) -> BundleExecutionResult:
        self._notify(result)
        return result
