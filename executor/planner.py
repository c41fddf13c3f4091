"""
Delta-neutral bundle planner. Sizes a two-leg hedge from one opportunity.

Every leg gets the same share count, so the bundle pays out exactly `shares`
at resolution whichever outcome wins. The planner charges slippage and fees
against the per-unit cost and refuses bundles whose remaining edge is too
thin to survive execution.
"""

from __future__ import annotations

import logging
import math
import random
import re
import time
from dataclasses import dataclass

from executor.bundle_state import BundleStatus, ExecutionBundle, ExecutionLeg
from executor.bundle_store import BundleStore
from scanner.models import ArbOpportunity

logger = logging.getLogger(__name__)

_MIN_UNIT_COST = 0.0001
_SLUG_CHARS = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class HedgePlan:
    accepted: bool
    bundle: ExecutionBundle | None = None
    reason: str = ""
    net_edge_bps: float = 0.0

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "bundle": self.bundle.to_dict() if self.bundle else None,
            "reason": self.reason or None,
            "netEdgeBps": self.net_edge_bps,
        }


def net_profit_per_unit(total_cost: float, gross_profit: float, slippage_bps: float, fee_bps: float) -> float:
    """Gross edge minus slippage and fees, both charged on the unit cost."""
    slippage_cost = total_cost * slippage_bps / 10_000
    fee_cost = total_cost * fee_bps / 10_000
    return gross_profit - slippage_cost - fee_cost


def make_bundle_id(market_title: str) -> str:
    slug = _SLUG_CHARS.sub("", market_title.lower())[:10]
    return f"bundle_{slug}_{int(time.time() * 1000)}_{random.randrange(10_000)}"


class DeltaNeutralPlanner:
    """
    Plans bundles and saves accepted ones to the bundle store.

    Zero or None per-call parameters fall back to the configured defaults.
    """

    def __init__(
        self,
        store: BundleStore,
        default_slippage_bps: float = 40.0,
        default_fee_bps: float = 20.0,
        default_min_net_edge_bps: float = 15.0,
    ) -> None:
        self._store = store
        self.default_slippage_bps = default_slippage_bps
        self.default_fee_bps = default_fee_bps
        self.default_min_net_edge_bps = default_min_net_edge_bps

    def plan_bundle(
        self,
        opportunity: ArbOpportunity,
        max_capital_usd: float,
        slippage_bps: float | None = None,
        fee_bps: float | None = None,
        min_net_edge_bps: float | None = None,
    ) -> HedgePlan:
        slippage_bps = slippage_bps or self.default_slippage_bps
        fee_bps = fee_bps or self.default_fee_bps
        min_net_edge_bps = min_net_edge_bps or self.default_min_net_edge_bps

        unit_cost = opportunity.total_cost
        shares = math.floor(max_capital_usd / max(unit_cost, _MIN_UNIT_COST))
        if shares < 1:
            reason = (
                f"Insufficient capital: ${max_capital_usd:.2f} cannot buy one share-set "
                f"at ${unit_cost:.4f}."
            )
            logger.info("Plan rejected for %r: %s", opportunity.market_title, reason)
            return HedgePlan(accepted=False, reason=reason)

        net_per_share = net_profit_per_unit(unit_cost, opportunity.profit, slippage_bps, fee_bps)
        net_edge_bps = net_per_share / unit_cost * 10_000 if unit_cost > 0 else 0.0

        if net_per_share <= 0 or net_edge_bps < min_net_edge_bps:
            reason = (
                f"Rejected: net edge {net_edge_bps:.1f} bps below threshold "
                f"{min_net_edge_bps:g} bps after fees/slippage."
            )
            logger.info("Plan rejected for %r: %s", opportunity.market_title, reason)
            return HedgePlan(accepted=False, reason=reason, net_edge_bps=net_edge_bps)

        legs = tuple(
            ExecutionLeg(
                platform=leg.platform,
                market_id=leg.market_id,
                outcome=leg.outcome,
                price=leg.price,
                shares=float(shares),
                estimated_cost=leg.price * shares,
                side=leg.side,
            )
            for leg in opportunity.legs
        )

        bundle = ExecutionBundle(
            bundle_id=make_bundle_id(opportunity.market_title),
            market_title=opportunity.market_title,
            opportunity_type=opportunity.type.value,
            legs=legs,
            expected_profit_per_share=net_per_share,
            expected_profit_percent=net_per_share / unit_cost * 100.0,
            expected_total_profit=net_per_share * shares,
            total_estimated_cost=sum(leg.estimated_cost for leg in legs),
            slippage_bps=slippage_bps,
            fee_bps=fee_bps,
            status=BundleStatus.PLANNED,
        )
        self._store.save(bundle)

        logger.info(
            "Planned %s: %d share-sets, cost=$%.2f net_edge=%.1fbps expected=$%.2f",
            bundle.bundle_id, shares, bundle.total_estimated_cost, net_edge_bps,
            bundle.expected_total_profit,
        )
        return HedgePlan(accepted=True, bundle=bundle, net_edge_bps=net_edge_bps)
