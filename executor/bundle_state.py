"""
Execution bundle lifecycle.

Defines the bundle record, its sized legs, and the status state machine the
orchestrator drives:

    planned -> executing -> success | failed | partial_unwound

The three outcome states are terminal. Transitions are validated here so a
bundle can never move backwards or leave a terminal state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from scanner.models import Order, Side, now_iso

logger = logging.getLogger(__name__)


class BundleStatus(str, Enum):
    """
    PLANNED: sized and persisted, not yet claimed
    EXECUTING: claimed; leg A about to be (or being) sent
    SUCCESS: both legs accepted by their venues
    FAILED: leg A rejected, or leg B rejected and the unwind failed
    PARTIAL_UNWOUND: leg B rejected, leg A unwound
    """
    PLANNED = "planned"
    EXECUTING = "executing"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL_UNWOUND = "partial_unwound"


_VALID_TRANSITIONS: dict[BundleStatus, set[BundleStatus]] = {
    BundleStatus.PLANNED: {BundleStatus.EXECUTING},
    BundleStatus.EXECUTING: {BundleStatus.SUCCESS, BundleStatus.FAILED, BundleStatus.PARTIAL_UNWOUND},
    BundleStatus.SUCCESS: set(),
    BundleStatus.FAILED: set(),
    BundleStatus.PARTIAL_UNWOUND: set(),
}


class InvalidBundleTransition(ValueError):
    """Raised on an attempt to move a bundle along an edge the machine does not have."""
    pass


def can_transition_to(from_status: BundleStatus, to_status: BundleStatus) -> bool:
    if not isinstance(from_status, BundleStatus):
        raise ValueError(f"Invalid from_status: {from_status}")
    if not isinstance(to_status, BundleStatus):
        raise ValueError(f"Invalid to_status: {to_status}")
    return to_status in _VALID_TRANSITIONS[from_status]


def is_terminal(status: BundleStatus) -> bool:
    return not _VALID_TRANSITIONS[status]


@dataclass(frozen=True)
class ExecutionLeg:
    platform: str
    market_id: str
    outcome: str  # "YES" | "NO"
    price: float
    shares: float
    estimated_cost: float
    side: Side = Side.BUY

    def to_order(self) -> Order:
        return Order(
            market_id=self.market_id,
            platform=self.platform,
            outcome=self.outcome,
            side=self.side,
            price=self.price,
            size=self.shares,
        )

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "marketId": self.market_id,
            "outcome": self.outcome,
            "side": self.side.value,
            "price": self.price,
            "shares": self.shares,
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionLeg:
        return cls(
            platform=data["platform"],
            market_id=data["marketId"],
            outcome=data["outcome"],
            price=float(data["price"]),
            shares=float(data["shares"]),
            estimated_cost=float(data["estimatedCost"]),
            side=Side(data.get("side", "buy")),
        )


@dataclass(frozen=True)
class ExecutionBundle:
    bundle_id: str
    market_title: str
    opportunity_type: str
    legs: tuple[ExecutionLeg, ...]
    expected_profit_per_share: float
    expected_profit_percent: float
    expected_total_profit: float
    total_estimated_cost: float
    slippage_bps: float
    fee_bps: float
    status: BundleStatus = BundleStatus.PLANNED
    created_at: str = field(default_factory=now_iso)
    updated_at: str = ""
    failure_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.updated_at:
            object.__setattr__(self, "updated_at", self.created_at)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def transition(self, to_status: BundleStatus, failure_reason: str | None = None) -> ExecutionBundle:
        """Return a copy in to_status with a fresh updated_at. Raises on invalid edges."""
        if not can_transition_to(self.status, to_status):
            raise InvalidBundleTransition(
                f"Bundle {self.bundle_id}: invalid transition {self.status.value} -> {to_status.value}"
            )
        logger.debug("Bundle %s: %s -> %s", self.bundle_id, self.status.value, to_status.value)
        return replace(
            self,
            status=to_status,
            updated_at=now_iso(),
            failure_reason=failure_reason if failure_reason is not None else self.failure_reason,
        )

    def to_dict(self) -> dict:
        out = {
            "bundleId": self.bundle_id,
            "marketTitle": self.market_title,
            "opportunityType": self.opportunity_type,
            "legs": [leg.to_dict() for leg in self.legs],
            "expectedProfitPerShare": self.expected_profit_per_share,
            "expectedProfitPercent": self.expected_profit_percent,
            "expectedTotalProfit": self.expected_total_profit,
            "totalEstimatedCost": self.total_estimated_cost,
            "slippageBps": self.slippage_bps,
            "feeBps": self.fee_bps,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.failure_reason:
            out["failureReason"] = self.failure_reason
        return out

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionBundle:
        return cls(
            bundle_id=data["bundleId"],
            market_title=data.get("marketTitle", ""),
            opportunity_type=data.get("opportunityType", ""),
            legs=tuple(ExecutionLeg.from_dict(leg) for leg in data.get("legs", [])),
            expected_profit_per_share=float(data["expectedProfitPerShare"]),
            expected_profit_percent=float(data["expectedProfitPercent"]),
            expected_total_profit=float(data["expectedTotalProfit"]),
            total_estimated_cost=float(data["totalEstimatedCost"]),
            slippage_bps=float(data["slippageBps"]),
            fee_bps=float(data["feeBps"]),
            status=BundleStatus(data["status"]),
            created_at=data["createdAt"],
            updated_at=data.get("updatedAt", data["createdAt"]),
            failure_reason=data.get("failureReason"),
        )
