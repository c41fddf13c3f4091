"""
Trading policy checks for the gateway. Stateless; evaluated per request.

Quote checks run in order: kill switch, platform allow-list, slippage cap,
order size cap when a cost is given. Execute checks: kill switch, allow-list,
and the size cap when a notional is known. The first failing check wins.
"""

from __future__ import annotations

from dataclasses import dataclass

from gateway.errors import ErrorCode


@dataclass(frozen=True)
class PolicyDecision:
    ok: bool
    code: ErrorCode | None = None
    message: str = ""


_ALLOW = PolicyDecision(ok=True)


class PolicyEngine:
    def __init__(
        self,
        allowed_platforms: frozenset[str],
        max_order_usd: float = 1000.0,
        max_slippage_bps: int = 300,
        kill_switch: bool = False,
    ) -> None:
        self.allowed_platforms = frozenset(allowed_platforms)
        self.max_order_usd = max_order_usd
        self.max_slippage_bps = max_slippage_bps
        self.kill_switch = kill_switch

    def _common(self, platform: str) -> PolicyDecision | None:
        if self.kill_switch:
            return PolicyDecision(False, ErrorCode.POLICY_KILL_SWITCH, "Trading is disabled by kill switch")
        if platform not in self.allowed_platforms:
            return PolicyDecision(False, ErrorCode.POLICY_PLATFORM_BLOCKED, f"Platform {platform} is not allowed")
        return None

    def _order_limit(self, cost_usd: float) -> PolicyDecision | None:
        if cost_usd > self.max_order_usd:
            return PolicyDecision(
                False,
                ErrorCode.POLICY_ORDER_LIMIT,
                f"Order cost ${cost_usd:.2f} exceeds policy max ${self.max_order_usd:.2f}",
            )
        return None

    def evaluate_quote(
        self, platform: str, max_slippage_bps: int, quote_cost_usd: float | None = None,
    ) -> PolicyDecision:
        denied = self._common(platform)
        if denied:
            return denied
        if max_slippage_bps > self.max_slippage_bps:
            return PolicyDecision(
                False,
                ErrorCode.POLICY_SLIPPAGE_EXCEEDED,
                f"Requested slippage {max_slippage_bps} bps exceeds policy max {self.max_slippage_bps} bps",
            )
        if quote_cost_usd is not None:
            return self._order_limit(quote_cost_usd) or _ALLOW
        return _ALLOW

    def evaluate_execute(self, platform: str, notional_usd: float | None = None) -> PolicyDecision:
        denied = self._common(platform)
        if denied:
            return denied
        if notional_usd is not None:
            return self._order_limit(notional_usd) or _ALLOW
        return _ALLOW
