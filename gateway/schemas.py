"""
Request bodies for the gateway. camelCase on the wire, snake_case in code.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ListMarketsRequest(_Request):
    platforms: list[str] | None = None
    status: Literal["active", "all"] = "active"
    limit: int = Field(default=20, gt=0, le=100)
    query: str | None = None


class ArbScanRequest(_Request):
    max_capital_usd: float | None = Field(default=None, gt=0)
    platforms: list[str] | None = None


class TradeQuoteRequest(_Request):
    market_id: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    side: Literal["YES", "NO"]
    size: float = Field(gt=0)
    size_type: Literal["shares", "usd"]
    max_slippage_bps: int = Field(default=100, ge=0, le=5000)


class TradeExecuteRequest(_Request):
    confirmation_token: str = Field(min_length=10)
    client_order_id: str = Field(min_length=4)


class PositionsListRequest(_Request):
    agent_only: bool = False
    include_ledger: bool = True
    wallet: str | None = None


class BundlePlanRequest(_Request):
    max_capital_usd: float = Field(gt=0)
    slippage_bps: float | None = Field(default=None, ge=0)
    fee_bps: float | None = Field(default=None, ge=0)
    min_net_edge_bps: float | None = Field(default=None, ge=0)
    opportunity_index: int = Field(default=0, ge=0)
