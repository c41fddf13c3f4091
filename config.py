"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from __future__ import annotations

import json
import logging

from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger(__name__)

DEFAULT_SIGNING_SECRET = "arb-dev-secret-change-me"


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Modes
    paper_trading: bool = True
    log_level: str = "INFO"
    # Seed file for paper connectors (JSON: {platform: {markets: [...], books: {...}}})
    paper_markets_file: str = "paper_markets.json"

    # Connector calls
    connector_timeout_sec: float = Field(default=5.0, gt=0)

    # Scanner thresholds
    # YES_ask + NO_ask below this on one venue is an intra-platform arb
    intra_threshold: float = Field(default=0.995, gt=0, le=1.0)
    # Minimum |yesA - yesB| before a cross-platform pair is considered
    cross_spread_threshold: float = Field(default=0.015, ge=0, lt=1.0)
    # Markets per connector checked by the intra scan (bounds latency)
    intra_batch_size: int = Field(default=20, ge=1)

    # Bundle planner defaults (basis points)
    default_slippage_bps: float = Field(default=40.0, ge=0)
    default_fee_bps: float = Field(default=20.0, ge=0)
    default_min_net_edge_bps: float = Field(default=15.0, ge=0)
    default_max_capital_usd: float = Field(default=200.0, gt=0)

    # Bundle store
    max_bundles: int = Field(default=200, ge=1)
    # Empty = in-memory store; otherwise a SQLite file path
    bundle_store_db: str = ""

    # Gateway: confirmation tokens
    gateway_signing_secret: str = Field(default=DEFAULT_SIGNING_SECRET, min_length=8)
    gateway_quote_ttl_sec: float = Field(default=90.0, gt=0)

    # Gateway: request signing
    # {key_id: {"secret": str, "agent_id": str?, "enabled": bool?}}
    gateway_keys_json: str = "{}"
    # Only honoured while no keys are configured (bootstrap convenience)
    gateway_allow_unsigned: bool = False
    gateway_replay_window_sec: float = Field(default=60.0, gt=0)
    gateway_nonce_ttl_sec: float = Field(default=300.0, gt=0)

    # Gateway: policy
    gateway_allowed_platforms: str = "predictfun,probable,xmarket"
    gateway_max_order_usd: float = Field(default=1000.0, gt=0)
    gateway_max_slippage_bps: int = Field(default=300, ge=0)
    gateway_kill_switch: bool = False

    # Gateway: idempotency cache
    idempotency_ttl_sec: float = Field(default=86400.0, gt=0)
    idempotency_max_entries: int = Field(default=10000, ge=1)

    # Gateway: HTTP server
    gateway_host: str = "127.0.0.1"
    gateway_port: int = Field(default=8790, ge=1, le=65535)

    # Venue position lookups; empty = ledger positions only
    wallet_address: str = ""

    # Position ledger
    ledger_path: str = ".arb/trade-fills.jsonl"
    ledger_max_rows: int = Field(default=10000, ge=1)


def allowed_platforms(cfg: Config) -> frozenset[str]:
    """Parse the comma-separated platform allow-list."""
    return frozenset(p.strip() for p in cfg.gateway_allowed_platforms.split(",") if p.strip())


def key_map(cfg: Config) -> dict[str, dict]:
    """
    Parse gateway_keys_json. Invalid JSON (or a non-object) yields an empty map,
    which keeps the gateway closed unless unsigned mode is explicitly enabled.
    """
    try:
        parsed = json.loads(cfg.gateway_keys_json or "{}")
    except json.JSONDecodeError as e:
        logger.warning("gateway_keys_json is not valid JSON: %s", e)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("gateway_keys_json must be an object, got %s", type(parsed).__name__)
        return {}
    return {str(k): v for k, v in parsed.items() if isinstance(v, dict)}


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
