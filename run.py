#!/usr/bin/env python3
"""
Prediction-market arbitrage core -- command line entry point.

Venue connectors are pluggable; this script wires the in-memory paper venues
seeded from PAPER_MARKETS_FILE so the whole stack can run without a network.

Usage:
  python run.py serve                      # run the gateway (HTTP, signed requests)
  python run.py scan                       # one-shot scan, print opportunities
  python run.py plan --capital 200         # scan, then size the best opportunity
  python run.py plan --capital 200 --execute
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from config import Config, load_config
from client.paper import load_paper_connectors
from client.platform import MarketConnector
from gateway.server import build_services, serve
from monitor.logger import setup_logging
from scanner.arbitrage import AllConnectorsUnavailable

logger = logging.getLogger("run")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prediction-market arbitrage core")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--markets", type=str, default=None, help="Paper venue seed file (overrides PAPER_MARKETS_FILE)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP gateway")
    p_serve.add_argument("--host", type=str, default=None, help="Bind address (default: GATEWAY_HOST)")
    p_serve.add_argument("--port", type=int, default=None, help="Port (default: GATEWAY_PORT)")

    sub.add_parser("scan", help="Scan once and print opportunities")

    p_plan = sub.add_parser("plan", help="Scan, then plan a delta-neutral bundle")
    p_plan.add_argument("--capital", type=float, default=None, help="Max capital in USD (default: DEFAULT_MAX_CAPITAL_USD)")
    p_plan.add_argument("--index", type=int, default=0, help="Opportunity index from the ranked scan")
    p_plan.add_argument("--slippage-bps", type=float, default=None)
    p_plan.add_argument("--fee-bps", type=float, default=None)
    p_plan.add_argument("--min-edge-bps", type=float, default=None)
    p_plan.add_argument("--execute", action="store_true", help="Execute the bundle if the plan is accepted")
    return parser.parse_args(argv)


def _connectors(cfg: Config, path: str | None) -> list[MarketConnector]:
    seed = Path(path or cfg.paper_markets_file)
    if not seed.exists():
        raise SystemExit(f"Paper venue seed file not found: {seed}")
    return load_paper_connectors(seed)


async def _scan(cfg: Config, connectors: list[MarketConnector]) -> int:
    services = build_services(cfg, connectors)
    try:
        report = await services.scanner.scan_all()
    except AllConnectorsUnavailable as e:
        logger.error("%s", e)
        return 1
    print(json.dumps({
        "opportunities": [o.to_dict() for o in report.opportunities],
        "coverage": report.coverage_dict(),
    }, indent=2))
    return 0


async def _plan(cfg: Config, connectors: list[MarketConnector], args: argparse.Namespace) -> int:
    services = build_services(cfg, connectors)
    try:
        report = await services.scanner.scan_all()
    except AllConnectorsUnavailable as e:
        logger.error("%s", e)
        return 1
    if not report.opportunities:
        logger.info("No opportunities found")
        return 0
    if not 0 <= args.index < len(report.opportunities):
        logger.error("Index %d out of range (%d opportunities)", args.index, len(report.opportunities))
        return 2

    opp = report.opportunities[args.index]
    plan = services.planner.plan_bundle(
        opp,
        args.capital or cfg.default_max_capital_usd,
        slippage_bps=args.slippage_bps,
        fee_bps=args.fee_bps,
        min_net_edge_bps=args.min_edge_bps,
    )
    print(json.dumps(plan.to_dict(), indent=2))
    if not plan.accepted or not args.execute:
        return 0

    result = await services.orchestrator.execute(plan.bundle)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.bundle.status.value == "success" else 3


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config()
    log_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.debug("Verbose log: %s", log_path)

    connectors = _connectors(cfg, args.markets)
    logger.info(
        "%s mode, %d venue(s): %s",
        "PAPER" if cfg.paper_trading else "LIVE",
        len(connectors), ", ".join(c.platform_name for c in connectors),
    )

    if args.command == "serve":
        services = build_services(cfg, connectors)
        serve(services, args.host or cfg.gateway_host, args.port or cfg.gateway_port)
        return 0
    if args.command == "scan":
        return asyncio.run(_scan(cfg, connectors))
    if args.command == "plan":
        return asyncio.run(_plan(cfg, connectors, args))
    return 2


if __name__ == "__main__":
    sys.exit(main())
