"""
FastAPI gateway for agents. Every route lives under /v1 and is mirrored
under /api/v1.

All routes except health require a signed request (see gateway.auth). The
two side-effecting routes, trade execute and bundle execute, also require an
Idempotency-Key header. Responses always use the success/failure envelope.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from client.platform import MarketConnector
from config import DEFAULT_SIGNING_SECRET, Config, allowed_platforms, key_map
from executor.bundle_state import ExecutionBundle
from executor.bundle_store import BundleNotFound, BundleStore, InMemoryBundleStore, SqliteBundleStore
from executor.orchestrator import BundleNotExecutable, ExecutionOrchestrator, TradeHook
from executor.planner import DeltaNeutralPlanner
from gateway.audit import audit_event
from gateway.auth import AuthContext, GatewayAuthorizer, NonceStore
from gateway.envelope import failure, from_error, new_request_id, success
from gateway.errors import ErrorCode, GatewayError, classify_error
from gateway.idempotency import IdempotencyCache, InMemoryIdempotencyStore
from gateway.policy import PolicyEngine
from gateway.schemas import (
    ArbScanRequest,
    BundlePlanRequest,
    ListMarketsRequest,
    PositionsListRequest,
    TradeExecuteRequest,
    TradeQuoteRequest,
)
from gateway.tokens import ConfirmationTokenService, QuoteTokenPayload
from monitor.ledger import (
    Position,
    PositionLedger,
    fetch_venue_positions,
    merge_positions,
    refresh_live_prices,
)
from scanner.arbitrage import AllConnectorsUnavailable, ArbScanner
from scanner.matching import search_markets
from scanner.models import Order, Side, TradeStatus

logger = logging.getLogger(__name__)

SERVICE_NAME = "arb-gateway"
IDEMPOTENCY_HEADER = "Idempotency-Key"
_MIN_PRICE = 1e-7


@dataclass
class GatewayServices:
    """Everything the routes need. Built once per process by build_services."""
    cfg: Config
    connectors: dict[str, MarketConnector]
    scanner: ArbScanner
    planner: DeltaNeutralPlanner
    bundles: BundleStore
    orchestrator: ExecutionOrchestrator
    ledger: PositionLedger
    authorizer: GatewayAuthorizer
    tokens: ConfirmationTokenService
    idempotency: IdempotencyCache
    policy: PolicyEngine


def build_services(
    cfg: Config,
    connectors: list[MarketConnector],
    on_trade_complete: TradeHook | None = None,
) -> GatewayServices:
    if cfg.gateway_signing_secret == DEFAULT_SIGNING_SECRET:
        logger.warning("GATEWAY_SIGNING_SECRET is the built-in default; confirmation tokens can be forged")
    by_name = {c.platform_name: c for c in connectors}
    if cfg.bundle_store_db:
        bundles: BundleStore = SqliteBundleStore(cfg.bundle_store_db, max_bundles=cfg.max_bundles)
    else:
        bundles = InMemoryBundleStore(max_bundles=cfg.max_bundles)
    ledger = PositionLedger(cfg.ledger_path, max_rows=cfg.ledger_max_rows)
    return GatewayServices(
        cfg=cfg,
        connectors=by_name,
        scanner=ArbScanner(
            connectors,
            intra_threshold=cfg.intra_threshold,
            cross_spread_threshold=cfg.cross_spread_threshold,
            batch_size=cfg.intra_batch_size,
            timeout_sec=cfg.connector_timeout_sec,
        ),
        planner=DeltaNeutralPlanner(
            bundles,
            default_slippage_bps=cfg.default_slippage_bps,
            default_fee_bps=cfg.default_fee_bps,
            default_min_net_edge_bps=cfg.default_min_net_edge_bps,
        ),
        bundles=bundles,
        orchestrator=ExecutionOrchestrator(
            by_name, bundles, ledger,
            on_trade_complete=on_trade_complete,
            timeout_sec=cfg.connector_timeout_sec,
        ),
        ledger=ledger,
        authorizer=GatewayAuthorizer(
            key_map(cfg),
            allow_unsigned=cfg.gateway_allow_unsigned,
            replay_window_sec=cfg.gateway_replay_window_sec,
            nonce_store=NonceStore(ttl_sec=cfg.gateway_nonce_ttl_sec),
        ),
        tokens=ConfirmationTokenService(cfg.gateway_signing_secret, ttl_sec=cfg.gateway_quote_ttl_sec),
        idempotency=IdempotencyCache(InMemoryIdempotencyStore(
            ttl_sec=cfg.idempotency_ttl_sec, max_entries=cfg.idempotency_max_entries,
        )),
        policy=PolicyEngine(
            allowed_platforms(cfg),
            max_order_usd=cfg.gateway_max_order_usd,
            max_slippage_bps=cfg.gateway_max_slippage_bps,
            kill_switch=cfg.gateway_kill_switch,
        ),
    )


def _parse(model: type[BaseModel], raw: bytes) -> Any:
    """Validate a JSON body. An empty or undecodable body validates as {}."""
    try:
        data = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = {}
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise GatewayError(
            ErrorCode.VALIDATION_ERROR,
            f"Invalid {model.__name__} payload",
            details={"issues": json.loads(e.json(include_url=False))},
        ) from None


def create_app(services: GatewayServices) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(title="Prediction-market Arbitrage Gateway", docs_url="/docs")
    router = APIRouter()
    s = services
    timeout = s.cfg.connector_timeout_sec

    Handler = Callable[[str, AuthContext, bytes], Awaitable[tuple[int, dict]]]

    async def _handle(request: Request, action: str, handler: Handler) -> JSONResponse:
        """Authenticate, run the handler, and map any failure to an envelope."""
        rid = new_request_id()
        try:
            body = await request.body()
            auth = s.authorizer.authorize(request.method, request.url.path, request.headers, body)
            status, payload = await handler(rid, auth, body)
        except GatewayError as e:
            if e.code in (ErrorCode.AUTH_INVALID, ErrorCode.AUTH_REPLAY_DETECTED):
                audit_event("auth.denied", request_id=rid, action=action, code=e.code.value)
            return JSONResponse(from_error(rid, e), status_code=e.status)
        except Exception as e:
            err = classify_error(e)
            logger.error("%s failed (%s): %s", action, err.code.value, e)
            return JSONResponse(from_error(rid, err), status_code=err.status)
        return JSONResponse(payload, status_code=status)

    def _require_idempotency_key(request: Request) -> str:
        key = request.headers.get(IDEMPOTENCY_HEADER, "").strip()
        if not key:
            raise GatewayError(ErrorCode.VALIDATION_ERROR, f"Missing {IDEMPOTENCY_HEADER} header")
        return key

    def _selected(platforms: list[str] | None) -> list[MarketConnector]:
        if not platforms:
            return list(s.connectors.values())
        return [c for name, c in s.connectors.items() if name in platforms]

    def _connector(platform: str) -> MarketConnector:
        connector = s.connectors.get(platform)
        if connector is None:
            raise GatewayError(ErrorCode.VALIDATION_ERROR, f"Unknown platform {platform}")
        return connector

    # ── System ──

    @router.get("/v1/system/health")
    async def health():
        return JSONResponse(success(new_request_id(), {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": "v1",
        }))

    @router.get("/v1/system/connectors")
    async def connectors_status(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            async def reach(name: str, c: MarketConnector) -> tuple[str, dict]:
                try:
                    await asyncio.wait_for(c.get_markets(status="active"), timeout=timeout)
                except Exception as e:
                    return name, {"ok": False, "error": str(e) or type(e).__name__}
                return name, {"ok": True}

            results = await asyncio.gather(*(reach(n, c) for n, c in s.connectors.items()))
            return 200, success(rid, dict(results))

        return await _handle(request, "system.connectors", handler)

    # ── Markets ──

    @router.post("/v1/markets/list")
    async def list_markets(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            req: ListMarketsRequest = _parse(ListMarketsRequest, body)
            connectors = _selected(req.platforms)
            results = await asyncio.gather(
                *(asyncio.wait_for(c.get_markets(status=req.status), timeout=timeout) for c in connectors),
                return_exceptions=True,
            )
            markets = []
            for c, res in zip(connectors, results):
                if isinstance(res, BaseException):
                    logger.warning("Market listing failed on %s: %s", c.platform_name, res)
                    continue
                markets.extend(res)
            if req.query:
                markets = search_markets(markets, req.query)
            limited = [m.to_dict() for m in markets[: req.limit]]
            audit_event("markets.list", request_id=rid, agent_id=auth.agent_id, count=len(limited))
            return 200, success(rid, {"markets": limited, "total": len(limited)})

        return await _handle(request, "markets.list", handler)

    # ── Arbitrage ──

    async def _scan():
        try:
            return await s.scanner.scan_all()
        except AllConnectorsUnavailable as e:
            raise GatewayError(ErrorCode.CONNECTOR_UNAVAILABLE, str(e)) from None

    @router.post("/v1/arb/scan")
    async def arb_scan(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            req: ArbScanRequest = _parse(ArbScanRequest, body)
            report = await _scan()
            opps = report.opportunities
            if req.platforms:
                opps = tuple(o for o in opps if any(p in req.platforms for p in o.platforms))
            out = []
            for o in opps:
                d = o.to_dict()
                if req.max_capital_usd:
                    d["suggestedShareSets"] = max(0, int(req.max_capital_usd // max(o.total_cost, 0.0001)))
                out.append(d)
            audit_event("arb.scan", request_id=rid, agent_id=auth.agent_id, count=len(out))
            return 200, success(rid, {
                "opportunities": out,
                "count": len(out),
                "maxCapitalUsd": req.max_capital_usd,
                "coverage": report.coverage_dict(),
            })

        return await _handle(request, "arb.scan", handler)

    # ── Trades ──

    @router.post("/v1/trades/quote")
    async def trade_quote(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            req: TradeQuoteRequest = _parse(TradeQuoteRequest, body)
            decision = s.policy.evaluate_quote(req.platform, req.max_slippage_bps)
            if not decision.ok:
                raise GatewayError(decision.code, decision.message)
            connector = _connector(req.platform)
            prices = await asyncio.wait_for(connector.get_market_price(req.market_id), timeout=timeout)
            price = float(prices["yes"] if req.side == "YES" else prices["no"])
            shares = req.size if req.size_type == "shares" else req.size / max(price, _MIN_PRICE)
            cost = shares * price

            decision = s.policy.evaluate_quote(req.platform, req.max_slippage_bps, cost)
            if not decision.ok:
                raise GatewayError(decision.code, decision.message)

            market_title = req.market_id
            try:
                markets = await asyncio.wait_for(connector.get_markets(status="all"), timeout=timeout)
                market_title = next((m.title for m in markets if m.id == req.market_id), req.market_id)
            except Exception as e:
                logger.debug("Title lookup failed for %s/%s: %s", req.platform, req.market_id, e)

            token, expires_at = s.tokens.issue(QuoteTokenPayload(
                agent_id=auth.agent_id,
                market_id=req.market_id,
                market_title=market_title,
                platform=req.platform,
                side=req.side,
                shares=shares,
                quoted_price=price,
                quoted_cost=cost,
                max_slippage_bps=req.max_slippage_bps,
            ))
            audit_event(
                "trades.quote", request_id=rid, agent_id=auth.agent_id, market_id=req.market_id,
                platform=req.platform, side=req.side, shares=shares, quoted_cost=cost,
            )
            return 200, success(rid, {
                "marketId": req.market_id,
                "platform": req.platform,
                "side": req.side,
                "price": price,
                "shares": shares,
                "estimatedCostUsd": cost,
                "maxSlippageBps": req.max_slippage_bps,
                "confirmationToken": token,
                "expiresAt": expires_at,
            })

        return await _handle(request, "trades.quote", handler)

    @router.post("/v1/trades/execute")
    async def trade_execute(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            key = _require_idempotency_key(request)

            async def produce() -> tuple[int, dict]:
                req: TradeExecuteRequest = _parse(TradeExecuteRequest, body)
                payload = s.tokens.verify(req.confirmation_token)
                if payload.agent_id != auth.agent_id:
                    raise GatewayError(ErrorCode.AUTH_INVALID, "Token agent mismatch", status=403)
                decision = s.policy.evaluate_execute(payload.platform, payload.quoted_cost)
                if not decision.ok:
                    raise GatewayError(decision.code, decision.message)
                payload = s.tokens.verify_and_consume(req.confirmation_token)

                order = Order(
                    market_id=payload.market_id,
                    platform=payload.platform,
                    outcome=payload.side,
                    side=Side.BUY,
                    price=payload.quoted_price,
                    size=payload.shares,
                )
                try:
                    connector = s.connectors.get(order.platform)
                    if connector is None:
                        raise ConnectionError(f"{order.platform} connector unavailable")
                    result = await asyncio.wait_for(connector.place_order(order), timeout=timeout)
                except Exception as e:
                    err = classify_error(e)
                    logger.error("Order placement failed on %s: %s", order.platform, e)
                    audit_event(
                        "trades.execute", request_id=rid, agent_id=auth.agent_id,
                        client_order_id=req.client_order_id, code=err.code.value,
                    )
                    return err.status, from_error(rid, err)

                if result.status == TradeStatus.REJECTED:
                    audit_event(
                        "trades.execute", request_id=rid, agent_id=auth.agent_id,
                        client_order_id=req.client_order_id, status=result.status.value,
                    )
                    return 422, failure(
                        rid, ErrorCode.EXECUTION_REJECTED.value, "Order rejected by venue",
                        {"order": order.to_dict(), "trade": result.to_dict()},
                    )

                try:
                    await s.ledger.record_trade_result(
                        order, result,
                        market_title=payload.market_title or order.market_id,
                        outcome_label=payload.side,
                        source="gateway",
                        agent_id=auth.agent_id,
                    )
                except OSError as e:
                    logger.error("Ledger write failed for order %s: %s", result.order_id, e)

                audit_event(
                    "trades.execute", request_id=rid, agent_id=auth.agent_id,
                    client_order_id=req.client_order_id, status=result.status.value,
                    order_id=result.order_id,
                )
                return 200, success(rid, {
                    "clientOrderId": req.client_order_id,
                    "order": order.to_dict(),
                    "trade": result.to_dict(),
                })

            status, payload, _ = await s.idempotency.run(f"trade:{key}", produce)
            return status, payload

        return await _handle(request, "trades.execute", handler)

    # ── Positions ──

    @router.post("/v1/positions/list")
    async def positions_list(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            req: PositionsListRequest = _parse(PositionsListRequest, body)
            wallet = req.wallet or s.cfg.wallet_address
            ledger_positions: list[Position] = []
            if req.include_ledger:
                ledger_positions = s.ledger.get_positions(agent_id=auth.agent_id if req.agent_only else None)
                ledger_positions = await refresh_live_prices(ledger_positions, s.connectors)
            venue_positions: list[Position] = []
            sources: dict[str, bool] = {"ledger": req.include_ledger}
            diagnostics: list[str] = []
            if wallet:
                venue_positions, venue_sources, diagnostics = await fetch_venue_positions(
                    s.connectors, wallet, timeout,
                )
                sources.update(venue_sources)
            positions = merge_positions(ledger_positions, venue_positions)
            total_pnl = sum(p.pnl for p in positions)
            total_value = sum(p.current_price * p.size for p in positions)
            return 200, success(rid, {
                "wallet": wallet or None,
                "positions": [p.to_dict() for p in positions],
                "count": len(positions),
                "totals": {"totalPnl": total_pnl, "totalValue": total_value},
                "sources": sources,
                "diagnostics": diagnostics,
            })

        return await _handle(request, "positions.list", handler)

    # ── Bundles ──

    @router.post("/v1/bundles/plan")
    async def bundles_plan(request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            req: BundlePlanRequest = _parse(BundlePlanRequest, body)
            report = await _scan()
            if not report.opportunities:
                raise GatewayError(ErrorCode.MARKET_UNAVAILABLE, "No arbitrage opportunities available")
            if req.opportunity_index >= len(report.opportunities):
                raise GatewayError(
                    ErrorCode.VALIDATION_ERROR,
                    f"opportunityIndex {req.opportunity_index} out of range "
                    f"({len(report.opportunities)} opportunities)",
                )
            opp = report.opportunities[req.opportunity_index]
            plan = s.planner.plan_bundle(
                opp,
                req.max_capital_usd,
                slippage_bps=req.slippage_bps,
                fee_bps=req.fee_bps,
                min_net_edge_bps=req.min_net_edge_bps,
            )
            audit_event(
                "bundles.plan", request_id=rid, agent_id=auth.agent_id, accepted=plan.accepted,
                bundle_id=plan.bundle.bundle_id if plan.bundle else None,
            )
            return 200, success(rid, {"opportunity": opp.to_dict(), "plan": plan.to_dict()})

        return await _handle(request, "bundles.plan", handler)

    @router.post("/v1/bundles/{bundle_id}/execute")
    async def bundles_execute(bundle_id: str, request: Request):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            key = _require_idempotency_key(request)

            async def produce() -> tuple[int, dict]:
                bundle: ExecutionBundle | None = s.bundles.get(bundle_id)
                if bundle is None:
                    raise GatewayError(ErrorCode.BUNDLE_NOT_FOUND, f"Bundle {bundle_id} not found")
                for leg in bundle.legs:
                    decision = s.policy.evaluate_execute(leg.platform, leg.estimated_cost)
                    if not decision.ok:
                        raise GatewayError(decision.code, decision.message)
                try:
                    result = await s.orchestrator.execute(bundle, agent_id=auth.agent_id)
                except BundleNotFound:
                    raise GatewayError(ErrorCode.BUNDLE_NOT_FOUND, f"Bundle {bundle_id} not found") from None
                except BundleNotExecutable as e:
                    raise GatewayError(ErrorCode.BUNDLE_NOT_EXECUTABLE, str(e)) from None
                audit_event(
                    "bundles.execute", request_id=rid, agent_id=auth.agent_id, bundle_id=bundle_id,
                    status=result.bundle.status.value,
                )
                return 200, success(rid, result.to_dict())

            status, payload, _ = await s.idempotency.run(f"bundle:{bundle_id}:{key}", produce)
            return status, payload

        return await _handle(request, "bundles.execute", handler)

    @router.get("/v1/bundles")
    async def bundles_list(request: Request, limit: int = Query(25, ge=1, le=200)):
        async def handler(rid: str, auth: AuthContext, body: bytes) -> tuple[int, dict]:
            bundles = s.bundles.list(limit)
            return 200, success(rid, {"bundles": [b.to_dict() for b in bundles], "count": len(bundles)})

        return await _handle(request, "bundles.list", handler)

    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app


def serve(services: GatewayServices, host: str, port: int) -> None:
    """Run the gateway in the foreground."""
    import uvicorn

    logger.info("Gateway listening on http://%s:%d", host, port)
    uvicorn.run(create_app(services), host=host, port=port, log_level="warning", access_log=False)


def start_server(services: GatewayServices, host: str = "127.0.0.1", port: int = 8790) -> threading.Thread:
    """Start the gateway in a daemon thread. Returns the thread."""
    thread = threading.Thread(target=serve, args=(services, host, port), daemon=True, name="arb-gateway")
    thread.start()
    return thread
