"""Tests for gateway.server -- FastAPI endpoints with signed requests."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from client.paper import PaperConnector
from config import Config
from gateway.auth import sign_request
from scanner.models import Market

# FastAPI test client requires httpx
try:
    from fastapi.testclient import TestClient
    from gateway.server import build_services, create_app
    HAS_FASTAPI = True
except ImportError:
    HAS_FASTAPI = False

pytestmark = pytest.mark.skipif(not HAS_FASTAPI, reason="fastapi not installed")

KEYS = {
    "k1": {"secret": "agent-one-secret", "agent_id": "agent-1"},
    "k2": {"secret": "agent-two-secret"},
}
SECRETS = {"k1": "agent-one-secret", "k2": "agent-two-secret"}
TITLE = "Will BTC close above 100k?"


def _venues() -> list[PaperConnector]:
    predictfun = PaperConnector(
        "predictfun",
        markets=[
            Market("a1", "predictfun", TITLE, resolution_date="2026-12-31T23:59:00Z"),
            Market("a2", "predictfun", "Fed cuts rates in December"),
        ],
        prices={"a1": {"yes": 0.42, "no": 0.58}, "a2": {"yes": 0.30, "no": 0.70}},
        reject_markets={"a2"},
    )
    probable = PaperConnector(
        "probable",
        markets=[Market("b1", "probable", TITLE, resolution_date="2026-12-31")],
        prices={"b1": {"yes": 0.51, "no": 0.49}},
    )
    return [predictfun, probable]


@pytest.fixture
def venues() -> list[PaperConnector]:
    return _venues()


@pytest.fixture
def services(tmp_path: Path, venues):
    cfg = Config(
        _env_file=None,
        gateway_keys_json=json.dumps(KEYS),
        gateway_signing_secret="test-signing-secret",
        ledger_path=str(tmp_path / "fills.jsonl"),
        connector_timeout_sec=2.0,
    )
    return build_services(cfg, venues)


@pytest.fixture
def client(services) -> "TestClient":
    return TestClient(create_app(services))


def _post(client, path, body=None, key_id="k1", agent_id="agent-1", headers=None, nonce=None):
    raw = json.dumps(body).encode() if body is not None else b""
    signed = sign_request(SECRETS[key_id], key_id, agent_id, "POST", path, raw, nonce=nonce)
    signed["Content-Type"] = "application/json"
    signed.update(headers or {})
    return client.post(path, content=raw, headers=signed)


def _get(client, path, params=None, key_id="k1", agent_id="agent-1"):
    signed = sign_request(SECRETS[key_id], key_id, agent_id, "GET", path)
    return client.get(path, params=params, headers=signed)


def _quote(client, market_id="a1", platform="predictfun", side="YES", size=10, **kw):
    body = {"marketId": market_id, "platform": platform, "side": side, "size": size, "sizeType": "shares"}
    body.update(kw)
    return _post(client, "/v1/trades/quote", body)


class TestSystem:
    def test_health_is_public(self, client):
        resp = client.get("/v1/system/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["data"]["status"] == "ok"

    def test_api_prefix_mirror(self, client):
        assert client.get("/api/v1/system/health").status_code == 200
        resp = _post(client, "/api/v1/markets/list", {})
        assert resp.status_code == 200

    def test_connectors_reachability(self, client, venues):
        venues[1].available = False
        resp = _get(client, "/v1/system/connectors")
        data = resp.json()["data"]
        assert data["predictfun"]["ok"] is True
        assert data["probable"]["ok"] is False


class TestAuth:
    def test_unsigned_rejected(self, client):
        resp = client.post("/v1/markets/list", json={})
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "AUTH_INVALID"
        assert body["requestId"]

    def test_nonce_replay(self, client):
        assert _post(client, "/v1/markets/list", {}, nonce="fixed-nonce").status_code == 200
        resp = _post(client, "/v1/markets/list", {}, nonce="fixed-nonce")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "AUTH_REPLAY_DETECTED"

    def test_bound_agent_mismatch(self, client):
        resp = _post(client, "/v1/markets/list", {}, agent_id="agent-9")
        assert resp.status_code == 403

    def test_signature_binds_path(self, client):
        raw = b"{}"
        headers = sign_request(SECRETS["k1"], "k1", "agent-1", "POST", "/v1/markets/list", raw)
        resp = client.post("/v1/arb/scan", content=raw, headers=headers)
        assert resp.status_code == 401


class TestMarkets:
    def test_list_all(self, client):
        data = _post(client, "/v1/markets/list", {}).json()["data"]
        assert data["total"] == 3

    def test_platform_filter_and_limit(self, client):
        data = _post(client, "/v1/markets/list", {"platforms": ["predictfun"], "limit": 1}).json()["data"]
        assert data["total"] == 1
        assert data["markets"][0]["platform"] == "predictfun"

    def test_query(self, client):
        data = _post(client, "/v1/markets/list", {"query": "fed rates"}).json()["data"]
        assert [m["id"] for m in data["markets"]] == ["a2"]

    def test_down_venue_skipped(self, client, venues):
        venues[0].available = False
        data = _post(client, "/v1/markets/list", {}).json()["data"]
        assert {m["platform"] for m in data["markets"]} == {"probable"}

    def test_validation_error(self, client):
        resp = _post(client, "/v1/markets/list", {"limit": 1000})
        assert resp.status_code == 400
        err = resp.json()["error"]
        assert err["code"] == "VALIDATION_ERROR"
        assert err["details"]["issues"]


class TestArbScan:
    def test_scan_with_capital(self, client):
        data = _post(client, "/v1/arb/scan", {"maxCapitalUsd": 100}).json()["data"]
        assert data["count"] == 1
        opp = data["opportunities"][0]
        assert opp["type"] == "cross_platform"
        assert opp["suggestedShareSets"] == 109
        assert data["coverage"]["attempted"] >= 1

    def test_platform_filter(self, client):
        data = _post(client, "/v1/arb/scan", {"platforms": ["xmarket"]}).json()["data"]
        assert data["count"] == 0

    def test_all_venues_down(self, client, venues):
        for v in venues:
            v.available = False
        resp = _post(client, "/v1/arb/scan", {})
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "CONNECTOR_UNAVAILABLE"


class TestTrades:
    def test_quote_shares(self, client):
        resp = _quote(client)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["price"] == 0.42
        assert data["shares"] == 10
        assert abs(data["estimatedCostUsd"] - 4.2) < 1e-9
        assert data["confirmationToken"]
        assert data["expiresAt"] > 0

    def test_quote_usd_sizing(self, client):
        data = _quote(client, size=21, sizeType="usd").json()["data"]
        assert abs(data["shares"] - 50) < 1e-9

    def test_quote_policy_slippage(self, client):
        resp = _quote(client, maxSlippageBps=500)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "POLICY_SLIPPAGE_EXCEEDED"

    def test_quote_policy_order_limit(self, client):
        resp = _quote(client, size=5000)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "POLICY_ORDER_LIMIT"

    def test_quote_allowed_platform_without_connector(self, client):
        resp = _quote(client, platform="xmarket")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_quote_blocked_platform(self, client):
        resp = _quote(client, platform="opinion")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "POLICY_PLATFORM_BLOCKED"

    def test_quote_kill_switch_checked_before_pricing(self, client, services, venues):
        services.policy.kill_switch = True
        venues[0].available = False
        resp = _quote(client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "POLICY_KILL_SWITCH"

    def test_quote_unknown_market(self, client):
        resp = _quote(client, market_id="zzz")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "MARKET_UNAVAILABLE"

    def test_execute_requires_idempotency_key(self, client):
        token = _quote(client).json()["data"]["confirmationToken"]
        resp = _post(client, "/v1/trades/execute", {"confirmationToken": token, "clientOrderId": "c-001"})
        assert resp.status_code == 400
        assert "Idempotency-Key" in resp.json()["error"]["message"]

    def test_execute_fills_and_records(self, client, services, venues):
        token = _quote(client).json()["data"]["confirmationToken"]
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["clientOrderId"] == "c-001"
        assert data["trade"]["status"] == "filled"
        assert len(venues[0].orders) == 1
        (fill,) = services.ledger.read_fills()
        assert fill.source == "gateway"
        assert fill.agent_id == "agent-1"
        assert fill.market_title == TITLE

    def test_idempotent_replay(self, client, venues):
        token = _quote(client).json()["data"]["confirmationToken"]
        body = {"confirmationToken": token, "clientOrderId": "c-001"}
        first = _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-1"})
        second = _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-1"})
        assert second.status_code == first.status_code == 200
        assert second.json() == first.json()
        assert len(venues[0].orders) == 1

    def test_replay_with_different_body_returns_first_response(self, client, venues):
        first_token = _quote(client).json()["data"]["confirmationToken"]
        first = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": first_token, "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        second_token = _quote(client).json()["data"]["confirmationToken"]
        second = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": second_token, "clientOrderId": "c-999"},
            headers={"Idempotency-Key": "exec-1"},
        )
        assert second.json() == first.json()
        assert second.json()["data"]["clientOrderId"] == "c-001"
        assert len(venues[0].orders) == 1

        # the second token was never consumed
        fresh = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": second_token, "clientOrderId": "c-999"},
            headers={"Idempotency-Key": "exec-2"},
        )
        assert fresh.status_code == 200
        assert len(venues[0].orders) == 2

    def test_token_single_use_across_keys(self, client):
        token = _quote(client).json()["data"]["confirmationToken"]
        body = {"confirmationToken": token, "clientOrderId": "c-001"}
        _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-1"})
        resp = _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-2"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFIRMATION_TOKEN_USED"

    def test_bad_token(self, client):
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": "garbage.token", "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFIRMATION_TOKEN_INVALID"

    def test_non_ascii_token(self, client):
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": "\u00e9\u00e9\u00e9\u00e9\u00e9\u00e9\u00e9.abcdef", "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFIRMATION_TOKEN_INVALID"

    def test_execute_policy_denial_keeps_token(self, client, services, venues):
        token = _quote(client).json()["data"]["confirmationToken"]
        body = {"confirmationToken": token, "clientOrderId": "c-001"}
        services.policy.kill_switch = True
        denied = _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-1"})
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "POLICY_KILL_SWITCH"
        assert venues[0].orders == []

        services.policy.kill_switch = False
        resp = _post(client, "/v1/trades/execute", body, headers={"Idempotency-Key": "exec-2"})
        assert resp.status_code == 200

    def test_token_agent_mismatch(self, client):
        token = _quote(client).json()["data"]["confirmationToken"]
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-001"},
            key_id="k2", agent_id="agent-2",
            headers={"Idempotency-Key": "exec-1"},
        )
        assert resp.status_code == 403

    def test_rejected_order(self, client, services):
        token = _quote(client, market_id="a2").json()["data"]["confirmationToken"]
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-002"},
            headers={"Idempotency-Key": "exec-rej"},
        )
        assert resp.status_code == 422
        err = resp.json()["error"]
        assert err["code"] == "EXECUTION_REJECTED"
        assert err["details"]["trade"]["status"] == "rejected"
        assert services.ledger.read_fills() == []

    def test_venue_outage_classified(self, client, venues):
        token = _quote(client).json()["data"]["confirmationToken"]
        venues[0].available = False
        resp = _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-003"},
            headers={"Idempotency-Key": "exec-down"},
        )
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "CONNECTOR_UNAVAILABLE"


class TestPositions:
    def test_positions_after_fill(self, client, venues):
        token = _quote(client).json()["data"]["confirmationToken"]
        _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        venues[0].prices["a1"] = {"yes": 0.50, "no": 0.50}
        data = _post(client, "/v1/positions/list", {"agentOnly": True}).json()["data"]
        assert data["count"] == 1
        pos = data["positions"][0]
        assert pos["size"] == 10
        assert pos["currentPrice"] == 0.50
        assert abs(data["totals"]["totalPnl"] - 0.8) < 1e-9
        assert abs(data["totals"]["totalValue"] - 5.0) < 1e-9

    def test_agent_only_filters(self, client):
        token = _quote(client).json()["data"]["confirmationToken"]
        _post(
            client, "/v1/trades/execute",
            {"confirmationToken": token, "clientOrderId": "c-001"},
            headers={"Idempotency-Key": "exec-1"},
        )
        mine = _post(client, "/v1/positions/list", {"agentOnly": True}, key_id="k2", agent_id="agent-2")
        everyone = _post(client, "/v1/positions/list", {}, key_id="k2", agent_id="agent-2")
        assert mine.json()["data"]["count"] == 0
        assert everyone.json()["data"]["count"] == 1

    def test_ledger_excluded(self, client):
        data = _post(client, "/v1/positions/list", {"includeLedger": False}).json()["data"]
        assert data["positions"] == []
        assert data["sources"] == {"ledger": False}

    def test_venue_positions_merged(self, client, venues):
        venues[1].positions = [{
            "market_id": "b1", "market_title": TITLE, "outcome_label": "no",
            "size": 5, "avg_entry_price": 0.40, "current_price": 0.49,
        }]
        data = _post(client, "/v1/positions/list", {"wallet": "0xabc"}).json()["data"]
        assert data["wallet"] == "0xabc"
        assert data["sources"] == {"ledger": True, "predictfunApi": False, "probableApi": True}
        assert data["diagnostics"] == ["predictfun positions unsupported"]
        (pos,) = data["positions"]
        assert pos["platform"] == "probable"
        assert pos["outcomeLabel"] == "NO"
        assert abs(pos["pnl"] - 0.45) < 1e-9

    def test_venue_outage_reported_in_diagnostics(self, client, venues):
        venues[1].positions = []
        venues[1].available = False
        resp = _post(client, "/v1/positions/list", {"wallet": "0xabc"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["sources"]["probableApi"] is False
        assert any(d.startswith("probable positions unavailable") for d in data["diagnostics"])

    def test_no_wallet_skips_venues(self, client):
        data = _post(client, "/v1/positions/list", {}).json()["data"]
        assert data["wallet"] is None
        assert data["sources"] == {"ledger": True}
        assert data["diagnostics"] == []


class TestBundles:
    def _plan(self, client, **kw):
        body = {"maxCapitalUsd": 100}
        body.update(kw)
        return _post(client, "/v1/bundles/plan", body)

    def test_plan_accepted(self, client):
        data = self._plan(client).json()["data"]
        plan = data["plan"]
        assert plan["accepted"] is True
        bundle = plan["bundle"]
        assert bundle["status"] == "planned"
        assert [leg["shares"] for leg in bundle["legs"]] == [109, 109]
        assert data["opportunity"]["type"] == "cross_platform"

    def test_plan_rejected_edge(self, client):
        plan = self._plan(client, minNetEdgeBps=5000).json()["data"]["plan"]
        assert plan["accepted"] is False
        assert plan["bundle"] is None
        assert "bps" in plan["reason"]

    def test_plan_index_out_of_range(self, client):
        resp = self._plan(client, opportunityIndex=5)
        assert resp.status_code == 400

    def test_plan_no_opportunities(self, client, venues):
        venues[1].prices["b1"] = {"yes": 0.42, "no": 0.58}
        resp = self._plan(client)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "MARKET_UNAVAILABLE"

    def test_execute_and_list(self, client, services):
        bundle_id = self._plan(client).json()["data"]["plan"]["bundle"]["bundleId"]
        path = f"/v1/bundles/{bundle_id}/execute"
        resp = _post(client, path, {}, headers={"Idempotency-Key": "b-1"})
        assert resp.status_code == 200
        result = resp.json()["data"]
        assert result["bundle"]["status"] == "success"
        assert len(result["legResults"]) == 2
        assert len(services.ledger.read_fills()) == 2

        replay = _post(client, path, {}, headers={"Idempotency-Key": "b-1"})
        assert replay.json() == resp.json()

        again = _post(client, path, {}, headers={"Idempotency-Key": "b-2"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "BUNDLE_NOT_EXECUTABLE"

        listed = _get(client, "/v1/bundles", params={"limit": 5}).json()["data"]
        assert listed["count"] == 1
        assert listed["bundles"][0]["status"] == "success"

    def test_leg_b_rejection_unwinds(self, client, venues):
        bundle_id = self._plan(client).json()["data"]["plan"]["bundle"]["bundleId"]
        venues[1].reject_markets.add("b1")
        resp = _post(client, f"/v1/bundles/{bundle_id}/execute", {}, headers={"Idempotency-Key": "b-1"})
        result = resp.json()["data"]
        assert result["bundle"]["status"] == "partial_unwound"
        assert result["unwindResult"]["status"] == "filled"
        assert venues[0].orders[-1].outcome == "NO"

    def test_execute_unknown_bundle(self, client):
        resp = _post(client, "/v1/bundles/bundle_nope/execute", {}, headers={"Idempotency-Key": "b-1"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "BUNDLE_NOT_FOUND"

    def test_execute_kill_switch(self, client, services):
        bundle_id = self._plan(client).json()["data"]["plan"]["bundle"]["bundleId"]
        services.policy.kill_switch = True
        resp = _post(client, f"/v1/bundles/{bundle_id}/execute", {}, headers={"Idempotency-Key": "b-1"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "POLICY_KILL_SWITCH"


class TestBuildServices:
    def test_default_signing_secret_warns(self, tmp_path, venues, caplog):
        with caplog.at_level(logging.WARNING, logger="gateway.server"):
            build_services(Config(_env_file=None, ledger_path=str(tmp_path / "f.jsonl")), venues)
        assert any("GATEWAY_SIGNING_SECRET" in r.getMessage() for r in caplog.records)

    def test_custom_signing_secret_is_quiet(self, tmp_path, venues, caplog):
        cfg = Config(_env_file=None, gateway_signing_secret="a-real-secret", ledger_path=str(tmp_path / "f.jsonl"))
        with caplog.at_level(logging.WARNING, logger="gateway.server"):
            build_services(cfg, venues)
        assert not any("GATEWAY_SIGNING_SECRET" in r.getMessage() for r in caplog.records)

    def test_orchestrator_uses_connector_timeout(self, services):
        assert services.orchestrator._timeout_sec == 2.0
