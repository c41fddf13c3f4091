"""
HMAC request authentication with replay protection.

Clients sign

    METHOD \\n PATH \\n sha256_hex(body) \\n agent_id \\n timestamp_ms \\n nonce

with their key secret (HMAC-SHA256, hex) and send it with the identity
headers below. Requests outside the replay window, or reusing a nonce seen
within the nonce TTL, are refused.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from gateway.errors import ErrorCode, GatewayError

logger = logging.getLogger(__name__)

HEADER_AGENT_ID = "X-Arb-Agent-Id"
HEADER_KEY_ID = "X-Arb-Key-Id"
HEADER_TIMESTAMP = "X-Arb-Timestamp"
HEADER_NONCE = "X-Arb-Nonce"
HEADER_SIGNATURE = "X-Arb-Signature"

UNSIGNED_AGENT = "unsigned-agent"
UNSIGNED_KEY = "unsigned"


@dataclass(frozen=True)
class AuthContext:
    agent_id: str
    key_id: str


def body_sha256(body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body or b"{}").hexdigest()


def compute_signature(
    secret: str, method: str, path: str, body: bytes | str, agent_id: str, timestamp: str, nonce: str,
) -> str:
    canonical = "\n".join([method.upper(), path, body_sha256(body), agent_id, timestamp, nonce])
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_request(
    secret: str,
    key_id: str,
    agent_id: str,
    method: str,
    path: str,
    body: bytes | str = b"",
    timestamp_ms: int | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Build the auth headers for one request."""
    ts = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    nonce = nonce or secrets.token_hex(16)
    return {
        HEADER_AGENT_ID: agent_id,
        HEADER_KEY_ID: key_id,
        HEADER_TIMESTAMP: ts,
        HEADER_NONCE: nonce,
        HEADER_SIGNATURE: compute_signature(secret, method, path, body, agent_id, ts, nonce),
    }


class NonceStore:
    """Nonces seen within the TTL. Pruned lazily on each check."""

    def __init__(self, ttl_sec: float = 300.0) -> None:
        self._ttl_ms = ttl_sec * 1000
        self._seen: dict[str, int] = {}

    def prune(self, now_ms: int) -> None:
        stale = [n for n, seen_at in self._seen.items() if now_ms - seen_at > self._ttl_ms]
        for n in stale:
            del self._seen[n]

    def seen(self, nonce: str) -> bool:
        return nonce in self._seen

    def record(self, nonce: str, now_ms: int) -> None:
        self._seen[nonce] = now_ms

    def __len__(self) -> int:
        return len(self._seen)


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return str(value or "")


class GatewayAuthorizer:
    """
    Validates signed requests against a key map
    {key_id: {"secret": ..., "agent_id": ..., "enabled": ...}}.

    Unsigned mode applies only when allow_unsigned is set and no keys exist.
    """

    def __init__(
        self,
        keys: dict[str, dict],
        allow_unsigned: bool = False,
        replay_window_sec: float = 60.0,
        nonce_store: NonceStore | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._keys = dict(keys)
        self._allow_unsigned = allow_unsigned
        self._window_ms = replay_window_sec * 1000
        self._nonces = nonce_store if nonce_store is not None else NonceStore()
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._lock = threading.Lock()
        if allow_unsigned and not self._keys:
            logger.warning("Gateway running UNSIGNED: no keys configured and allow_unsigned is set")

    @property
    def unsigned_mode(self) -> bool:
        return self._allow_unsigned and not self._keys

    def authorize(self, method: str, path: str, headers: Mapping[str, str], body: bytes | str) -> AuthContext:
        if self.unsigned_mode:
            return AuthContext(_header(headers, HEADER_AGENT_ID) or UNSIGNED_AGENT, UNSIGNED_KEY)

        agent_id = _header(headers, HEADER_AGENT_ID)
        key_id = _header(headers, HEADER_KEY_ID)
        timestamp = _header(headers, HEADER_TIMESTAMP)
        nonce = _header(headers, HEADER_NONCE)
        signature = _header(headers, HEADER_SIGNATURE)

        if not (agent_id and key_id and timestamp and nonce and signature):
            raise GatewayError(ErrorCode.AUTH_INVALID, "Missing required auth headers")

        key = self._keys.get(key_id)
        if not key or key.get("enabled") is False or not key.get("secret"):
            raise GatewayError(ErrorCode.AUTH_INVALID, "Unknown or disabled key")

        bound_agent = key.get("agent_id") or key.get("agentId")
        if bound_agent and bound_agent != agent_id:
            raise GatewayError(ErrorCode.AUTH_INVALID, "Agent mismatch for key", status=403)

        try:
            ts_ms = float(timestamp)
        except ValueError:
            ts_ms = math.nan
        if not math.isfinite(ts_ms):
            raise GatewayError(ErrorCode.AUTH_INVALID, "Timestamp outside replay window")

        with self._lock:
            now = self._clock_ms()
            if abs(now - ts_ms) > self._window_ms:
                raise GatewayError(ErrorCode.AUTH_INVALID, "Timestamp outside replay window")

            self._nonces.prune(now)
            if self._nonces.seen(nonce):
                logger.warning("Replay detected: agent=%s key=%s nonce=%s", agent_id, key_id, nonce)
                raise GatewayError(ErrorCode.AUTH_REPLAY_DETECTED, "Nonce already used")

            expected = compute_signature(key["secret"], method, path, body, agent_id, timestamp, nonce)
            if not hmac.compare_digest(expected.encode("ascii"), signature.lower().encode("utf-8")):
                raise GatewayError(ErrorCode.AUTH_INVALID, "Signature mismatch")

            self._nonces.record(nonce, now)

        return AuthContext(agent_id, key_id)
