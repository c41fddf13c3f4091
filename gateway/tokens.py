"""
Single-use, short-lived confirmation tokens.

A quote is turned into a signed token that the caller must present to
execute. Format: base64url(compact JSON payload) + "." + base64url(HMAC-SHA256
of the encoded payload). Tokens carry their own expiry; once consumed a token
string is remembered for the lifetime of the used-token store.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Protocol

from gateway.errors import ErrorCode, GatewayError

logger = logging.getLogger(__name__)

TOKEN_VERSION = 1
DEFAULT_TTL_SEC = 90.0


@dataclass(frozen=True)
class QuoteTokenPayload:
    agent_id: str
    market_id: str
    market_title: str
    platform: str
    side: str  # "YES" | "NO"
    shares: float
    quoted_price: float
    quoted_cost: float
    max_slippage_bps: int
    expires_at: int = 0  # epoch ms
    token_version: int = TOKEN_VERSION


class UsedTokenStore(Protocol):
    def contains(self, token: str) -> bool: ...

    def add(self, token: str, used_at_ms: int) -> None: ...


class InMemoryUsedTokenStore:
    def __init__(self) -> None:
        self._used: dict[str, int] = {}
        self._lock = threading.Lock()

    def contains(self, token: str) -> bool:
        with self._lock:
            return token in self._used

    def add(self, token: str, used_at_ms: int) -> None:
        with self._lock:
            self._used[token] = used_at_ms

    def __len__(self) -> int:
        return len(self._used)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConfirmationTokenService:
    def __init__(
        self,
        secret: str,
        ttl_sec: float = DEFAULT_TTL_SEC,
        used_store: UsedTokenStore | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        if not secret:
            raise ValueError("Confirmation token secret must be non-empty")
        self._secret = secret.encode("utf-8")
        self._ttl_ms = int(ttl_sec * 1000)
        self._used = used_store if used_store is not None else InMemoryUsedTokenStore()
        self._clock_ms = clock_ms
        self._lock = threading.Lock()

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._secret, payload_b64.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def issue(self, payload: QuoteTokenPayload) -> tuple[str, int]:
        """Sign a quote. Returns (token, expires_at_ms); expiry and version are set here."""
        expires_at = self._clock_ms() + self._ttl_ms
        data = asdict(payload)
        data["expires_at"] = expires_at
        data["token_version"] = TOKEN_VERSION
        payload_b64 = _b64url_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))
        return f"{payload_b64}.{self._sign(payload_b64)}", expires_at

    def _check(self, token: str) -> QuoteTokenPayload:
        parts = token.split(".") if token and token.isascii() else []
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise GatewayError(ErrorCode.CONFIRMATION_TOKEN_INVALID, "Malformed confirmation token")
        payload_b64, sig = parts

        if not hmac.compare_digest(self._sign(payload_b64), sig):
            raise GatewayError(ErrorCode.CONFIRMATION_TOKEN_INVALID, "Invalid token signature")

        if self._used.contains(token):
            raise GatewayError(ErrorCode.CONFIRMATION_TOKEN_USED, "Confirmation token already used")

        try:
            data = json.loads(_b64url_decode(payload_b64))
            payload = QuoteTokenPayload(**data)
        except (ValueError, TypeError) as e:
            raise GatewayError(
                ErrorCode.CONFIRMATION_TOKEN_INVALID, "Could not decode token payload",
            ) from e

        if not payload.expires_at or payload.expires_at < self._clock_ms():
            raise GatewayError(ErrorCode.CONFIRMATION_TOKEN_EXPIRED, "Confirmation token expired")
        return payload

    def verify(self, token: str) -> QuoteTokenPayload:
        """Validate a token without burning it. Raises like verify_and_consume."""
        with self._lock:
            return self._check(token)

    def verify_and_consume(self, token: str) -> QuoteTokenPayload:
        """
        Validate and burn a token. Raises GatewayError with one of the
        CONFIRMATION_TOKEN_* codes; a token is consumed only on success.
        """
        with self._lock:
            payload = self._check(token)
            self._used.add(token, self._clock_ms())

        logger.debug("Consumed confirmation token for %s on %s", payload.agent_id, payload.platform)
        return payload
