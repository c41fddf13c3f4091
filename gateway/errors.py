"""
Gateway error taxonomy.

Every failure the gateway returns carries one ErrorCode and an HTTP status.
Auth, token and validation layers raise GatewayError; route handlers catch
it once and turn it into a failure envelope. Exceptions coming out of a
connector are mapped by classify_error from their message text.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_INVALID = "AUTH_INVALID"
    AUTH_REPLAY_DETECTED = "AUTH_REPLAY_DETECTED"
    CONFIRMATION_TOKEN_INVALID = "CONFIRMATION_TOKEN_INVALID"
    CONFIRMATION_TOKEN_USED = "CONFIRMATION_TOKEN_USED"
    CONFIRMATION_TOKEN_EXPIRED = "CONFIRMATION_TOKEN_EXPIRED"
    POLICY_KILL_SWITCH = "POLICY_KILL_SWITCH"
    POLICY_PLATFORM_BLOCKED = "POLICY_PLATFORM_BLOCKED"
    POLICY_SLIPPAGE_EXCEEDED = "POLICY_SLIPPAGE_EXCEEDED"
    POLICY_ORDER_LIMIT = "POLICY_ORDER_LIMIT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    MARKET_UNAVAILABLE = "MARKET_UNAVAILABLE"
    EXECUTION_REJECTED = "EXECUTION_REJECTED"
    CONNECTOR_UNAVAILABLE = "CONNECTOR_UNAVAILABLE"
    BUNDLE_NOT_FOUND = "BUNDLE_NOT_FOUND"
    BUNDLE_NOT_EXECUTABLE = "BUNDLE_NOT_EXECUTABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


DEFAULT_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTH_INVALID: 401,
    ErrorCode.AUTH_REPLAY_DETECTED: 409,
    ErrorCode.CONFIRMATION_TOKEN_INVALID: 409,
    ErrorCode.CONFIRMATION_TOKEN_USED: 409,
    ErrorCode.CONFIRMATION_TOKEN_EXPIRED: 409,
    ErrorCode.POLICY_KILL_SWITCH: 403,
    ErrorCode.POLICY_PLATFORM_BLOCKED: 403,
    ErrorCode.POLICY_SLIPPAGE_EXCEEDED: 403,
    ErrorCode.POLICY_ORDER_LIMIT: 403,
    ErrorCode.INSUFFICIENT_FUNDS: 400,
    ErrorCode.MARKET_UNAVAILABLE: 404,
    ErrorCode.EXECUTION_REJECTED: 422,
    ErrorCode.CONNECTOR_UNAVAILABLE: 502,
    ErrorCode.BUNDLE_NOT_FOUND: 404,
    ErrorCode.BUNDLE_NOT_EXECUTABLE: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


class GatewayError(Exception):
    """A failure that maps directly onto a gateway error envelope."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status if status is not None else DEFAULT_STATUS[code]
        self.details = details


_INSUFFICIENT = re.compile(r"insufficient", re.IGNORECASE)
_MARKET = re.compile(r"market", re.IGNORECASE)
_MARKET_GONE = re.compile(r"not found|unavailable|closed", re.IGNORECASE)
_REJECTED = re.compile(r"rejected|submission failed", re.IGNORECASE)
_CONNECTOR = re.compile(r"timeout|timed out|network|unavailable", re.IGNORECASE)


def classify_error(error: BaseException) -> GatewayError:
    """Map a connector or placement exception to a gateway error."""
    if isinstance(error, GatewayError):
        return error
    msg = str(error) or type(error).__name__
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return GatewayError(ErrorCode.CONNECTOR_UNAVAILABLE, msg or "timeout")
    if _INSUFFICIENT.search(msg):
        return GatewayError(ErrorCode.INSUFFICIENT_FUNDS, msg)
    if _MARKET.search(msg) and _MARKET_GONE.search(msg):
        return GatewayError(ErrorCode.MARKET_UNAVAILABLE, msg)
    if _REJECTED.search(msg):
        return GatewayError(ErrorCode.EXECUTION_REJECTED, msg)
    if _CONNECTOR.search(msg):
        return GatewayError(ErrorCode.CONNECTOR_UNAVAILABLE, msg)
    return GatewayError(ErrorCode.INTERNAL_ERROR, msg)
