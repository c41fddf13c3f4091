"""Response envelopes shared by every gateway route."""

from __future__ import annotations

import uuid
from typing import Any

from gateway.errors import GatewayError
from scanner.models import now_iso


def new_request_id() -> str:
    return str(uuid.uuid4())


def success(request_id: str, data: Any) -> dict:
    return {
        "success": True,
        "requestId": request_id,
        "data": data,
        "error": None,
        "timestamp": now_iso(),
    }


def failure(request_id: str, code: str, message: str, details: dict | None = None) -> dict:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {
        "success": False,
        "requestId": request_id,
        "data": None,
        "error": error,
        "timestamp": now_iso(),
    }


def from_error(request_id: str, err: GatewayError) -> dict:
    return failure(request_id, err.code.value, err.message, err.details)
