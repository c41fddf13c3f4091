"""
Structured audit trail for gateway actions.

Events go to the `gateway.audit` logger at INFO with their fields attached
via `extra=`, so the JSON log sink records them as top-level keys.
"""

from __future__ import annotations

import logging
from typing import Any

audit_logger = logging.getLogger("gateway.audit")


def audit_event(event: str, **fields: Any) -> None:
    summary = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    audit_logger.info("[AUDIT] %s %s", event, summary, extra={"event": event, **fields})
