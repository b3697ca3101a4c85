from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import time
from typing import Any

import httpx

from tenantledger.core.config import get_settings
from tenantledger.services.background import spawn


logger = logging.getLogger(__name__)

_last_sent: dict[str, float] = {}


def _dedupe_key(kind: str, details: dict[str, Any]) -> str:
    return f"{kind}:{json.dumps(details, sort_keys=True, default=str)}"


def reset_alert_dedupe() -> None:
    _last_sent.clear()


async def _post_alert(url: str, body: dict[str, Any]) -> None:
    timeout_s = max(0.2, get_settings().notify_relay_timeout_ms / 1000.0)
    try:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            response = await client.post(url, json=body)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("operational_alert_webhook_failed kind=%s", body.get("kind"), exc_info=exc)


def raise_operational_alert(kind: str, message: str, *, details: dict[str, Any] | None = None) -> bool:
    """Surface an operator-facing alert out-of-band.

    Always logged at ERROR; additionally posted to ``ops_alert_webhook_url`` when configured.
    Identical alerts inside the dedupe window are suppressed. Returns whether it was emitted.
    """
    settings = get_settings()
    details = details or {}
    key = _dedupe_key(kind, details)
    now = time.monotonic()
    last = _last_sent.get(key)
    if last is not None and now - last < max(0, int(settings.ops_alert_dedupe_window_s)):
        return False
    _last_sent[key] = now
    logger.error("operational_alert kind=%s message=%s details=%s", kind, message, details)
    if settings.ops_alert_webhook_url:
        body = {
            "kind": kind,
            "message": message,
            "details": details,
            "raised_at": datetime.now(timezone.utc).isoformat(),
            "service": settings.app_name,
        }
        spawn(_post_alert(settings.ops_alert_webhook_url, body), name=f"ops-alert:{kind}")
    return True
