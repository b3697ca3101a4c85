from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from tenantledger.core.errors import LedgerError, TenantIsolationViolation
from tenantledger.persistence.guards import TenantContext, system_context


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential"]
_REDACTED_VALUE = "[REDACTED]"
ISOLATION_VIOLATION_EVENT = "security.tenant_isolation_violation"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_security_event(
    ctx: TenantContext,
    *,
    event_type: str,
    severity: str = "warning",
    payload: dict[str, Any] | None = None,
    description: str | None = None,
    best_effort: bool = True,
) -> str | None:
    """Append a ``security`` category event for the context's tenant.

    Security events never evaluate notification rules. With ``best_effort`` a failed
    write is logged and swallowed so the caller's own error keeps priority.
    """
    # Imported here: ingestion pulls in the ledger, which imports the guards that call us.
    from tenantledger.services.ingestion import ActivityEventDraft, record

    draft = ActivityEventDraft(
        type=event_type,
        category="security",
        severity=severity,
        payload=sanitize_metadata(payload or {}),
        description=description,
        request_id=ctx.request_id,
    )
    try:
        return await record(system_context(ctx.tenant_id, request_id=ctx.request_id), draft, evaluate_triggers=False)
    except (LedgerError, SQLAlchemyError) as exc:
        if not best_effort:
            raise
        logger.warning(
            "security_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event_type,
            ctx.tenant_id,
            ctx.request_id,
            exc_info=exc,
        )
        return None


async def record_isolation_violation(ctx: TenantContext, exc: TenantIsolationViolation) -> str | None:
    # Recorded under the caller's own tenant; the attempted tenant is evidence, not a target.
    return await record_security_event(
        ctx,
        event_type=ISOLATION_VIOLATION_EVENT,
        severity="critical",
        payload={
            "operation": exc.operation,
            "model": exc.model,
            "attempted_tenant_id": exc.attempted_tenant_id,
            "actor_type": ctx.actor_type,
            "actor_id": ctx.actor_id,
            "error_code": exc.code,
        },
        description=exc.message,
    )
