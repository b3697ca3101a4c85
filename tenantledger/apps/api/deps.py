from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from tenantledger.apps.api.response import get_request_id
from tenantledger.core.errors import TenantContextRequired
from tenantledger.persistence.guards import TenantContext


_ROLE_ORDER = ("reader", "member", "admin")


class Principal(BaseModel):
    # Identity resolved by the upstream gateway and forwarded in headers.
    tenant_id: str
    actor_id: str | None = None
    role: str = "member"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def normalize_role(value: str) -> str:
    role = value.strip().lower()
    if role not in _ROLE_ORDER:
        raise ValueError(f"Unknown role: {value}")
    return role


def role_allows(*, role: str, minimum_role: str) -> bool:
    return _ROLE_ORDER.index(role) >= _ROLE_ORDER.index(minimum_role)


async def get_current_principal(request: Request) -> Principal:
    # Tenant and actor come from trusted gateway headers, never from request bodies.
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    try:
        role = normalize_role(request.headers.get("X-Role", "member"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    actor_id = (request.headers.get("X-Actor-Id") or "").strip() or None
    # Echoed in the response meta.
    request.state.tenant_id = tenant_id
    return Principal(tenant_id=tenant_id, actor_id=actor_id, role=role)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def _context_for(request: Request, principal: Principal) -> TenantContext:
    try:
        return TenantContext(
            tenant_id=principal.tenant_id,
            actor_type="user",
            actor_id=principal.actor_id,
            request_id=get_request_id(request),
        )
    except TenantContextRequired as exc:
        raise _auth_error(exc.message) from exc


async def get_tenant_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> TenantContext:
    return _context_for(request, principal)


def require_tenant_context(minimum_role: str):
    async def _dependency(
        request: Request,
        principal: Principal = Depends(require_role(minimum_role)),
    ) -> TenantContext:
        return _context_for(request, principal)

    return _dependency
