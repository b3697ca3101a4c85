from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from tenantledger.apps.api.deps import require_tenant_context
from tenantledger.apps.api.response import success_response
from tenantledger.persistence.guards import TenantContext
from tenantledger.persistence.partitions import get_partition_router
from tenantledger.services.analytics import run_rollups
from tenantledger.services.legal_holds import place_legal_hold, release_legal_hold
from tenantledger.services.lifecycle import list_partition_catalog, run_lifecycle
from tenantledger.services.notifications import dispatch_due_deliveries, expire_due_notifications


router = APIRouter(prefix="/ops", tags=["ops"])


class LegalHoldRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=1, max_length=2000)
    expires_at: datetime | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@router.get("/partitions")
async def list_partitions(
    request: Request,
    _ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    rows = await list_partition_catalog()
    data = [
        {
            "key": row.key,
            "kind": row.kind,
            "state": row.state,
            "range_start": _iso(row.range_start),
            "range_end": _iso(row.range_end),
            "archived_at": _iso(row.archived_at),
            "dropped_at": _iso(row.dropped_at),
            "failure_count": row.failure_count,
            "last_error": row.last_error,
        }
        for row in rows
    ]
    return success_response(request=request, data=data)


@router.post("/partitions/run")
async def run_partitions(
    request: Request,
    _ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    report = await run_lifecycle()
    get_partition_router().invalidate()
    return success_response(request=request, data=report.as_dict())


@router.post("/rollups/run")
async def run_rollups_now(
    request: Request,
    _ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    details = await run_rollups()
    return success_response(request=request, data=details)


@router.post("/notifications/sweep")
async def sweep_notifications(
    request: Request,
    _ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    expired = await expire_due_notifications()
    scheduled = await dispatch_due_deliveries()
    return success_response(request=request, data={"expired": expired, "scheduled": scheduled})


@router.post("/legal-holds", status_code=201)
async def create_legal_hold(
    body: LegalHoldRequest,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    hold = await place_legal_hold(ctx, reason=body.reason, expires_at=body.expires_at)
    return success_response(
        request=request,
        data={"id": hold.id, "is_active": hold.is_active, "expires_at": _iso(hold.expires_at)},
    )


@router.delete("/legal-holds/{hold_id}")
async def delete_legal_hold(
    hold_id: int,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    hold = await release_legal_hold(ctx, hold_id)
    return success_response(request=request, data={"id": hold.id, "is_active": hold.is_active})
