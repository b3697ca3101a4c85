from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request

from tenantledger.apps.api.deps import require_tenant_context
from tenantledger.apps.api.response import success_response
from tenantledger.persistence.guards import TenantContext
from tenantledger.services.analytics import compute_rollup


router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/activity")
async def activity_rollup(
    request: Request,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    summary = await compute_rollup(ctx, start=occurred_from, end=occurred_to)
    return success_response(request=request, data=summary.as_dict())
