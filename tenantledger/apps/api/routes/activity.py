from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from tenantledger.apps.api.deps import require_tenant_context
from tenantledger.apps.api.response import success_response
from tenantledger.domain.models import ActivityEvent
from tenantledger.persistence.guards import TenantContext
from tenantledger.services import ledger
from tenantledger.services.audit import get_request_context
from tenantledger.services.ingestion import ActivityEventDraft, record, record_many


router = APIRouter(prefix="/activity-events", tags=["activity"])


class ActivityEventResponse(BaseModel):
    id: str
    tenant_id: str
    type: str
    category: str
    severity: str
    actor_type: str | None
    actor_id: str | None
    entity_type: str | None
    entity_id: str | None
    parent_entity_type: str | None
    parent_entity_id: str | None
    payload: dict[str, Any]
    description: str | None
    duration_ms: int | None
    request_id: str | None
    occurred_at: str
    created_at: str
    archived: bool
    archived_at: str | None


class ActivityEventsPage(BaseModel):
    items: list[ActivityEventResponse]
    next_offset: int | None


class ActivityEventBatch(BaseModel):
    events: list[ActivityEventDraft] = Field(min_length=1, max_length=500)


def _to_response(event: ActivityEvent) -> ActivityEventResponse:
    return ActivityEventResponse(
        id=event.id,
        tenant_id=event.tenant_id,
        type=event.event_type,
        category=event.category,
        severity=event.severity,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        parent_entity_type=event.parent_entity_type,
        parent_entity_id=event.parent_entity_id,
        payload=event.payload or {},
        description=event.description,
        duration_ms=event.duration_ms,
        request_id=event.request_id,
        occurred_at=event.occurred_at.isoformat(),
        created_at=event.created_at.isoformat(),
        archived=event.archived,
        archived_at=event.archived_at.isoformat() if event.archived_at else None,
    )


def _with_client_hints(request: Request, draft: ActivityEventDraft) -> ActivityEventDraft:
    # Fill provenance from the HTTP request when the caller did not supply it.
    hints = get_request_context(request)
    updates = {
        key: value
        for key, value in hints.items()
        if value is not None and getattr(draft, key) is None
    }
    return draft.model_copy(update=updates) if updates else draft


@router.post("", status_code=201)
async def create_activity_event(
    draft: ActivityEventDraft,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("member")),
) -> dict:
    event_id = await record(ctx, _with_client_hints(request, draft))
    return success_response(request=request, data={"id": event_id})


@router.post("/batch", status_code=201)
async def create_activity_events(
    batch: ActivityEventBatch,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("member")),
) -> dict:
    event_ids = await record_many(ctx, [_with_client_hints(request, draft) for draft in batch.events])
    return success_response(request=request, data={"ids": event_ids})


@router.get("")
async def list_activity_events(
    request: Request,
    tenant: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event_type: str | None = None,
    category: str | None = None,
    min_severity: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    include_archived: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    page = await ledger.query(
        ctx,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        tenant_id=tenant,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        category=category,
        min_severity=min_severity,
        actor_id=actor_id,
        include_archived=include_archived,
        offset=offset,
        limit=limit,
    )
    payload = ActivityEventsPage(items=[_to_response(item) for item in page.items], next_offset=page.next_offset)
    return success_response(request=request, data=payload)


@router.get("/{event_id}")
async def get_activity_event(
    event_id: str,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    event = await ledger.get_event(ctx, event_id)
    return success_response(request=request, data=_to_response(event))
