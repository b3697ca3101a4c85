from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from tenantledger.apps.api.deps import require_tenant_context
from tenantledger.apps.api.response import success_response
from tenantledger.core.errors import ValidationError
from tenantledger.domain.models import Notification, NotificationChannelDelivery
from tenantledger.persistence.guards import TenantContext
from tenantledger.services import notifications as notification_service


router = APIRouter(tags=["notifications"])


class NotificationCreateRequest(BaseModel):
    # Remaining fields are notification draft fields, or template overrides when template_key is set.
    model_config = ConfigDict(extra="allow")

    template_key: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    dispatch: bool = True


class NotificationPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    read: bool | None = None
    dismissed: bool | None = None


class PreferenceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recipient_kind: str = "user"
    disabled_channels: list[str] = Field(default_factory=list)
    muted_categories: list[str] = Field(default_factory=list)
    global_opt_out: bool = False


class TemplateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    required_variables: list[str] = Field(default_factory=list)
    type: str | None = None
    category: str = "info"
    priority: int = Field(default=5, ge=1, le=9)
    channels: list[str] = Field(default_factory=lambda: ["web"])


class RuleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=128)
    event_type_pattern: str = Field(min_length=1, max_length=128)
    template_key: str
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    recipient: str | None = None
    recipient_kind: str = "user"
    recipient_from: str | None = None
    channels: list[str] | None = None
    cooldown_seconds: int = Field(default=0, ge=0)


class DeliveryResponse(BaseModel):
    channel: str
    status: str
    attempt_count: int
    next_attempt_at: str | None
    last_error: str | None
    delivered_at: str | None


class NotificationResponse(BaseModel):
    id: str
    recipient: str
    recipient_kind: str
    sender: str | None
    type: str
    category: str
    priority: int
    title: str
    message: str
    rich_content: dict[str, Any] | None
    related_entity_type: str | None
    related_entity_id: str | None
    channels: list[str]
    channel_fallback: bool
    delivery_status: dict[str, str]
    delivery_state: str
    read: bool
    read_at: str | None
    dismissed: bool
    dismissed_at: str | None
    scheduled_for: str | None
    expires_at: str | None
    source_event_id: str | None
    created_at: str
    deliveries: list[DeliveryResponse] | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _delivery(row: NotificationChannelDelivery) -> DeliveryResponse:
    return DeliveryResponse(
        channel=row.channel,
        status=row.status,
        attempt_count=row.attempt_count,
        next_attempt_at=_iso(row.next_attempt_at),
        last_error=row.last_error,
        delivered_at=_iso(row.delivered_at),
    )


def _to_response(row: Notification, deliveries: list[NotificationChannelDelivery] | None = None) -> NotificationResponse:
    return NotificationResponse(
        id=row.id,
        recipient=row.recipient,
        recipient_kind=row.recipient_kind,
        sender=row.sender,
        type=row.notification_type,
        category=row.category,
        priority=row.priority,
        title=row.title,
        message=row.message,
        rich_content=row.rich_content,
        related_entity_type=row.related_entity_type,
        related_entity_id=row.related_entity_id,
        channels=list(row.channels or []),
        channel_fallback=row.channel_fallback,
        delivery_status=dict(row.delivery_status or {}),
        delivery_state=row.delivery_state,
        read=row.read,
        read_at=_iso(row.read_at),
        dismissed=row.dismissed,
        dismissed_at=_iso(row.dismissed_at),
        scheduled_for=_iso(row.scheduled_for),
        expires_at=_iso(row.expires_at),
        source_event_id=row.source_event_id,
        created_at=row.created_at.isoformat(),
        deliveries=[_delivery(item) for item in deliveries] if deliveries is not None else None,
    )


def _recipient_or_actor(recipient: str | None, ctx: TenantContext) -> str:
    resolved = recipient or ctx.actor_id
    if not resolved:
        raise ValidationError("recipient is required when no X-Actor-Id is supplied")
    return resolved


@router.post("/notifications", status_code=201)
async def create_notification(
    body: NotificationCreateRequest,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("member")),
) -> dict:
    fields = dict(body.model_extra or {})
    if body.template_key:
        recipient = fields.pop("recipient", None)
        if not recipient:
            raise ValidationError("recipient is required")
        row = await notification_service.create_from_template(
            ctx,
            body.template_key,
            body.variables,
            recipient=recipient,
            recipient_kind=fields.pop("recipient_kind", "user"),
            channels=fields.pop("channels", None),
            overrides=fields,
            dispatch=body.dispatch,
        )
    else:
        row = await notification_service.create_notification(ctx, fields, dispatch=body.dispatch)
    return success_response(request=request, data=_to_response(row))


@router.get("/notifications")
async def list_notifications(
    request: Request,
    recipient: str | None = None,
    recipient_kind: str | None = None,
    unread: bool = False,
    include_dismissed: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    page = await notification_service.list_notifications(
        ctx,
        recipient=_recipient_or_actor(recipient, ctx),
        recipient_kind=recipient_kind,
        unread_only=unread,
        include_dismissed=include_dismissed,
        offset=offset,
        limit=limit,
    )
    data = {"items": [_to_response(row).model_dump() for row in page.items], "next_offset": page.next_offset}
    return success_response(request=request, data=data)


@router.get("/notifications/unread-count")
async def get_unread_count(
    request: Request,
    recipient: str | None = None,
    recipient_kind: str | None = None,
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    resolved = _recipient_or_actor(recipient, ctx)
    count = await notification_service.unread_count(ctx, recipient=resolved, recipient_kind=recipient_kind)
    return success_response(request=request, data={"recipient": resolved, "unread_count": count})


@router.get("/notifications/{notification_id}")
async def get_notification(
    notification_id: str,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("reader")),
) -> dict:
    row = await notification_service.get_notification(ctx, notification_id)
    deliveries = await notification_service.list_channel_deliveries(ctx, notification_id)
    return success_response(request=request, data=_to_response(row, deliveries))


@router.patch("/notifications/{notification_id}")
async def patch_notification(
    notification_id: str,
    body: NotificationPatch,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("member")),
) -> dict:
    if body.read is False or body.dismissed is False:
        raise ValidationError("read and dismissed can only be set to true")
    if not body.read and not body.dismissed:
        raise ValidationError("Provide read and/or dismissed")
    row = await notification_service.get_notification(ctx, notification_id)
    if body.read:
        row = await notification_service.mark_read(ctx, notification_id)
    if body.dismissed:
        row = await notification_service.mark_dismissed(ctx, notification_id)
    return success_response(request=request, data=_to_response(row))


@router.put("/notification-preferences/{recipient}")
async def put_preference(
    recipient: str,
    body: PreferenceRequest,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("member")),
) -> dict:
    row = await notification_service.set_preference(
        ctx,
        recipient=recipient,
        recipient_kind=body.recipient_kind,
        disabled_channels=body.disabled_channels,
        muted_categories=body.muted_categories,
        global_opt_out=body.global_opt_out,
    )
    data = {
        "recipient": row.recipient,
        "recipient_kind": row.recipient_kind,
        "disabled_channels": list(row.disabled_channels or []),
        "muted_categories": list(row.muted_categories or []),
        "global_opt_out": row.global_opt_out,
    }
    return success_response(request=request, data=data)


@router.put("/notification-templates/{key}")
async def put_template(
    key: str,
    body: TemplateRequest,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    if body.key != key:
        raise ValidationError("Template key in path and body must match")
    row = await notification_service.upsert_template(
        ctx,
        key=key,
        title=body.title,
        message=body.message,
        required_variables=body.required_variables,
        notification_type=body.type,
        category=body.category,
        priority=body.priority,
        channels=body.channels,
    )
    data = {
        "key": row.key,
        "title": row.title,
        "message": row.message,
        "required_variables": list(row.required_variables or []),
        "category": row.category,
        "priority": row.priority,
        "channels": list(row.channels or []),
    }
    return success_response(request=request, data=data)


@router.post("/notification-rules", status_code=201)
async def post_rule(
    body: RuleRequest,
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    rule = await notification_service.create_rule(ctx, **body.model_dump())
    return success_response(request=request, data={"id": rule.id, "name": rule.name, "is_active": rule.is_active})


@router.get("/notification-rules")
async def get_rules(
    request: Request,
    ctx: TenantContext = Depends(require_tenant_context("admin")),
) -> dict:
    rules = await notification_service.list_rules(ctx)
    data = [
        {
            "id": rule.id,
            "name": rule.name,
            "event_type_pattern": rule.event_type_pattern,
            "template_key": rule.template_key,
            "conditions": list(rule.conditions or []),
            "is_active": rule.is_active,
        }
        for rule in rules
    ]
    return success_response(request=request, data=data)
