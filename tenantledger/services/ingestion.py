from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from tenantledger.core.errors import ValidationError
from tenantledger.domain.models import ActivityEvent, utc_now
from tenantledger.domain.vocab import ActorType, ENTITY_TYPE_PATTERN, EVENT_TYPE_PATTERN, EventCategory, Severity
from tenantledger.persistence.guards import TenantContext, tenant_session
from tenantledger.services import ledger
from tenantledger.services.background import spawn
from tenantledger.services.tenants import ensure_tenant_active


logger = logging.getLogger(__name__)


class ActivityEventDraft(BaseModel):
    """Caller-supplied activity event; ids, tenant and timestamps are assigned on ingestion."""

    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=3, max_length=128)
    category: EventCategory = "user_action"
    severity: Severity = "info"
    actor_type: ActorType | None = None
    actor_id: str | None = Field(default=None, max_length=128)
    entity_type: str | None = Field(default=None, max_length=64)
    entity_id: str | None = Field(default=None, max_length=128)
    parent_entity_type: str | None = Field(default=None, max_length=64)
    parent_entity_id: str | None = Field(default=None, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)
    description: str | None = Field(default=None, max_length=4000)
    occurred_at: datetime | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    request_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = Field(default=None, max_length=512)

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        if not EVENT_TYPE_PATTERN.match(value):
            raise ValueError("type must be a namespaced lowercase identifier such as 'invoice.created'")
        return value

    @field_validator("entity_type", "parent_entity_type")
    @classmethod
    def _check_entity_type(cls, value: str | None) -> str | None:
        if value is not None and not ENTITY_TYPE_PATTERN.match(value):
            raise ValueError("entity types are lowercase identifiers")
        return value

    @field_validator("occurred_at")
    @classmethod
    def _check_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("occurred_at must include a timezone offset")
        return value

    @model_validator(mode="after")
    def _check_pairs(self) -> "ActivityEventDraft":
        if (self.entity_type is None) != (self.entity_id is None):
            raise ValueError("entity_type and entity_id must be provided together")
        if (self.parent_entity_type is None) != (self.parent_entity_id is None):
            raise ValueError("parent_entity_type and parent_entity_id must be provided together")
        return self


def parse_draft(data: dict[str, Any]) -> ActivityEventDraft:
    # Convert pydantic errors into the ledger's typed validation error.
    try:
        return ActivityEventDraft.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors()
        ]
        raise ValidationError("Invalid activity event", details={"errors": errors}) from exc


def _build_event(ctx: TenantContext, draft: ActivityEventDraft) -> ActivityEvent:
    occurred_at = (draft.occurred_at or utc_now()).astimezone(timezone.utc)
    actor_type = draft.actor_type or ctx.actor_type
    actor_id = draft.actor_id if draft.actor_id is not None else ctx.actor_id
    return ActivityEvent(
        id=uuid4().hex,
        tenant_id=ctx.tenant_id,
        occurred_at=occurred_at,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=draft.type,
        category=draft.category,
        severity=draft.severity,
        entity_type=draft.entity_type,
        entity_id=draft.entity_id,
        parent_entity_type=draft.parent_entity_type,
        parent_entity_id=draft.parent_entity_id,
        payload=dict(draft.payload),
        description=draft.description,
        duration_ms=draft.duration_ms,
        request_id=draft.request_id or ctx.request_id,
        session_id=draft.session_id,
        ip_address=draft.ip_address,
        user_agent=draft.user_agent,
        archived=False,
    )


def _schedule_triggers(ctx: TenantContext, event_ids: list[str]) -> None:
    # Imported here: rule evaluation creates notifications, which import the ledger back.
    from tenantledger.services.notifications.rules import evaluate_event_triggers

    for event_id in event_ids:
        spawn(
            evaluate_event_triggers(ctx.tenant_id, event_id, request_id=ctx.request_id),
            name=f"triggers:{event_id}",
        )


async def record(
    ctx: TenantContext,
    draft: ActivityEventDraft | dict[str, Any],
    *,
    evaluate_triggers: bool = True,
) -> str:
    """Validate, append and commit one event; returns its id.

    Notification triggers run after the commit in the background, so a failing
    dispatcher never fails the write.
    """
    if isinstance(draft, dict):
        draft = parse_draft(draft)
    event = _build_event(ctx, draft)
    async with tenant_session(ctx) as session:
        await ensure_tenant_active(session, ctx.tenant_id)
        event_id = await ledger.append(session, event)
        await session.commit()
    logger.debug("activity_event_recorded tenant_id=%s event_id=%s type=%s", ctx.tenant_id, event_id, event.event_type)
    if evaluate_triggers:
        _schedule_triggers(ctx, [event_id])
    return event_id


async def record_many(
    ctx: TenantContext,
    drafts: list[ActivityEventDraft | dict[str, Any]],
    *,
    evaluate_triggers: bool = True,
) -> list[str]:
    # All-or-nothing: one invalid or unroutable event rejects the whole batch.
    if not drafts:
        return []
    parsed = [parse_draft(item) if isinstance(item, dict) else item for item in drafts]
    events = [_build_event(ctx, item) for item in parsed]
    event_ids: list[str] = []
    async with tenant_session(ctx) as session:
        await ensure_tenant_active(session, ctx.tenant_id)
        for event in events:
            event_ids.append(await ledger.append(session, event))
        await session.commit()
    if evaluate_triggers:
        _schedule_triggers(ctx, event_ids)
    return event_ids
