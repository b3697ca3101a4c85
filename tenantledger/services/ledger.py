"""Event ledger store: append-only writes routed to partitions, tenant-scoped range reads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.config import get_settings
from tenantledger.core.errors import NoCoveringPartition, NotFoundError, RangeRequired, ValidationError
from tenantledger.domain.models import ActivityEvent
from tenantledger.domain.vocab import (
    ACTOR_TYPES,
    ENTITY_TYPE_PATTERN,
    EVENT_CATEGORIES,
    EVENT_TYPE_PATTERN,
    SEVERITIES,
)
from tenantledger.persistence.guards import TenantContext, ensure_same_tenant, require_context, tenant_session
from tenantledger.persistence.partitions import get_partition_router
from tenantledger.persistence.repos import events as events_repo
from tenantledger.services.alerts import raise_operational_alert


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventPage:
    items: list[ActivityEvent]
    next_offset: int | None


def validate_event(event: ActivityEvent) -> None:
    # Storage-level invariants; ingestion validates earlier, this guards every other writer.
    problems: list[str] = []
    if not event.event_type or not EVENT_TYPE_PATTERN.match(event.event_type):
        problems.append("type must be a namespaced lowercase identifier such as 'invoice.created'")
    if event.category not in EVENT_CATEGORIES:
        problems.append(f"category must be one of {', '.join(EVENT_CATEGORIES)}")
    if event.severity not in SEVERITIES:
        problems.append(f"severity must be one of {', '.join(SEVERITIES)}")
    if event.actor_type is not None and event.actor_type not in ACTOR_TYPES:
        problems.append(f"actor_type must be one of {', '.join(ACTOR_TYPES)}")
    if (event.entity_type is None) != (event.entity_id is None):
        problems.append("entity_type and entity_id must be provided together")
    if (event.parent_entity_type is None) != (event.parent_entity_id is None):
        problems.append("parent_entity_type and parent_entity_id must be provided together")
    for field_name in ("entity_type", "parent_entity_type"):
        value = getattr(event, field_name)
        if value is not None and not ENTITY_TYPE_PATTERN.match(value):
            problems.append(f"{field_name} must be a lowercase identifier")
    if event.occurred_at is None or event.occurred_at.tzinfo is None:
        problems.append("occurred_at must be a timezone-aware timestamp")
    if event.duration_ms is not None and event.duration_ms < 0:
        problems.append("duration_ms must be non-negative")
    if event.archived:
        problems.append("events are appended unarchived")
    if problems:
        raise ValidationError("Invalid activity event", details={"errors": problems})


async def append(session: AsyncSession, event: ActivityEvent) -> str:
    """Route ``event`` to its covering partition and stage it in ``session``.

    The caller commits; a batch staged in one session commits or fails as a whole.
    """
    ctx = require_context(session)
    if event.tenant_id is None:
        event.tenant_id = ctx.tenant_id
    if event.archived is None:
        event.archived = False
    validate_event(event)
    try:
        slot = await get_partition_router().resolve(session, event.occurred_at)
    except NoCoveringPartition as exc:
        raise_operational_alert(
            "no_covering_partition",
            exc.message,
            details={"partition_key": exc.details.get("partition_key")},
        )
        raise
    event.partition_key = slot.key
    if event.created_at is None:
        event.created_at = events_repo.writer_clock.now()
    await events_repo.insert_events(session, [event])
    return event.id


def _resolve_range(occurred_from: datetime | None, occurred_to: datetime | None) -> tuple[datetime, datetime]:
    if occurred_from is None or occurred_to is None:
        raise RangeRequired("Ledger queries require both occurred_from and occurred_to")
    if occurred_from.tzinfo is None or occurred_to.tzinfo is None:
        raise ValidationError("Query bounds must be timezone-aware")
    if occurred_from >= occurred_to:
        raise ValidationError("occurred_from must be earlier than occurred_to")
    max_days = get_settings().ledger_max_query_window_days
    if occurred_to - occurred_from > timedelta(days=max_days):
        raise ValidationError(
            f"Query window exceeds {max_days} days",
            details={"max_query_window_days": max_days},
        )
    return occurred_from.astimezone(timezone.utc), occurred_to.astimezone(timezone.utc)


async def query(
    ctx: TenantContext,
    *,
    occurred_from: datetime | None,
    occurred_to: datetime | None,
    tenant_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event_type: str | None = None,
    category: str | None = None,
    min_severity: str | None = None,
    actor_id: str | None = None,
    include_archived: bool = False,
    offset: int = 0,
    limit: int = 100,
) -> EventPage:
    """Return the caller tenant's events inside ``[occurred_from, occurred_to)``.

    Ordered by occurred_at, then created_at, then id; archived rows are skipped unless
    ``include_archived`` is set.
    """
    start, end = _resolve_range(occurred_from, occurred_to)
    if min_severity is not None and min_severity not in SEVERITIES:
        raise ValidationError(f"min_severity must be one of {', '.join(SEVERITIES)}")
    limit = max(1, min(int(limit), get_settings().ledger_query_max_limit))
    offset = max(0, int(offset))
    async with tenant_session(ctx) as session:
        ensure_same_tenant(ctx, tenant_id, operation="ledger.query")
        rows = await events_repo.list_events(
            session,
            occurred_from=start,
            occurred_to=end,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            category=category,
            min_severity=min_severity,
            actor_id=actor_id,
            include_archived=include_archived,
            offset=offset,
            # Fetch one extra row to compute next_offset without a count query.
            limit=limit + 1,
        )
    next_offset = offset + limit if len(rows) > limit else None
    return EventPage(items=rows[:limit], next_offset=next_offset)


async def count(
    ctx: TenantContext,
    *,
    occurred_from: datetime | None,
    occurred_to: datetime | None,
    event_type: str | None = None,
    include_archived: bool = False,
) -> int:
    start, end = _resolve_range(occurred_from, occurred_to)
    async with tenant_session(ctx) as session:
        return await events_repo.count_events(
            session,
            occurred_from=start,
            occurred_to=end,
            event_type=event_type,
            include_archived=include_archived,
        )


async def get_event(ctx: TenantContext, event_id: str) -> ActivityEvent:
    async with tenant_session(ctx) as session:
        row = await events_repo.get_event(session, event_id)
    if row is None:
        raise NotFoundError("Activity event not found", details={"event_id": event_id})
    return row
