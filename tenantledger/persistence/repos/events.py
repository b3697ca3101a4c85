from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from tenantledger.domain.models import ActivityEvent
from tenantledger.domain.vocab import SEVERITIES, severity_rank
from tenantledger.persistence.guards import require_context
from tenantledger.persistence.partitions import partition_keys_between


class WriterClock:
    # Hands out strictly increasing created_at values within one process.
    def __init__(self) -> None:
        self._last: datetime | None = None

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


writer_clock = WriterClock()


async def insert_events(session: AsyncSession, events: list[ActivityEvent]) -> None:
    require_context(session)
    session.add_all(events)
    await session.flush()


def _filtered(
    stmt: Select,
    *,
    occurred_from: datetime,
    occurred_to: datetime,
    entity_type: str | None,
    entity_id: str | None,
    event_type: str | None,
    category: str | None,
    min_severity: str | None,
    actor_id: str | None,
    include_archived: bool,
) -> Select:
    # Half-open time range keeps adjacent windows from double counting.
    stmt = stmt.where(
        ActivityEvent.partition_key.in_(partition_keys_between(occurred_from, occurred_to)),
        ActivityEvent.occurred_at >= occurred_from,
        ActivityEvent.occurred_at < occurred_to,
    )
    if entity_type:
        stmt = stmt.where(ActivityEvent.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(ActivityEvent.entity_id == entity_id)
    if event_type:
        stmt = stmt.where(ActivityEvent.event_type == event_type)
    if category:
        stmt = stmt.where(ActivityEvent.category == category)
    if min_severity:
        stmt = stmt.where(ActivityEvent.severity.in_(SEVERITIES[severity_rank(min_severity):]))
    if actor_id:
        stmt = stmt.where(ActivityEvent.actor_id == actor_id)
    if not include_archived:
        stmt = stmt.where(ActivityEvent.archived.is_(False))
    return stmt


async def list_events(
    session: AsyncSession,
    *,
    occurred_from: datetime,
    occurred_to: datetime,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event_type: str | None = None,
    category: str | None = None,
    min_severity: str | None = None,
    actor_id: str | None = None,
    include_archived: bool = False,
    offset: int = 0,
    limit: int = 100,
) -> list[ActivityEvent]:
    require_context(session)
    stmt = _filtered(
        select(ActivityEvent),
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        category=category,
        min_severity=min_severity,
        actor_id=actor_id,
        include_archived=include_archived,
    )
    stmt = stmt.order_by(
        ActivityEvent.occurred_at.asc(),
        ActivityEvent.created_at.asc(),
        ActivityEvent.id.asc(),
    )
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_events(
    session: AsyncSession,
    *,
    occurred_from: datetime,
    occurred_to: datetime,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event_type: str | None = None,
    category: str | None = None,
    min_severity: str | None = None,
    actor_id: str | None = None,
    include_archived: bool = False,
) -> int:
    require_context(session)
    stmt = _filtered(
        select(func.count(ActivityEvent.id)),
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        category=category,
        min_severity=min_severity,
        actor_id=actor_id,
        include_archived=include_archived,
    )
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def get_event(session: AsyncSession, event_id: str) -> ActivityEvent | None:
    require_context(session)
    result = await session.execute(select(ActivityEvent).where(ActivityEvent.id == event_id))
    return result.scalar_one_or_none()
