from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete, extract, func, select
from sqlalchemy.exc import SQLAlchemyError

from tenantledger.core.config import get_settings
from tenantledger.core.errors import LedgerError, RangeRequired, ValidationError
from tenantledger.domain.models import ActivityEvent, ActivityRollup, utc_now
from tenantledger.persistence.db import dialect_name
from tenantledger.persistence.guards import TenantContext, system_context, tenant_session
from tenantledger.persistence.partitions import partition_keys_between
from tenantledger.services.lifecycle import record_run
from tenantledger.services.tenants import list_active_tenant_ids


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypeHourCount:
    event_type: str
    hour: int
    count: int


@dataclass(frozen=True)
class ActorStats:
    # actor_id is None for events recorded without an actor.
    actor_id: str | None
    count: int
    avg_duration_ms: float | None


@dataclass(frozen=True)
class ActivitySummary:
    tenant_id: str
    window_start: datetime
    window_end: datetime
    total_count: int
    avg_duration_ms: float | None
    # Hour of day (UTC) with the most events; earliest hour wins ties.
    peak_hour: int | None
    by_type_hour: list[TypeHourCount]
    by_actor: list[ActorStats]

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["window_start"] = self.window_start.isoformat()
        data["window_end"] = self.window_end.isoformat()
        return data


def _float_or_none(value: Any) -> float | None:
    return None if value is None else round(float(value), 3)


def peak_hour(by_type_hour: list[TypeHourCount]) -> int | None:
    totals: dict[int, int] = {}
    for bucket in by_type_hour:
        totals[bucket.hour] = totals.get(bucket.hour, 0) + bucket.count
    if not totals:
        return None
    return min(totals, key=lambda hour: (-totals[hour], hour))


async def compute_rollup(ctx: TenantContext, *, start: datetime | None, end: datetime | None) -> ActivitySummary:
    """Aggregate the tenant's events in ``[start, end)``.

    Plain SELECTs over committed rows; ingestion is never blocked.
    """
    if start is None or end is None:
        raise RangeRequired("Rollups require both start and end")
    if start.tzinfo is None or end.tzinfo is None or start >= end:
        raise ValidationError("Rollup window must be timezone-aware with start before end")
    max_days = get_settings().ledger_max_query_window_days
    if end - start > timedelta(days=max_days):
        raise ValidationError(
            f"Rollup window exceeds {max_days} days",
            details={"max_query_window_days": max_days},
        )
    window = (
        ActivityEvent.partition_key.in_(partition_keys_between(start, end)),
        ActivityEvent.occurred_at >= start,
        ActivityEvent.occurred_at < end,
        ActivityEvent.archived.is_(False),
    )
    async with tenant_session(ctx) as session:
        occurred = ActivityEvent.occurred_at
        if dialect_name(session) == "postgresql":
            # Hour buckets are UTC regardless of the server TimeZone setting.
            occurred = func.timezone("UTC", occurred)
        hour = extract("hour", occurred)
        type_rows = (
            await session.execute(
                select(ActivityEvent.event_type, hour.label("hour"), func.count(ActivityEvent.id))
                .where(*window)
                .group_by(ActivityEvent.event_type, hour)
                .order_by(ActivityEvent.event_type.asc(), hour.asc())
            )
        ).all()
        actor_rows = (
            await session.execute(
                select(ActivityEvent.actor_id, func.count(ActivityEvent.id), func.avg(ActivityEvent.duration_ms))
                .where(*window)
                .group_by(ActivityEvent.actor_id)
                .order_by(func.count(ActivityEvent.id).desc(), ActivityEvent.actor_id.asc())
            )
        ).all()
        total_count, avg_duration = (
            await session.execute(
                select(func.count(ActivityEvent.id), func.avg(ActivityEvent.duration_ms)).where(*window)
            )
        ).one()
    by_type_hour = [
        TypeHourCount(event_type=str(event_type), hour=int(bucket_hour), count=int(count))
        for event_type, bucket_hour, count in type_rows
    ]
    by_actor = [
        ActorStats(actor_id=actor_id, count=int(count), avg_duration_ms=_float_or_none(avg))
        for actor_id, count, avg in actor_rows
    ]
    return ActivitySummary(
        tenant_id=ctx.tenant_id,
        window_start=start.astimezone(timezone.utc),
        window_end=end.astimezone(timezone.utc),
        total_count=int(total_count or 0),
        avg_duration_ms=_float_or_none(avg_duration),
        peak_hour=peak_hour(by_type_hour),
        by_type_hour=by_type_hour,
        by_actor=by_actor,
    )


async def store_rollup(ctx: TenantContext, summary: ActivitySummary) -> int:
    # Recomputing a window replaces its previous rows.
    now = utc_now()
    rows = [
        ActivityRollup(
            tenant_id=ctx.tenant_id,
            window_start=summary.window_start,
            window_end=summary.window_end,
            dimension="summary",
            event_count=summary.total_count,
            avg_duration_ms=summary.avg_duration_ms,
            hour=summary.peak_hour,
            summary_json=summary.as_dict(),
            computed_at=now,
        )
    ]
    rows.extend(
        ActivityRollup(
            tenant_id=ctx.tenant_id,
            window_start=summary.window_start,
            window_end=summary.window_end,
            dimension="type_hour",
            event_type=bucket.event_type,
            hour=bucket.hour,
            event_count=bucket.count,
            computed_at=now,
        )
        for bucket in summary.by_type_hour
    )
    rows.extend(
        ActivityRollup(
            tenant_id=ctx.tenant_id,
            window_start=summary.window_start,
            window_end=summary.window_end,
            dimension="actor",
            actor_id=actor.actor_id,
            event_count=actor.count,
            avg_duration_ms=actor.avg_duration_ms,
            computed_at=now,
        )
        for actor in summary.by_actor
    )
    async with tenant_session(ctx) as session:
        await session.execute(
            delete(ActivityRollup)
            .where(
                ActivityRollup.window_start == summary.window_start,
                ActivityRollup.window_end == summary.window_end,
            )
            .execution_options(synchronize_session=False)
        )
        session.add_all(rows)
        await session.commit()
    return len(rows)


async def get_stored_rollup(ctx: TenantContext, *, start: datetime, end: datetime) -> dict[str, Any] | None:
    async with tenant_session(ctx) as session:
        row = (
            await session.execute(
                select(ActivityRollup).where(
                    ActivityRollup.dimension == "summary",
                    ActivityRollup.window_start == start,
                    ActivityRollup.window_end == end,
                )
            )
        ).scalar_one_or_none()
    return None if row is None else dict(row.summary_json or {})


def previous_window(now: datetime, hours: int) -> tuple[datetime, datetime]:
    # Window ending at the most recent full hour.
    end = now.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return end - timedelta(hours=max(1, hours)), end


async def run_rollups(*, now: datetime | None = None) -> dict[str, Any]:
    """Scheduled pass: roll up the previous window for every active tenant."""
    started_at = utc_now()
    start, end = previous_window(now or started_at, get_settings().rollup_window_hours)
    computed: dict[str, int] = {}
    failures: dict[str, str] = {}
    for tenant_id in await list_active_tenant_ids():
        ctx = system_context(tenant_id)
        try:
            summary = await compute_rollup(ctx, start=start, end=end)
            await store_rollup(ctx, summary)
        except (LedgerError, SQLAlchemyError) as exc:
            failures[tenant_id] = exc.__class__.__name__
            logger.error("activity_rollup_failed tenant_id=%s", tenant_id, exc_info=exc)
            continue
        computed[tenant_id] = summary.total_count
    details = {
        "window_start": start.isoformat(),
        "window_end": end.isoformat(),
        "computed": computed,
        "failures": failures,
    }
    await record_run("activity_rollups", started_at=started_at, outcome="failed" if failures else "succeeded", details=details)
    logger.info("activity_rollups_run tenants=%s failures=%s", len(computed), len(failures))
    return details
