"""Partition lifecycle manager.

Moves monthly partitions through planned -> active -> archived -> dropped. Every transition is
idempotent so a crashed or repeated run converges on the same catalog. Work that touches rows
is batched and commits per batch; exempt rows (error/critical severities, tenants under legal
hold) are moved to the long-lived exceptions partition before a month is dropped. On PostgreSQL
the emptied month is detached concurrently and its table dropped, so ledger writes never queue
behind a drop.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Awaitable, Callable, Literal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.config import get_settings
from tenantledger.core.errors import NotFoundError, ValidationError
from tenantledger.domain.models import ActivityEvent, LedgerPartition, LifecycleRun, utc_now
from tenantledger.domain.vocab import (
    EXCEPTIONS_PARTITION_KEY,
    PARTITION_ACTIVE,
    PARTITION_ARCHIVED,
    PARTITION_DROPPED,
    PARTITION_KIND_EXCEPTIONS,
    PARTITION_KIND_MONTHLY,
    PARTITION_PLANNED,
    WRITABLE_PARTITION_STATES,
)
from tenantledger.persistence.guards import system_session
from tenantledger.persistence.partitions import (
    add_months,
    create_exceptions_partition,
    create_physical_partition,
    drop_physical_partition,
    get_partition_router,
    month_bounds,
    month_start,
    partition_key_for,
)
from tenantledger.persistence.repos.partitions import (
    get_partition,
    insert_partition_if_absent,
    list_partitions,
    record_transition_failure,
)
from tenantledger.services import alerts
from tenantledger.services.legal_holds import held_tenant_ids


logger = logging.getLogger(__name__)

LifecycleTask = Literal["partition_lifecycle", "activity_rollups"]


@dataclass
class LifecycleReport:
    created: list[str] = field(default_factory=list)
    activated: list[str] = field(default_factory=list)
    # Partition key -> rows flagged archived in this run.
    archived: dict[str, int] = field(default_factory=dict)
    # Partition key -> rows moved to the exceptions partition before the drop.
    dropped: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


def exempt_severities() -> list[str]:
    raw = get_settings().ledger_drop_exempt_severities
    return [item.strip() for item in raw.split(",") if item.strip()]


async def ensure_exceptions_partition() -> bool:
    async with system_session("partition_exceptions") as session:
        await create_exceptions_partition(session)
        created = await insert_partition_if_absent(
            session,
            key=EXCEPTIONS_PARTITION_KEY,
            kind=PARTITION_KIND_EXCEPTIONS,
            state=PARTITION_ACTIVE,
            range_start=None,
            range_end=None,
        )
        await session.commit()
    return created


async def ensure_partition(month: datetime, *, now: datetime | None = None) -> bool:
    """Create the monthly partition containing ``month`` if it does not exist.

    Returns True only for the caller whose insert created the catalog row; a dropped month is
    never recreated.
    """
    now = now or utc_now()
    key = partition_key_for(month)
    start, end = month_bounds(key)
    async with system_session("partition_ensure") as session:
        existing = await get_partition(session, key)
        if existing is not None:
            return False
        # Physical storage first so the router never sees a catalog row without a table.
        await create_physical_partition(session, key)
        created = await insert_partition_if_absent(
            session,
            key=key,
            kind=PARTITION_KIND_MONTHLY,
            state=PARTITION_ACTIVE if start <= now else PARTITION_PLANNED,
            range_start=start,
            range_end=end,
        )
        await session.commit()
    if created:
        get_partition_router().invalidate()
        logger.info("partition_created key=%s", key)
    return created


async def ensure_future_partitions(
    count: int | None = None,
    *,
    through: datetime | None = None,
    now: datetime | None = None,
) -> list[str]:
    # Current month plus ``count`` months ahead, extended to cover ``through`` when given.
    now = now or utc_now()
    count = get_settings().ledger_future_partitions if count is None else max(0, int(count))
    last = add_months(now, count)
    if through is not None and month_start(through) > last:
        last = month_start(through)
    created: list[str] = []
    month = month_start(now)
    while month <= last:
        if await ensure_partition(month, now=now):
            created.append(partition_key_for(month))
        month = add_months(month, 1)
    return created


async def activate_due_partitions(*, now: datetime | None = None) -> list[str]:
    now = now or utc_now()
    async with system_session("partition_activate") as session:
        rows = (
            await session.execute(
                select(LedgerPartition).where(
                    LedgerPartition.kind == PARTITION_KIND_MONTHLY,
                    LedgerPartition.state == PARTITION_PLANNED,
                    LedgerPartition.range_start <= now,
                )
            )
        ).scalars().all()
        for row in rows:
            row.state = PARTITION_ACTIVE
            row.activated_at = now
        await session.commit()
    keys = [row.key for row in rows]
    if keys:
        get_partition_router().invalidate()
        logger.info("partitions_activated keys=%s", ",".join(keys))
    return keys


async def _archive_rows(session: AsyncSession, key: str, archived_at: datetime) -> int:
    batch = max(1, int(get_settings().ledger_archive_batch_size))
    total = 0
    while True:
        ids = (
            select(ActivityEvent.id)
            .where(ActivityEvent.partition_key == key, ActivityEvent.archived.is_(False))
            .limit(batch)
        )
        result = await session.execute(
            update(ActivityEvent)
            .where(ActivityEvent.partition_key == key, ActivityEvent.id.in_(ids))
            .values(archived=True, archived_at=archived_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        changed = int(result.rowcount or 0)
        total += changed
        if changed < batch:
            return total


async def _migrate_exempt_rows(session: AsyncSession, key: str, severities: list[str], tenants: list[str]) -> int:
    if not severities and not tenants:
        return 0
    batch = max(1, int(get_settings().ledger_archive_batch_size))
    exempt = or_(ActivityEvent.severity.in_(severities), ActivityEvent.tenant_id.in_(tenants))
    total = 0
    while True:
        ids = select(ActivityEvent.id).where(ActivityEvent.partition_key == key, exempt).limit(batch)
        result = await session.execute(
            update(ActivityEvent)
            .where(ActivityEvent.partition_key == key, ActivityEvent.id.in_(ids))
            .values(partition_key=EXCEPTIONS_PARTITION_KEY)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        changed = int(result.rowcount or 0)
        total += changed
        if changed < batch:
            return total


async def _delete_rows(session: AsyncSession, key: str) -> int:
    batch = max(1, int(get_settings().ledger_archive_batch_size))
    total = 0
    while True:
        ids = select(ActivityEvent.id).where(ActivityEvent.partition_key == key).limit(batch)
        result = await session.execute(
            delete(ActivityEvent)
            .where(ActivityEvent.partition_key == key, ActivityEvent.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        changed = int(result.rowcount or 0)
        total += changed
        if changed < batch:
            return total


async def _load_monthly(session: AsyncSession, key: str) -> LedgerPartition:
    row = await get_partition(session, key)
    if row is None:
        raise NotFoundError("Partition not found", details={"partition_key": key})
    if row.kind != PARTITION_KIND_MONTHLY:
        raise ValidationError("The exceptions partition is never archived or dropped", details={"partition_key": key})
    return row


async def archive_partition(key: str, *, now: datetime | None = None) -> int:
    """Stop writes to ``key`` and flag its rows archived; returns rows flagged by this call.

    Re-running on an archived partition only sweeps rows that were still unflagged.
    """
    now = now or utc_now()
    async with system_session("partition_archive") as session:
        row = await _load_monthly(session, key)
        if row.state == PARTITION_DROPPED:
            raise ValidationError("Partition already dropped", details={"partition_key": key})
        if row.state in WRITABLE_PARTITION_STATES:
            if row.range_end is not None and row.range_end > now:
                raise ValidationError(
                    "Partition range has not elapsed",
                    details={"partition_key": key, "range_end": row.range_end.isoformat()},
                )
            row.state = PARTITION_ARCHIVED
            row.archived_at = now
            row.failure_count = 0
            row.last_error = None
            await session.commit()
            # Writers must stop routing here before rows are flagged.
            get_partition_router().invalidate()
            logger.info("partition_archived key=%s", key)
        archived = await _archive_rows(session, key, row.archived_at or now)
    return archived


async def drop_partition(key: str, *, now: datetime | None = None) -> int:
    """Drop an archived month; returns the rows preserved in the exceptions partition."""
    now = now or utc_now()
    async with system_session("partition_drop") as session:
        row = await _load_monthly(session, key)
        if row.state == PARTITION_DROPPED:
            return 0
        if row.state != PARTITION_ARCHIVED:
            raise ValidationError("Only archived partitions can be dropped", details={"partition_key": key})
        # Late writes that slipped past a stale router are archived before anything moves.
        await _archive_rows(session, key, row.archived_at or now)
        severities = exempt_severities()
        held = await held_tenant_ids(session, now=now)
        migrated = await _migrate_exempt_rows(session, key, severities, held)
        # Nothing may stay open on the month while it is detached.
        await session.commit()
        if not await drop_physical_partition(session, key):
            await _delete_rows(session, key)
        row.state = PARTITION_DROPPED
        row.dropped_at = now
        row.failure_count = 0
        row.last_error = None
        await session.commit()
    get_partition_router().invalidate()
    logger.info("partition_dropped key=%s migrated=%s held_tenants=%s", key, migrated, len(held))
    return migrated


async def list_partition_catalog(*, include_dropped: bool = True) -> list[LedgerPartition]:
    async with system_session("partition_catalog") as session:
        rows = await list_partitions(session)
    if include_dropped:
        return rows
    return [row for row in rows if row.state != PARTITION_DROPPED]


async def _record_failure(report: LifecycleReport, key: str, action: str, exc: Exception) -> None:
    report.failures[key] = f"{action}: {exc.__class__.__name__}"
    logger.error("partition_transition_failed key=%s action=%s", key, action, exc_info=exc)
    async with system_session("partition_failure") as session:
        count = await record_transition_failure(session, key, f"{action}: {exc}")
    threshold = max(1, int(get_settings().lifecycle_alert_failure_threshold))
    if count >= threshold:
        alerts.raise_operational_alert(
            "partition_transition_failed",
            f"Partition {key} failed to {action} {count} times in a row",
            details={"partition_key": key, "action": action, "failure_count": count},
        )


async def _transition(
    report: LifecycleReport,
    key: str,
    action: str,
    fn: Callable[..., Awaitable[int]],
    now: datetime,
) -> int | None:
    try:
        return await fn(key, now=now)
    except SQLAlchemyError as exc:
        await _record_failure(report, key, action, exc)
        return None


async def record_run(task: LifecycleTask, *, started_at: datetime, outcome: str, details: dict) -> None:
    async with system_session("lifecycle_run") as session:
        session.add(
            LifecycleRun(
                task=task,
                started_at=started_at,
                finished_at=utc_now(),
                outcome=outcome,
                details_json=details,
            )
        )
        await session.commit()


async def run_lifecycle(*, now: datetime | None = None) -> LifecycleReport:
    """One scheduled pass: create ahead, activate, archive, drop. Safe to repeat."""
    settings = get_settings()
    now = now or utc_now()
    started_at = utc_now()
    report = LifecycleReport()

    try:
        await ensure_exceptions_partition()
        report.created = await ensure_future_partitions(now=now)
    except SQLAlchemyError as exc:
        report.failures["ensure_future_partitions"] = exc.__class__.__name__
        logger.error("partition_create_failed", exc_info=exc)
        alerts.raise_operational_alert(
            "partition_create_failed",
            "Future partitions could not be created; writes will fail once the current month ends",
            details={"month": partition_key_for(now)},
        )
    report.activated = await activate_due_partitions(now=now)

    hot_cutoff = now - timedelta(days=settings.ledger_hot_retention_days)
    drop_cutoff = now - timedelta(days=settings.ledger_max_retention_days)
    async with system_session("partition_catalog") as session:
        partitions = await list_partitions(
            session,
            states=(PARTITION_PLANNED, PARTITION_ACTIVE, PARTITION_ARCHIVED),
            include_exceptions=False,
        )

    for partition in partitions:
        if partition.range_end is None or partition.range_end > hot_cutoff:
            continue
        archived = await _transition(report, partition.key, "archive", archive_partition, now)
        if archived:
            report.archived[partition.key] = archived
        if archived is None or partition.range_end > drop_cutoff:
            continue
        migrated = await _transition(report, partition.key, "drop", drop_partition, now)
        if migrated is not None:
            report.dropped[partition.key] = migrated

    outcome = "failed" if report.failures else "succeeded"
    await record_run("partition_lifecycle", started_at=started_at, outcome=outcome, details=report.as_dict())
    logger.info(
        "partition_lifecycle_run created=%s activated=%s archived=%s dropped=%s failures=%s",
        len(report.created),
        len(report.activated),
        len(report.archived),
        len(report.dropped),
        len(report.failures),
    )
    return report
