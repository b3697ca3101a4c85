from __future__ import annotations

from datetime import datetime

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.domain.models import LedgerPartition, utc_now
from tenantledger.domain.vocab import PARTITION_KIND_MONTHLY
from tenantledger.persistence.db import dialect_name


async def insert_partition_if_absent(
    session: AsyncSession,
    *,
    key: str,
    kind: str,
    state: str,
    range_start: datetime | None,
    range_end: datetime | None,
) -> bool:
    # "Create if absent": concurrent creators race harmlessly and only one row survives.
    now = utc_now()
    values = {
        "key": key,
        "kind": kind,
        "state": state,
        "range_start": range_start,
        "range_end": range_end,
        "created_at": now,
        "activated_at": now if state == "active" else None,
        "failure_count": 0,
        "updated_at": now,
    }
    table = LedgerPartition.__table__
    dialect = dialect_name(session)
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["key"])
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=["key"])
    else:
        try:
            async with session.begin_nested():
                await session.execute(insert(table).values(**values))
        except IntegrityError:
            return False
        return True
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def get_partition(session: AsyncSession, key: str) -> LedgerPartition | None:
    return await session.get(LedgerPartition, key)


async def list_partitions(
    session: AsyncSession,
    *,
    states: tuple[str, ...] | None = None,
    include_exceptions: bool = True,
) -> list[LedgerPartition]:
    stmt = select(LedgerPartition)
    if states:
        stmt = stmt.where(LedgerPartition.state.in_(states))
    if not include_exceptions:
        stmt = stmt.where(LedgerPartition.kind == PARTITION_KIND_MONTHLY)
    # Monthly partitions in range order; the unbounded exceptions partition sorts last.
    stmt = stmt.order_by(LedgerPartition.range_start.is_(None), LedgerPartition.range_start.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_transition_failure(session: AsyncSession, key: str, error: str) -> int:
    # Count consecutive failures so the manager can escalate past a threshold.
    row = await session.get(LedgerPartition, key)
    if row is None:
        return 0
    row.failure_count = int(row.failure_count or 0) + 1
    row.last_error = error[:2000]
    await session.commit()
    return row.failure_count
