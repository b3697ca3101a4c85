from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
import time

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.config import get_settings
from tenantledger.core.errors import NoCoveringPartition
from tenantledger.domain.models import LedgerPartition
from tenantledger.domain.vocab import (
    EXCEPTIONS_PARTITION_KEY,
    PARTITION_DROPPED,
    PARTITION_KIND_MONTHLY,
    WRITABLE_PARTITION_STATES,
)
from tenantledger.persistence.db import autocommit_connection, dialect_name


logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^(\d{4})_(\d{2})$")
PARENT_TABLE = "activity_events"


def month_start(value: datetime) -> datetime:
    # Truncate to the first instant of the UTC calendar month.
    value = value.astimezone(timezone.utc)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    start = month_start(value)
    index = start.year * 12 + (start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def partition_key_for(value: datetime) -> str:
    start = month_start(value)
    return f"{start.year:04d}_{start.month:02d}"


def month_bounds(key: str) -> tuple[datetime, datetime]:
    match = _KEY_PATTERN.match(key)
    if not match:
        raise ValueError(f"invalid partition key: {key}")
    start = datetime(int(match.group(1)), int(match.group(2)), 1, tzinfo=timezone.utc)
    return start, add_months(start, 1)


@dataclass(frozen=True)
class PartitionSlot:
    key: str
    state: str
    range_start: datetime
    range_end: datetime

    def covers(self, value: datetime) -> bool:
        return self.range_start <= value < self.range_end

    @property
    def writable(self) -> bool:
        return self.state in WRITABLE_PARTITION_STATES


class PartitionRouter:
    """In-memory arena of monthly partitions sorted by range start.

    The catalog table is the source of truth; the arena is refreshed on a miss, on a
    non-writable hit, and after ``ttl_s`` seconds, so concurrent creators never need to
    coordinate with the router.
    """

    def __init__(self, ttl_s: float) -> None:
        self._ttl_s = ttl_s
        self._starts: list[datetime] = []
        self._slots: list[PartitionSlot] = []
        self._loaded_at: float | None = None

    def invalidate(self) -> None:
        self._loaded_at = None

    def _fresh(self) -> bool:
        return self._loaded_at is not None and (time.monotonic() - self._loaded_at) < self._ttl_s

    def _lookup(self, value: datetime) -> PartitionSlot | None:
        index = bisect_right(self._starts, value) - 1
        if index < 0:
            return None
        slot = self._slots[index]
        return slot if slot.covers(value) else None

    async def refresh(self, session: AsyncSession) -> None:
        rows = (
            await session.execute(
                select(LedgerPartition)
                .where(
                    LedgerPartition.kind == PARTITION_KIND_MONTHLY,
                    LedgerPartition.state != PARTITION_DROPPED,
                )
                .order_by(LedgerPartition.range_start.asc())
            )
        ).scalars().all()
        slots = [
            PartitionSlot(key=row.key, state=row.state, range_start=row.range_start, range_end=row.range_end)
            for row in rows
            if row.range_start is not None and row.range_end is not None
        ]
        self._slots = slots
        self._starts = [slot.range_start for slot in slots]
        self._loaded_at = time.monotonic()

    async def resolve(self, session: AsyncSession, occurred_at: datetime) -> PartitionSlot:
        # Resolve the single writable partition covering occurred_at.
        slot = self._lookup(occurred_at) if self._fresh() else None
        if slot is None or not slot.writable:
            await self.refresh(session)
            slot = self._lookup(occurred_at)
        if slot is None:
            raise NoCoveringPartition(
                f"No partition covers occurred_at={occurred_at.isoformat()}",
                details={"partition_key": partition_key_for(occurred_at), "occurred_at": occurred_at.isoformat()},
            )
        if not slot.writable:
            raise NoCoveringPartition(
                f"Partition {slot.key} is {slot.state} and no longer accepts writes",
                details={"partition_key": slot.key, "state": slot.state},
            )
        return slot

    def snapshot(self) -> list[PartitionSlot]:
        return list(self._slots)


_router: PartitionRouter | None = None


def get_partition_router() -> PartitionRouter:
    global _router
    if _router is None:
        _router = PartitionRouter(ttl_s=max(0, int(get_settings().ledger_partition_cache_ttl_s)))
    return _router


def partition_keys_between(start: datetime, end: datetime) -> list[str]:
    # Keys that can hold events of [start, end); lets PostgreSQL prune the LIST partitions.
    keys = [EXCEPTIONS_PARTITION_KEY]
    cursor = month_start(start)
    while cursor < end:
        keys.append(partition_key_for(cursor))
        cursor = add_months(cursor, 1)
    return keys


def physical_table_name(key: str) -> str:
    if key != EXCEPTIONS_PARTITION_KEY and not _KEY_PATTERN.match(key):
        raise ValueError(f"invalid partition key: {key}")
    return f"{PARENT_TABLE}_{key}"


def attach_statements(key: str) -> list[str]:
    """DDL that builds a child as a standalone table and then attaches it to the parent.

    ``PARTITION OF`` would take ACCESS EXCLUSIVE on ``activity_events``; ATTACH only needs
    SHARE UPDATE EXCLUSIVE, which concurrent inserts and reads do not conflict with. The CHECK
    constraint matches the list bound so ATTACH skips its validation scan.
    """
    table = physical_table_name(key)
    # Keys are validated above, so no caller text reaches the DDL.
    literal = f"'{key}'"
    return [
        f"CREATE TABLE IF NOT EXISTS {table} (LIKE {PARENT_TABLE} INCLUDING DEFAULTS INCLUDING CONSTRAINTS)",
        f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {table}_key_check",
        f"ALTER TABLE {table} ADD CONSTRAINT {table}_key_check CHECK (partition_key = {literal})",
        f"ALTER TABLE {PARENT_TABLE} ATTACH PARTITION {table} FOR VALUES IN ({literal})",
    ]


def detach_statement(key: str, *, pending: bool) -> str:
    # FINALIZE completes a concurrent detach that was interrupted after its first transaction.
    mode = "FINALIZE" if pending else "CONCURRENTLY"
    return f"ALTER TABLE {PARENT_TABLE} DETACH PARTITION {physical_table_name(key)} {mode}"


_INHERITANCE_SQL = text(
    "SELECT inhdetachpending FROM pg_inherits "
    "WHERE inhrelid = to_regclass(:child) AND inhparent = to_regclass(:parent)"
)


async def create_physical_partition(session: AsyncSession, key: str) -> bool:
    """Create and attach the child table for ``key`` inside the caller's transaction.

    Returns False when the child is already attached or the dialect has no physical partitions;
    elsewhere the catalog row suffices.
    """
    if dialect_name(session) != "postgresql":
        return False
    table = physical_table_name(key)
    # Concurrent creators of one child serialize here until the caller commits.
    await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:name))"), {"name": table})
    attached = (await session.execute(_INHERITANCE_SQL, {"child": table, "parent": PARENT_TABLE})).first()
    if attached is not None:
        return False
    for statement in attach_statements(key):
        await session.execute(text(statement))
    logger.info("physical_partition_attached key=%s", key)
    return True


async def create_exceptions_partition(session: AsyncSession) -> bool:
    # Rows of dropped months that must be retained live in the 'exceptions' list child.
    return await create_physical_partition(session, EXCEPTIONS_PARTITION_KEY)


async def drop_physical_partition(session: AsyncSession, key: str) -> bool:
    """Detach a month concurrently and drop its table.

    Exempt rows must already have been moved to the exceptions partition and committed; whatever
    is left in the month goes away with its table. Returns False on dialects without physical
    partitions, where the caller deletes the rows instead.
    """
    if dialect_name(session) != "postgresql":
        return False
    if key == EXCEPTIONS_PARTITION_KEY:
        raise ValueError("the exceptions partition is never dropped")
    table = physical_table_name(key)
    # DETACH ... CONCURRENTLY refuses to run inside a transaction block.
    async with autocommit_connection() as conn:
        row = (await conn.execute(_INHERITANCE_SQL, {"child": table, "parent": PARENT_TABLE})).first()
        if row is not None:
            await conn.execute(text(detach_statement(key, pending=bool(row[0]))))
        await conn.execute(text(f"DROP TABLE IF EXISTS {table}"))
    logger.info("physical_partition_dropped key=%s", key)
    return True
