from __future__ import annotations

import pytest

from tenantledger.core.errors import RangeRequired, ValidationError
from tenantledger.services.analytics import (
    ActorStats,
    TypeHourCount,
    compute_rollup,
    get_stored_rollup,
    run_rollups,
    store_rollup,
)
from tenantledger.services.ingestion import record
from tenantledger.services.lifecycle import archive_partition
from tenantledger.services.tenants import deactivate_tenant
from tenantledger.tests.utils.ledger import provision_tenant, utc


JANUARY = utc(2025, 1, 1)
FEBRUARY = utc(2025, 2, 1)
DAY = {"start": utc(2025, 1, 15), "end": utc(2025, 1, 16)}


async def _seed(ctx) -> None:
    await record(ctx, {"type": "invoice.created", "actor_id": "alice", "duration_ms": 100, "occurred_at": utc(2025, 1, 15, 9, 10)})
    await record(ctx, {"type": "invoice.created", "actor_id": "alice", "duration_ms": 300, "occurred_at": utc(2025, 1, 15, 9, 40)})
    await record(ctx, {"type": "invoice.paid", "actor_id": "bob", "occurred_at": utc(2025, 1, 15, 14, 0)})
    await record(ctx, {"type": "invoice.paid", "actor_id": "bob", "occurred_at": utc(2025, 1, 16, 0, 0)})


@pytest.mark.asyncio
async def test_rollup_aggregates_the_window() -> None:
    tenant_a = await provision_tenant(months=(JANUARY,))
    tenant_b = await provision_tenant()
    await _seed(tenant_a)
    await record(tenant_b, {"type": "invoice.created", "actor_id": "carol", "occurred_at": utc(2025, 1, 15, 9, 0)})

    summary = await compute_rollup(tenant_a, **DAY)
    assert summary.tenant_id == tenant_a.tenant_id
    assert summary.total_count == 3
    assert summary.avg_duration_ms == 200.0
    assert summary.peak_hour == 9
    assert summary.by_type_hour == [
        TypeHourCount(event_type="invoice.created", hour=9, count=2),
        TypeHourCount(event_type="invoice.paid", hour=14, count=1),
    ]
    assert summary.by_actor == [
        ActorStats(actor_id="alice", count=2, avg_duration_ms=200.0),
        ActorStats(actor_id="bob", count=1, avg_duration_ms=None),
    ]

    other = await compute_rollup(tenant_b, **DAY)
    assert other.total_count == 1
    assert other.by_actor == [ActorStats(actor_id="carol", count=1, avg_duration_ms=None)]


@pytest.mark.asyncio
async def test_empty_window_and_bounds() -> None:
    tenant_a = await provision_tenant(months=(JANUARY,))
    summary = await compute_rollup(tenant_a, **DAY)
    assert summary.total_count == 0
    assert summary.avg_duration_ms is None
    assert summary.peak_hour is None
    assert summary.by_type_hour == []

    with pytest.raises(RangeRequired):
        await compute_rollup(tenant_a, start=None, end=DAY["end"])
    with pytest.raises(ValidationError):
        await compute_rollup(tenant_a, start=DAY["end"], end=DAY["start"])
    with pytest.raises(ValidationError) as exc_info:
        await compute_rollup(tenant_a, start=utc(2024, 1, 1), end=utc(2025, 2, 5))
    assert exc_info.value.details == {"max_query_window_days": 400}
    # Exactly the maximum width is still accepted.
    assert (await compute_rollup(tenant_a, start=utc(2024, 1, 1), end=utc(2025, 2, 4))).total_count == 0


@pytest.mark.asyncio
async def test_rollups_skip_archived_events() -> None:
    tenant_a = await provision_tenant(months=(JANUARY, FEBRUARY))
    await _seed(tenant_a)
    await record(tenant_a, {"type": "invoice.paid", "actor_id": "bob", "occurred_at": utc(2025, 2, 3, 11, 0)})
    window = {"start": utc(2025, 1, 15), "end": utc(2025, 2, 15)}
    assert (await compute_rollup(tenant_a, **window)).total_count == 5

    assert await archive_partition("2025_01") == 4
    summary = await compute_rollup(tenant_a, **window)
    assert summary.total_count == 1
    assert summary.by_type_hour == [TypeHourCount(event_type="invoice.paid", hour=11, count=1)]
    assert summary.by_actor == [ActorStats(actor_id="bob", count=1, avg_duration_ms=None)]
    assert (await compute_rollup(tenant_a, **DAY)).total_count == 0

@pytest.mark.asyncio
async def test_stored_rollups_replace_previous_rows() -> None:
    tenant_a = await provision_tenant(months=(JANUARY,))
    tenant_b = await provision_tenant()
    await _seed(tenant_a)

    summary = await compute_rollup(tenant_a, **DAY)
    # One summary row, two type/hour buckets and two actors.
    assert await store_rollup(tenant_a, summary) == 5
    assert await store_rollup(tenant_b, await compute_rollup(tenant_b, **DAY)) == 1
    assert await store_rollup(tenant_a, summary) == 5

    stored = await get_stored_rollup(tenant_a, **DAY)
    assert stored is not None
    assert stored["total_count"] == 3
    assert stored["peak_hour"] == 9
    assert stored["window_start"] == "2025-01-15T00:00:00+00:00"
    assert (await get_stored_rollup(tenant_b, **DAY))["total_count"] == 0
    assert await get_stored_rollup(tenant_a, start=utc(2025, 1, 14), end=utc(2025, 1, 15)) is None


@pytest.mark.asyncio
async def test_scheduled_rollups_cover_active_tenants() -> None:
    tenant_a = await provision_tenant(months=(JANUARY,))
    tenant_b = await provision_tenant()
    await _seed(tenant_a)
    await deactivate_tenant(tenant_b.tenant_id)

    details = await run_rollups(now=utc(2025, 1, 15, 10, 30))
    assert details["window_start"] == "2025-01-14T10:00:00+00:00"
    assert details["window_end"] == "2025-01-15T10:00:00+00:00"
    assert details["computed"] == {tenant_a.tenant_id: 2}
    assert details["failures"] == {}

    stored = await get_stored_rollup(tenant_a, start=utc(2025, 1, 14, 10), end=utc(2025, 1, 15, 10))
    assert stored["total_count"] == 2
