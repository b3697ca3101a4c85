from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from tenantledger.core.errors import NoCoveringPartition, RangeRequired, ValidationError
from tenantledger.domain.models import ActivityEvent, utc_now
from tenantledger.persistence.guards import TenantContext, system_session
from tenantledger.services import ledger
from tenantledger.services.ingestion import record, record_many
from tenantledger.services.lifecycle import ensure_future_partitions
from tenantledger.services.tenants import deactivate_tenant
from tenantledger.tests.utils.ledger import new_tenant_id, provision_tenant, utc


@pytest.mark.asyncio
async def test_ingested_event_is_returned_by_entity_query() -> None:
    occurred_at = utc(2025, 1, 15, 10, 0, 0, 123456)
    tenant_a = await provision_tenant(months=(occurred_at,))
    payload = {"priority": "high", "assignee": {"id": "tech-3"}, "lines": [1, 2, 3]}

    event_id = await record(
        tenant_a,
        {
            "type": "work_order.created",
            "entity_type": "work_order",
            "entity_id": "wo-77",
            "occurred_at": "2025-01-15T10:00:00.123456Z",
            "payload": payload,
            "duration_ms": 12,
        },
    )

    page = await ledger.query(
        tenant_a,
        entity_type="work_order",
        entity_id="wo-77",
        occurred_from=utc(2025, 1, 1),
        occurred_to=utc(2025, 2, 1),
    )
    assert [item.id for item in page.items] == [event_id]
    event = page.items[0]
    assert event.payload == payload
    assert event.occurred_at == occurred_at
    assert event.partition_key == "2025_01"
    assert event.tenant_id == tenant_a.tenant_id
    assert event.actor_id == "user-1"
    assert event.archived is False
    assert event.archived_at is None


@pytest.mark.asyncio
async def test_future_event_needs_a_partition_first(monkeypatch: pytest.MonkeyPatch) -> None:
    raised: list[str] = []
    monkeypatch.setattr(ledger, "raise_operational_alert", lambda kind, message, details=None: raised.append(kind))
    tenant_a = await provision_tenant()
    occurred_at = utc_now() + timedelta(days=365)
    draft = {"type": "contract.renewal_due", "occurred_at": occurred_at}

    with pytest.raises(NoCoveringPartition):
        await record(tenant_a, draft)
    assert raised == ["no_covering_partition"]

    await ensure_future_partitions(through=occurred_at)
    event_id = await record(tenant_a, draft)
    stored = await ledger.get_event(tenant_a, event_id)
    assert stored.occurred_at == occurred_at


@pytest.mark.asyncio
async def test_query_orders_by_occurrence_then_write_order() -> None:
    tenant_a = await provision_tenant()
    base = utc_now().replace(microsecond=0) - timedelta(minutes=30)
    later = await record(tenant_a, {"type": "invoice.sent", "occurred_at": base + timedelta(minutes=5)})
    first = await record(tenant_a, {"type": "invoice.created", "occurred_at": base})
    tie_one = await record(tenant_a, {"type": "invoice.viewed", "occurred_at": base + timedelta(minutes=1)})
    tie_two = await record(tenant_a, {"type": "invoice.viewed", "occurred_at": base + timedelta(minutes=1)})

    page = await ledger.query(tenant_a, occurred_from=base, occurred_to=base + timedelta(hours=1))
    assert [item.id for item in page.items] == [first, tie_one, tie_two, later]
    created = [item.created_at for item in page.items if item.id in (tie_one, tie_two)]
    assert created[0] < created[1]


@pytest.mark.asyncio
async def test_query_pagination_and_filters() -> None:
    tenant_a = await provision_tenant()
    base = utc_now() - timedelta(minutes=10)
    for index in range(5):
        await record(
            tenant_a,
            {
                "type": "sensor.reading",
                "severity": "error" if index % 2 else "info",
                "occurred_at": base + timedelta(seconds=index),
                "payload": {"index": index},
            },
        )
    window = {"occurred_from": base, "occurred_to": base + timedelta(minutes=1)}

    first = await ledger.query(tenant_a, limit=2, **window)
    assert [item.payload["index"] for item in first.items] == [0, 1]
    assert first.next_offset == 2
    last = await ledger.query(tenant_a, offset=4, limit=2, **window)
    assert [item.payload["index"] for item in last.items] == [4]
    assert last.next_offset is None

    severe = await ledger.query(tenant_a, min_severity="warning", **window)
    assert [item.payload["index"] for item in severe.items] == [1, 3]
    assert await ledger.count(tenant_a, **window) == 5


@pytest.mark.asyncio
async def test_queries_must_be_bounded() -> None:
    tenant_a = await provision_tenant()
    now = utc_now()
    with pytest.raises(RangeRequired):
        await ledger.query(tenant_a, occurred_from=now - timedelta(days=1), occurred_to=None)
    with pytest.raises(RangeRequired):
        await ledger.query(tenant_a, occurred_from=None, occurred_to=now)
    with pytest.raises(ValidationError):
        await ledger.query(tenant_a, occurred_from=now, occurred_to=now - timedelta(days=1))
    with pytest.raises(ValidationError):
        await ledger.query(tenant_a, occurred_from=now - timedelta(days=500), occurred_to=now)
    with pytest.raises(ValidationError):
        await ledger.query(tenant_a, occurred_from=now.replace(tzinfo=None), occurred_to=now)


@pytest.mark.asyncio
async def test_batch_ingestion_is_all_or_nothing() -> None:
    tenant_a = await provision_tenant()
    now = utc_now()
    drafts = [
        {"type": "import.row_loaded", "occurred_at": now},
        {"type": "import.row_loaded", "occurred_at": now + timedelta(days=3650)},
    ]
    with pytest.raises(NoCoveringPartition):
        await record_many(tenant_a, drafts)

    async with system_session("test_inspection") as session:
        rows = (await session.execute(select(ActivityEvent.id))).scalars().all()
    assert rows == []

    ids = await record_many(tenant_a, drafts[:1] * 3)
    assert len(set(ids)) == 3


@pytest.mark.asyncio
async def test_unknown_and_inactive_tenants_cannot_write() -> None:
    tenant_a = await provision_tenant()
    ghost = TenantContext(tenant_id=new_tenant_id("ghost"))
    with pytest.raises(ValidationError):
        await record(ghost, {"type": "invoice.created"})

    await deactivate_tenant(tenant_a.tenant_id)
    with pytest.raises(ValidationError):
        await record(tenant_a, {"type": "invoice.created"})
