from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tenantledger.core.errors import NoCoveringPartition, ValidationError
from tenantledger.domain.models import LedgerPartition, LifecycleRun, utc_now
from tenantledger.persistence.guards import system_session
from tenantledger.persistence.partitions import add_months, partition_key_for
from tenantledger.services import ledger, lifecycle
from tenantledger.services.ingestion import record
from tenantledger.services.legal_holds import place_legal_hold, release_legal_hold
from tenantledger.services.lifecycle import (
    activate_due_partitions,
    archive_partition,
    drop_partition,
    ensure_exceptions_partition,
    ensure_future_partitions,
    ensure_partition,
    list_partition_catalog,
    run_lifecycle,
)
from tenantledger.tests.utils.ledger import provision_tenant, utc


async def _catalog() -> dict[str, LedgerPartition]:
    return {row.key: row for row in await list_partition_catalog()}


@pytest.mark.asyncio
async def test_partition_creation_is_idempotent() -> None:
    now = utc(2030, 1, 15)
    created = await ensure_future_partitions(count=2, now=now)
    assert created == ["2030_01", "2030_02", "2030_03"]
    assert await ensure_future_partitions(count=2, now=now) == []
    assert await ensure_partition(utc(2030, 2, 20), now=now) is False

    catalog = await _catalog()
    assert catalog["2030_01"].state == "active"
    assert catalog["2030_02"].state == "planned"
    assert catalog["2030_03"].range_start == utc(2030, 3, 1)
    assert catalog["2030_03"].range_end == utc(2030, 4, 1)

    assert await activate_due_partitions(now=utc(2030, 2, 1)) == ["2030_02"]
    assert await activate_due_partitions(now=utc(2030, 2, 1)) == []
    assert (await _catalog())["2030_02"].state == "active"


@pytest.mark.asyncio
async def test_concurrent_creators_produce_one_partition() -> None:
    now = utc(2031, 1, 1)
    results = await asyncio.gather(*(ensure_partition(utc(2031, 6, 10), now=now) for _ in range(8)))
    assert results.count(True) == 1
    assert results.count(False) == 7
    catalog = await _catalog()
    assert [key for key in catalog if key.startswith("2031")] == ["2031_06"]
    assert catalog["2031_06"].state == "planned"


@pytest.mark.asyncio
async def test_planned_partitions_accept_writes() -> None:
    tenant_a = await provision_tenant()
    future = add_months(utc_now(), 6) + timedelta(days=2)
    await ensure_future_partitions(through=future)
    assert (await _catalog())[partition_key_for(future)].state == "planned"
    event_id = await record(tenant_a, {"type": "maintenance.scheduled", "occurred_at": future})
    assert (await ledger.get_event(tenant_a, event_id)).partition_key == partition_key_for(future)


@pytest.mark.asyncio
async def test_archive_stops_writes_and_hides_rows_by_default() -> None:
    month = utc(2023, 3, 1)
    tenant_a = await provision_tenant(months=(month,))
    for day in (2, 9):
        await record(tenant_a, {"type": "invoice.created", "occurred_at": utc(2023, 3, day, 8)})
    paid_id = await record(
        tenant_a,
        {"type": "invoice.paid", "occurred_at": utc(2023, 3, 16, 8), "payload": {"amount": 120, "lines": [{"sku": "A-1"}]}},
    )
    before = await ledger.get_event(tenant_a, paid_id)
    window = {"occurred_from": utc(2023, 3, 1), "occurred_to": utc(2023, 4, 1)}

    assert await archive_partition("2023_03") == 3
    # Re-running only sweeps rows that are still unflagged.
    assert await archive_partition("2023_03") == 0

    assert (await ledger.query(tenant_a, **window)).items == []
    archived = (await ledger.query(tenant_a, include_archived=True, **window)).items
    assert len(archived) == 3
    assert all(item.archived and item.archived_at is not None for item in archived)

    # Archiving only flags rows; event content and timestamps are untouched.
    after = await ledger.get_event(tenant_a, paid_id)
    assert after.archived is True
    assert after.occurred_at == before.occurred_at == utc(2023, 3, 16, 8)
    assert after.created_at == before.created_at
    assert after.payload == before.payload == {"amount": 120, "lines": [{"sku": "A-1"}]}
    assert (after.event_type, after.partition_key) == (before.event_type, "2023_03")

    with pytest.raises(NoCoveringPartition) as exc_info:
        await record(tenant_a, {"type": "invoice.created", "occurred_at": utc(2023, 3, 20)})
    assert exc_info.value.details["state"] == "archived"


@pytest.mark.asyncio
async def test_transition_guards() -> None:
    await provision_tenant()
    current = partition_key_for(utc_now())
    with pytest.raises(ValidationError):
        await archive_partition(current)
    with pytest.raises(ValidationError):
        await drop_partition(current)

    await ensure_exceptions_partition()
    with pytest.raises(ValidationError):
        await archive_partition("exceptions")
    assert (await _catalog())["exceptions"].kind == "exceptions"


@pytest.mark.asyncio
async def test_drop_moves_exempt_rows_to_exceptions() -> None:
    month = utc(2023, 5, 1)
    tenant_a = await provision_tenant(months=(month,))
    tenant_b = await provision_tenant()
    tenant_c = await provision_tenant()
    await ensure_exceptions_partition()

    await record(tenant_a, {"type": "invoice.created", "occurred_at": utc(2023, 5, 3)})
    kept_a = await record(tenant_a, {"type": "payment.failed", "severity": "error", "occurred_at": utc(2023, 5, 4)})
    kept_critical = await record(
        tenant_a, {"type": "security.breach_detected", "category": "security", "severity": "critical", "occurred_at": utc(2023, 5, 5)}
    )
    held = [await record(tenant_b, {"type": "contract.signed", "occurred_at": utc(2023, 5, day)}) for day in (6, 7)]
    await record(tenant_c, {"type": "invoice.created", "occurred_at": utc(2023, 5, 8)})
    await place_legal_hold(tenant_b, reason="litigation 2023-117")
    released = await place_legal_hold(tenant_c, reason="closed matter")
    await release_legal_hold(tenant_c, released.id)

    await archive_partition("2023_05")
    assert await drop_partition("2023_05") == 4
    assert await drop_partition("2023_05") == 0

    window = {"occurred_from": utc(2023, 5, 1), "occurred_to": utc(2023, 6, 1), "include_archived": True}
    survivors_a = (await ledger.query(tenant_a, **window)).items
    assert sorted(item.id for item in survivors_a) == sorted([kept_a, kept_critical])
    assert {item.partition_key for item in survivors_a} == {"exceptions"}
    survivors_b = (await ledger.query(tenant_b, **window)).items
    assert sorted(item.id for item in survivors_b) == sorted(held)
    assert (await ledger.query(tenant_c, **window)).items == []

    catalog = await _catalog()
    assert catalog["2023_05"].state == "dropped"
    assert catalog["2023_05"].dropped_at is not None
    # A dropped month is never recreated.
    assert await ensure_partition(month) is False
    with pytest.raises(NoCoveringPartition):
        await record(tenant_a, {"type": "invoice.created", "occurred_at": utc(2023, 5, 9)})


@pytest.mark.asyncio
async def test_scheduled_run_archives_and_drops_by_retention() -> None:
    now = utc_now()
    ancient = add_months(now, -40)
    stale = add_months(now, -14)
    tenant_a = await provision_tenant(months=(ancient, stale))
    await record(tenant_a, {"type": "invoice.created", "occurred_at": ancient + timedelta(days=1)})
    await record(tenant_a, {"type": "invoice.created", "occurred_at": stale + timedelta(days=1)})

    report = await run_lifecycle()
    assert report.failures == {}
    assert report.archived == {partition_key_for(ancient): 1, partition_key_for(stale): 1}
    assert report.dropped == {partition_key_for(ancient): 0}

    catalog = await _catalog()
    assert catalog[partition_key_for(ancient)].state == "dropped"
    assert catalog[partition_key_for(stale)].state == "archived"
    assert catalog[partition_key_for(now)].state == "active"
    assert catalog["exceptions"].state == "active"

    again = await run_lifecycle()
    assert again.created == []
    assert again.archived == {}
    assert again.dropped == {}
    async with system_session("test_inspection") as session:
        runs = (await session.execute(select(LifecycleRun).where(LifecycleRun.task == "partition_lifecycle"))).scalars().all()
    assert [run.outcome for run in runs] == ["succeeded", "succeeded"]


@pytest.mark.asyncio
async def test_repeated_transition_failures_raise_an_alert(monkeypatch: pytest.MonkeyPatch) -> None:
    stale = add_months(utc_now(), -14)
    await provision_tenant(months=(stale,))
    alerts: list[tuple[str, dict]] = []

    async def failing_archive(key: str, *, now=None) -> int:
        raise OperationalError("UPDATE activity_events", {}, Exception("disk I/O error"))

    def capture(kind: str, message: str, *, details=None) -> bool:
        alerts.append((kind, details or {}))
        return True

    monkeypatch.setattr(lifecycle, "archive_partition", failing_archive)
    monkeypatch.setattr(lifecycle.alerts, "raise_operational_alert", capture)

    for _ in range(2):
        report = await run_lifecycle()
        assert partition_key_for(stale) in report.failures
    assert alerts == []

    await run_lifecycle()
    assert alerts == [
        (
            "partition_transition_failed",
            {"partition_key": partition_key_for(stale), "action": "archive", "failure_count": 3},
        )
    ]
    row = (await _catalog())[partition_key_for(stale)]
    assert row.failure_count == 3
    assert "disk I/O error" in (row.last_error or "")
    assert row.state == "active"
