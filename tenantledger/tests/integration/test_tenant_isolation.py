from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from tenantledger.core.errors import NotFoundError, TenantContextRequired, TenantIsolationViolation
from tenantledger.domain.models import ActivityEvent, LegalHold, utc_now
from tenantledger.persistence.db import get_session
from tenantledger.persistence.guards import TenantContext, system_session, tenant_session
from tenantledger.services import ledger
from tenantledger.services.audit import ISOLATION_VIOLATION_EVENT
from tenantledger.services.ingestion import record
from tenantledger.tests.utils.ledger import provision_tenant


def _window() -> dict:
    now = utc_now()
    return {"occurred_from": now - timedelta(hours=1), "occurred_to": now + timedelta(minutes=5)}


async def _security_events(ctx: TenantContext) -> list[ActivityEvent]:
    page = await ledger.query(ctx, event_type=ISOLATION_VIOLATION_EVENT, **_window())
    return page.items


@pytest.mark.asyncio
async def test_cross_tenant_query_is_rejected_and_audited() -> None:
    tenant_a = await provision_tenant(actor_id="alice")
    tenant_b = await provision_tenant()
    await record(tenant_b, {"type": "invoice.created", "entity_type": "invoice", "entity_id": "inv-b"})

    with pytest.raises(TenantIsolationViolation) as exc_info:
        await ledger.query(tenant_a, tenant_id=tenant_b.tenant_id, **_window())
    assert exc_info.value.attempted_tenant_id == tenant_b.tenant_id

    events = await _security_events(tenant_a)
    assert len(events) == 1
    audit = events[0]
    assert audit.tenant_id == tenant_a.tenant_id
    assert audit.category == "security"
    assert audit.severity == "critical"
    assert audit.actor_type == "system"
    assert audit.payload["attempted_tenant_id"] == tenant_b.tenant_id
    assert audit.payload["actor_id"] == "alice"
    assert audit.payload["operation"] == "ledger.query"
    # The targeted tenant's ledger is untouched.
    assert await _security_events(tenant_b) == []


@pytest.mark.asyncio
async def test_query_naming_own_tenant_is_allowed() -> None:
    tenant_a = await provision_tenant()
    await record(tenant_a, {"type": "invoice.created"})
    page = await ledger.query(tenant_a, tenant_id=tenant_a.tenant_id, **_window())
    assert [item.event_type for item in page.items] == ["invoice.created"]


@pytest.mark.asyncio
async def test_other_tenants_rows_are_absent_not_errors() -> None:
    tenant_a = await provision_tenant()
    tenant_b = await provision_tenant()
    event_id = await record(tenant_a, {"type": "work_order.created", "entity_type": "work_order", "entity_id": "wo-1"})

    page = await ledger.query(tenant_b, entity_type="work_order", entity_id="wo-1", **_window())
    assert page.items == []
    assert page.next_offset is None
    with pytest.raises(NotFoundError):
        await ledger.get_event(tenant_b, event_id)
    assert (await ledger.get_event(tenant_a, event_id)).id == event_id


@pytest.mark.asyncio
async def test_writing_a_row_for_another_tenant_is_a_violation() -> None:
    tenant_a = await provision_tenant()
    tenant_b = await provision_tenant()

    with pytest.raises(TenantIsolationViolation):
        async with tenant_session(tenant_a) as session:
            session.add(LegalHold(tenant_id=tenant_b.tenant_id, reason="smuggled", is_active=True))
            await session.commit()

    async with system_session("test_inspection") as session:
        holds = (await session.execute(select(LegalHold))).scalars().all()
    assert holds == []
    events = await _security_events(tenant_a)
    assert len(events) == 1
    assert events[0].payload["operation"] == "insert"
    assert events[0].payload["model"] == "LegalHold"


@pytest.mark.asyncio
async def test_tenant_scoped_models_require_a_context() -> None:
    with pytest.raises(TenantContextRequired):
        TenantContext(tenant_id="  ")

    async with get_session() as session:
        with pytest.raises(TenantContextRequired):
            await session.execute(select(ActivityEvent))


@pytest.mark.asyncio
async def test_system_session_spans_tenants() -> None:
    tenant_a = await provision_tenant()
    tenant_b = await provision_tenant()
    await record(tenant_a, {"type": "invoice.created"})
    await record(tenant_b, {"type": "invoice.created"})

    async with system_session("test_enumeration") as session:
        tenants = (await session.execute(select(ActivityEvent.tenant_id))).scalars().all()
    assert sorted(tenants) == sorted([tenant_a.tenant_id, tenant_b.tenant_id])
