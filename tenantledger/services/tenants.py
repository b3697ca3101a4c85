from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.errors import ValidationError
from tenantledger.domain.models import Tenant, utc_now
from tenantledger.persistence.guards import system_session


async def register_tenant(tenant_id: str, *, name: str | None = None) -> Tenant:
    # Onboarding is out-of-band; registering an existing tenant returns it unchanged.
    if not tenant_id or not tenant_id.strip():
        raise ValidationError("tenant_id must be non-empty")
    async with system_session("tenant_registry") as session:
        existing = await session.get(Tenant, tenant_id)
        if existing is not None:
            return existing
        row = Tenant(id=tenant_id, name=name, is_active=True, created_at=utc_now())
        session.add(row)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await session.get(Tenant, tenant_id)
        return row


async def deactivate_tenant(tenant_id: str) -> Tenant | None:
    # Tenants are never deleted; deactivation blocks new writes only.
    async with system_session("tenant_registry") as session:
        row = await session.get(Tenant, tenant_id)
        if row is None:
            return None
        if row.is_active:
            row.is_active = False
            row.deactivated_at = utc_now()
            await session.commit()
        return row


async def ensure_tenant_active(session: AsyncSession, tenant_id: str) -> None:
    row = await session.get(Tenant, tenant_id)
    if row is None:
        raise ValidationError(f"Unknown tenant: {tenant_id}", details={"tenant_id": tenant_id})
    if not row.is_active:
        raise ValidationError(f"Tenant is deactivated: {tenant_id}", details={"tenant_id": tenant_id})


async def list_active_tenant_ids() -> list[str]:
    async with system_session("tenant_enumeration") as session:
        result = await session.execute(select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id))
        return [str(row) for row in result.scalars().all()]
