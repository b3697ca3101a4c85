from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantledger.core.errors import NotFoundError, ValidationError
from tenantledger.domain.models import LegalHold, utc_now
from tenantledger.persistence.guards import TenantContext, tenant_session


async def place_legal_hold(
    ctx: TenantContext,
    *,
    reason: str,
    expires_at: datetime | None = None,
) -> LegalHold:
    # A hold keeps every event of the tenant out of partition drops until released or expired.
    if not reason or not reason.strip():
        raise ValidationError("Legal hold requires a reason")
    if expires_at is not None and (expires_at.tzinfo is None or expires_at <= utc_now()):
        raise ValidationError("expires_at must be a future, timezone-aware timestamp")
    async with tenant_session(ctx) as session:
        hold = LegalHold(
            tenant_id=ctx.tenant_id,
            reason=reason.strip(),
            created_by_actor_id=ctx.actor_id,
            is_active=True,
            expires_at=expires_at,
            created_at=utc_now(),
        )
        session.add(hold)
        await session.commit()
        return hold


async def release_legal_hold(ctx: TenantContext, hold_id: int) -> LegalHold:
    async with tenant_session(ctx) as session:
        hold = (await session.execute(select(LegalHold).where(LegalHold.id == hold_id))).scalar_one_or_none()
        if hold is None:
            raise NotFoundError("Legal hold not found", details={"hold_id": hold_id})
        hold.is_active = False
        await session.commit()
        return hold


async def held_tenant_ids(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    # Called from the lifecycle manager's system session; spans every tenant.
    now = now or utc_now()
    result = await session.execute(
        select(LegalHold.tenant_id)
        .where(
            LegalHold.is_active.is_(True),
            or_(LegalHold.expires_at.is_(None), LegalHold.expires_at > now),
        )
        .distinct()
    )
    return sorted(str(tenant_id) for tenant_id in result.scalars().all())
