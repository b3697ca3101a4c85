from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from tenantledger.domain.models import utc_now
from tenantledger.persistence.guards import TenantContext
from tenantledger.persistence.partitions import add_months
from tenantledger.services.lifecycle import ensure_future_partitions, ensure_partition
from tenantledger.services.tenants import register_tenant


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0, micro: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=timezone.utc)


def new_tenant_id(prefix: str = "t") -> str:
    # Unique tenant ids keep assertions independent of other rows in the test database.
    return f"{prefix}-{uuid4().hex[:12]}"


async def provision_tenant(
    tenant_id: str | None = None,
    *,
    actor_id: str | None = "user-1",
    months: tuple[datetime, ...] = (),
) -> TenantContext:
    # Register the tenant and open the previous, current and next month (plus any requested months) for writes.
    tenant_id = tenant_id or new_tenant_id()
    await register_tenant(tenant_id, name=f"Tenant {tenant_id}")
    await ensure_partition(add_months(utc_now(), -1))
    await ensure_future_partitions(count=1)
    for month in months:
        await ensure_partition(month)
    return TenantContext(tenant_id=tenant_id, actor_type="user", actor_id=actor_id)


def tenant_headers(tenant_id: str, *, role: str = "member", actor_id: str | None = "user-1") -> dict[str, str]:
    headers = {"X-Tenant-Id": tenant_id, "X-Role": role}
    if actor_id:
        headers["X-Actor-Id"] = actor_id
    return headers
