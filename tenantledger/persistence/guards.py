"""Tenant isolation enforcer.

Every ORM statement against a :class:`TenantScoped` model carries the session's tenant predicate,
injected by the storage layer through ``do_orm_execute``; callers cannot forget it. Sessions
obtain their scope only through :func:`tenant_session` (a :class:`TenantContext` capability) or
:func:`system_session` (explicit cross-tenant maintenance). Writes are checked in ``before_flush``.

Violations escaping a tenant session are written back into the ledger as ``security`` events.
A context-variable guard keeps that audit write from auditing itself.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from tenantledger.core.errors import TenantContextRequired, TenantIsolationViolation
from tenantledger.domain.models import TenantScoped
from tenantledger.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SCOPE_KEY = "tenantledger.scope"
# Set while a violation is being audited; nested violations are logged but not re-audited.
_audit_in_progress: ContextVar[bool] = ContextVar("tenantledger_audit_in_progress", default=False)


@dataclass(frozen=True)
class TenantContext:
    """Capability to touch one tenant's rows. Cannot exist without a tenant id."""

    tenant_id: str
    actor_type: str = "user"
    actor_id: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.tenant_id, str) or not self.tenant_id.strip():
            raise TenantContextRequired("Tenant context requires a non-empty tenant_id", operation="context")


@dataclass(frozen=True)
class SystemScope:
    # Cross-tenant maintenance scope, always named for the logs.
    purpose: str


def system_context(tenant_id: str, *, request_id: str | None = None) -> TenantContext:
    # Context used when the platform itself acts inside one tenant (rules, sweeps, audits).
    return TenantContext(tenant_id=tenant_id, actor_type="system", actor_id=None, request_id=request_id)


def current_scope(session: AsyncSession | Session) -> TenantContext | SystemScope | None:
    return session.info.get(_SCOPE_KEY)


def require_context(session: AsyncSession | Session) -> TenantContext:
    scope = current_scope(session)
    if not isinstance(scope, TenantContext):
        raise TenantContextRequired("Operation requires a tenant-scoped session", operation="require_context")
    return scope


def ensure_same_tenant(ctx: TenantContext, tenant_id: str | None, *, operation: str) -> None:
    # Reject explicit requests naming another tenant; absence of a tenant id means "mine".
    if tenant_id is None or tenant_id == ctx.tenant_id:
        return
    raise TenantIsolationViolation(
        "Requested tenant does not match the caller's tenant context",
        tenant_id=ctx.tenant_id,
        attempted_tenant_id=tenant_id,
        operation=operation,
    )


def _touches_tenant_scoped(state: ORMExecuteState) -> str | None:
    for mapper in state.all_mappers:
        if issubclass(mapper.class_, TenantScoped):
            return mapper.class_.__name__
    return None


@event.listens_for(Session, "do_orm_execute")
def _inject_tenant_predicate(state: ORMExecuteState) -> None:
    if not (state.is_select or state.is_update or state.is_delete):
        return
    # Lazy/column loads inherit criteria from the parent statement.
    if state.is_column_load or state.is_relationship_load:
        return
    scope = state.session.info.get(_SCOPE_KEY)
    if isinstance(scope, SystemScope):
        return
    if not isinstance(scope, TenantContext):
        model = _touches_tenant_scoped(state)
        if model is not None:
            raise TenantContextRequired(
                "Tenant-scoped model queried without a tenant context",
                operation="select" if state.is_select else ("update" if state.is_update else "delete"),
                model=model,
            )
        return
    tenant_id = scope.tenant_id
    state.statement = state.statement.options(
        with_loader_criteria(
            TenantScoped,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _check_tenant_writes(session: Session, flush_context, instances) -> None:
    scope = session.info.get(_SCOPE_KEY)
    if isinstance(scope, SystemScope):
        return
    for operation, objects in (("insert", session.new), ("update", session.dirty), ("delete", session.deleted)):
        for obj in objects:
            if not isinstance(obj, TenantScoped):
                continue
            model = type(obj).__name__
            if not isinstance(scope, TenantContext):
                raise TenantContextRequired(
                    "Tenant-scoped row written without a tenant context",
                    operation=operation,
                    model=model,
                )
            if obj.tenant_id is None and operation == "insert":
                obj.tenant_id = scope.tenant_id
                continue
            if obj.tenant_id != scope.tenant_id:
                raise TenantIsolationViolation(
                    "Row tenant does not match the session tenant context",
                    tenant_id=scope.tenant_id,
                    attempted_tenant_id=obj.tenant_id,
                    operation=operation,
                    model=model,
                )


async def _audit_violation(ctx: TenantContext, exc: TenantIsolationViolation) -> None:
    if getattr(exc, "audited", False):
        return
    exc.audited = True
    logger.warning(
        "tenant_isolation_violation tenant_id=%s attempted_tenant_id=%s operation=%s model=%s request_id=%s",
        ctx.tenant_id,
        exc.attempted_tenant_id,
        exc.operation,
        exc.model,
        ctx.request_id,
    )
    if _audit_in_progress.get():
        return
    token = _audit_in_progress.set(True)
    try:
        # Imported here: the audit writer itself runs through tenant_session.
        from tenantledger.services.audit import record_isolation_violation

        await record_isolation_violation(ctx, exc)
    finally:
        _audit_in_progress.reset(token)


def audit_in_progress() -> bool:
    return _audit_in_progress.get()


@asynccontextmanager
async def tenant_session(ctx: TenantContext) -> AsyncIterator[AsyncSession]:
    # The only entry point to tenant-scoped storage.
    if not isinstance(ctx, TenantContext):
        raise TenantContextRequired("tenant_session requires a TenantContext", operation="session")
    async with SessionLocal() as session:
        session.info[_SCOPE_KEY] = ctx
        try:
            yield session
        except TenantIsolationViolation as exc:
            await session.rollback()
            await _audit_violation(ctx, exc)
            raise


@asynccontextmanager
async def system_session(purpose: str) -> AsyncIterator[AsyncSession]:
    # Cross-tenant scope for partition maintenance and tenant enumeration only.
    logger.debug("system_session_opened purpose=%s", purpose)
    async with SessionLocal() as session:
        session.info[_SCOPE_KEY] = SystemScope(purpose=purpose)
        yield session
