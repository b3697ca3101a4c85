from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base error for tenantledger."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerError):
    """Malformed or invariant-violating input; rejected synchronously and never retried."""

    code = "VALIDATION_ERROR"


class TenantIsolationViolation(LedgerError):
    """Cross-tenant access attempt; always fatal to the request."""

    code = "TENANT_ISOLATION_VIOLATION"

    def __init__(
        self,
        message: str,
        *,
        tenant_id: str | None = None,
        attempted_tenant_id: str | None = None,
        operation: str | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={
                "tenant_id": tenant_id,
                "attempted_tenant_id": attempted_tenant_id,
                "operation": operation,
                "model": model,
            },
        )
        self.tenant_id = tenant_id
        self.attempted_tenant_id = attempted_tenant_id
        self.operation = operation
        self.model = model


class TenantContextRequired(TenantIsolationViolation):
    """Tenant-scoped storage was touched without an established tenant context."""


class NoCoveringPartition(LedgerError):
    """No writable partition covers the event timestamp."""

    code = "NO_COVERING_PARTITION"


class RangeRequired(LedgerError):
    """Ledger queries must be bounded on both ends of the time range."""

    code = "RANGE_REQUIRED"


class DeliveryFailure(LedgerError):
    """One channel delivery attempt failed."""

    code = "DELIVERY_FAILURE"

    def __init__(self, message: str, *, channel: str, retriable: bool = True) -> None:
        super().__init__(message, details={"channel": channel, "retriable": retriable})
        self.channel = channel
        self.retriable = retriable


class NotFoundError(LedgerError):
    """Tenant-scoped lookup found nothing."""

    code = "NOT_FOUND"
