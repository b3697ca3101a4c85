from __future__ import annotations

import pytest

from tenantledger.apps.api.deps import normalize_role, role_allows
from tenantledger.apps.api.errors import _split_detail, ledger_error_status
from tenantledger.core.errors import (
    DeliveryFailure,
    LedgerError,
    NoCoveringPartition,
    NotFoundError,
    RangeRequired,
    TenantContextRequired,
    TenantIsolationViolation,
    ValidationError,
)


@pytest.mark.parametrize(
    ("exc", "status_code"),
    [
        (TenantIsolationViolation("x"), 403),
        (TenantContextRequired("x"), 403),
        (ValidationError("x"), 422),
        (RangeRequired("x"), 400),
        (NoCoveringPartition("x"), 409),
        (NotFoundError("x"), 404),
        (DeliveryFailure("x", channel="email"), 500),
        (LedgerError("x"), 500),
    ],
)
def test_ledger_errors_map_to_http_status(exc: LedgerError, status_code: int) -> None:
    assert ledger_error_status(exc) == status_code


def test_roles_are_ordered() -> None:
    assert normalize_role(" Admin ") == "admin"
    assert role_allows(role="admin", minimum_role="member")
    assert role_allows(role="member", minimum_role="member")
    assert not role_allows(role="reader", minimum_role="member")
    with pytest.raises(ValueError):
        normalize_role("owner")


def test_split_detail_handles_dict_and_string_payloads() -> None:
    assert _split_detail({"code": "AUTH_FORBIDDEN", "message": "nope"}, 403) == ("AUTH_FORBIDDEN", "nope", None)
    assert _split_detail("Not Found", 404) == ("NOT_FOUND", "Not Found", None)
    assert _split_detail({"message": "bad", "field": "x"}, 400) == ("BAD_REQUEST", "bad", {"field": "x"})
