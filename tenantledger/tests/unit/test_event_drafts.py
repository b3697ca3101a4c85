from __future__ import annotations

from datetime import datetime

import pytest

from tenantledger.core.errors import ValidationError
from tenantledger.domain.models import ActivityEvent
from tenantledger.services.ingestion import parse_draft
from tenantledger.services.ledger import validate_event
from tenantledger.tests.utils.ledger import utc


def _error_locs(exc: ValidationError) -> list[str]:
    return [error["loc"] for error in exc.details["errors"]]


def test_minimal_draft_uses_defaults() -> None:
    draft = parse_draft({"type": "invoice.created"})
    assert draft.category == "user_action"
    assert draft.severity == "info"
    assert draft.payload == {}
    assert draft.occurred_at is None


@pytest.mark.parametrize("event_type", ["Invoice.Created", "invoice", "invoice..created", "1nvoice.created"])
def test_event_type_must_be_namespaced_lowercase(event_type: str) -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_draft({"type": event_type})
    assert "type" in _error_locs(exc_info.value)


def test_entity_pair_must_be_complete() -> None:
    with pytest.raises(ValidationError):
        parse_draft({"type": "work_order.created", "entity_type": "work_order"})
    with pytest.raises(ValidationError):
        parse_draft({"type": "work_order.created", "parent_entity_id": "p-1"})
    draft = parse_draft({"type": "work_order.created", "entity_type": "work_order", "entity_id": "wo-1"})
    assert draft.entity_id == "wo-1"


def test_occurred_at_requires_timezone() -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_draft({"type": "invoice.created", "occurred_at": datetime(2025, 1, 1, 12, 0)})
    assert "occurred_at" in _error_locs(exc_info.value)
    draft = parse_draft({"type": "invoice.created", "occurred_at": "2025-01-15T10:00:00.123456Z"})
    assert draft.occurred_at == utc(2025, 1, 15, 10, 0, 0, 123456)


def test_unknown_fields_and_enums_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_draft({"type": "invoice.created", "tenant_id": "someone-else"})
    with pytest.raises(ValidationError):
        parse_draft({"type": "invoice.created", "severity": "fatal"})
    with pytest.raises(ValidationError):
        parse_draft({"type": "invoice.created", "duration_ms": -1})


def _event(**overrides) -> ActivityEvent:
    values = {
        "id": "e1",
        "tenant_id": "t1",
        "occurred_at": utc(2025, 1, 1),
        "event_type": "invoice.created",
        "category": "user_action",
        "severity": "info",
        "payload": {},
        "archived": False,
    }
    values.update(overrides)
    return ActivityEvent(**values)


def test_storage_validation_accepts_well_formed_event() -> None:
    validate_event(_event())


def test_storage_validation_collects_every_problem() -> None:
    event = _event(
        event_type="bad",
        category="gossip",
        entity_type="work_order",
        occurred_at=datetime(2025, 1, 1),
        archived=True,
    )
    with pytest.raises(ValidationError) as exc_info:
        validate_event(event)
    assert len(exc_info.value.details["errors"]) == 5
