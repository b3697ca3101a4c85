from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from tenantledger.apps.api.main import create_app
from tenantledger.domain.models import utc_now
from tenantledger.services.background import drain
from tenantledger.tests.utils.ledger import provision_tenant, tenant_headers


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _window(**extra) -> dict:
    now = utc_now()
    params = {"from": (now - timedelta(hours=1)).isoformat(), "to": (now + timedelta(hours=1)).isoformat()}
    params.update(extra)
    return params


@pytest.mark.asyncio
async def test_gateway_headers_are_required() -> None:
    async with _client() as client:
        missing = await client.get("/v1/activity-events", params=_window())
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
        assert "tenant_id" not in missing.json()["meta"]

        bad_role = await client.get("/v1/activity-events", params=_window(), headers={"X-Tenant-Id": "t-1", "X-Role": "owner"})
        assert bad_role.status_code == 400
        assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"
        assert "tenant_id" not in bad_role.json()["meta"]


@pytest.mark.asyncio
async def test_record_and_read_back_events() -> None:
    tenant_a = await provision_tenant()
    headers = {**tenant_headers(tenant_a.tenant_id), "X-Request-Id": "req-4711"}
    occurred_at = (utc_now() - timedelta(minutes=5)).isoformat()
    async with _client() as client:
        created = await client.post(
            "/v1/activity-events",
            json={
                "type": "invoice.created",
                "entity_type": "invoice",
                "entity_id": "inv-1",
                "payload": {"amount": 120, "currency": "EUR"},
                "occurred_at": occurred_at,
            },
            headers=headers,
        )
        assert created.status_code == 201
        assert created.headers["X-Request-Id"] == "req-4711"
        body = created.json()
        assert body["meta"] == {"request_id": "req-4711", "api_version": "v1", "tenant_id": tenant_a.tenant_id}
        event_id = body["data"]["id"]

        batch = await client.post(
            "/v1/activity-events/batch",
            json={"events": [{"type": "invoice.sent"}, {"type": "invoice.viewed", "severity": "debug"}]},
            headers=tenant_headers(tenant_a.tenant_id),
        )
        assert batch.status_code == 201
        assert len(batch.json()["data"]["ids"]) == 2

        fetched = await client.get(f"/v1/activity-events/{event_id}", headers=tenant_headers(tenant_a.tenant_id, role="reader"))
        assert fetched.status_code == 200
        event = fetched.json()["data"]
        assert event["type"] == "invoice.created"
        assert event["tenant_id"] == tenant_a.tenant_id
        assert event["actor_id"] == "user-1"
        assert event["request_id"] == "req-4711"
        assert event["payload"] == {"amount": 120, "currency": "EUR"}
        assert event["archived"] is False

        listed = await client.get(
            "/v1/activity-events",
            params=_window(entity_type="invoice", entity_id="inv-1"),
            headers=tenant_headers(tenant_a.tenant_id, role="reader"),
        )
        assert listed.status_code == 200
        assert [item["id"] for item in listed.json()["data"]["items"]] == [event_id]

        filtered = await client.get(
            "/v1/activity-events",
            params=_window(min_severity="info"),
            headers=tenant_headers(tenant_a.tenant_id, role="reader"),
        )
        assert {item["type"] for item in filtered.json()["data"]["items"]} == {"invoice.created", "invoice.sent"}
    await drain()


@pytest.mark.asyncio
async def test_event_errors_map_to_statuses() -> None:
    tenant_a = await provision_tenant()
    headers = tenant_headers(tenant_a.tenant_id)
    async with _client() as client:
        no_range = await client.get("/v1/activity-events", headers=headers)
        assert no_range.status_code == 400
        assert no_range.json()["error"]["code"] == "RANGE_REQUIRED"

        bad_type = await client.post("/v1/activity-events", json={"type": "Invoice Created"}, headers=headers)
        assert bad_type.status_code == 422
        assert bad_type.json()["error"]["code"] == "VALIDATION_ERROR"

        # Tenant identity comes from headers only.
        smuggled = await client.post(
            "/v1/activity-events", json={"type": "invoice.created", "tenant_id": "t-other"}, headers=headers
        )
        assert smuggled.status_code == 422

        unroutable = await client.post(
            "/v1/activity-events",
            json={"type": "invoice.created", "occurred_at": "2099-03-01T00:00:00+00:00"},
            headers=headers,
        )
        assert unroutable.status_code == 409
        assert unroutable.json()["error"]["code"] == "NO_COVERING_PARTITION"

        missing = await client.get("/v1/activity-events/does-not-exist", headers=headers)
        assert missing.status_code == 404

        reader_write = await client.post(
            "/v1/activity-events",
            json={"type": "invoice.created"},
            headers=tenant_headers(tenant_a.tenant_id, role="reader"),
        )
        assert reader_write.status_code == 403
        assert reader_write.json()["error"]["code"] == "AUTH_FORBIDDEN"
    await drain()


@pytest.mark.asyncio
async def test_cross_tenant_query_is_forbidden_without_leaking_the_target() -> None:
    tenant_a = await provision_tenant()
    tenant_b = await provision_tenant()
    async with _client() as client:
        response = await client.get(
            "/v1/activity-events",
            params=_window(tenant=tenant_b.tenant_id),
            headers=tenant_headers(tenant_a.tenant_id, actor_id="alice"),
        )
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "TENANT_ISOLATION_VIOLATION"
        assert error["details"] == {"operation": "ledger.query"}
        assert tenant_b.tenant_id not in response.text

        own = await client.get(
            "/v1/activity-events",
            params=_window(tenant=tenant_a.tenant_id, category="security"),
            headers=tenant_headers(tenant_a.tenant_id, role="reader"),
        )
        assert own.status_code == 200
        (audit,) = own.json()["data"]["items"]
        assert audit["severity"] == "critical"
        assert audit["payload"]["attempted_tenant_id"] == tenant_b.tenant_id
    await drain()


@pytest.mark.asyncio
async def test_notification_inbox_flow() -> None:
    tenant_a = await provision_tenant()
    tenant_b = await provision_tenant()
    author = tenant_headers(tenant_a.tenant_id, actor_id="user-1")
    recipient = tenant_headers(tenant_a.tenant_id, actor_id="user-7")
    async with _client() as client:
        created = await client.post(
            "/v1/notifications",
            json={"recipient": "user-7", "title": "Contract signed", "message": "ACME signed the renewal.", "priority": 8},
            headers=author,
        )
        assert created.status_code == 201
        notification = created.json()["data"]
        assert notification["channels"] == ["web"]
        assert notification["channel_fallback"] is False
        assert notification["sender"] == "user-1"
        await drain()

        unread = await client.get("/v1/notifications/unread-count", headers=recipient)
        assert unread.json()["data"] == {"recipient": "user-7", "unread_count": 1}

        detail = await client.get(f"/v1/notifications/{notification['id']}", headers=recipient)
        assert detail.status_code == 200
        assert detail.json()["data"]["delivery_state"] == "delivered"
        assert [row["status"] for row in detail.json()["data"]["deliveries"]] == ["delivered"]

        read = await client.patch(f"/v1/notifications/{notification['id']}", json={"read": True}, headers=recipient)
        assert read.status_code == 200
        assert read.json()["data"]["read"] is True
        assert read.json()["data"]["read_at"] is not None
        unread = await client.get("/v1/notifications/unread-count", headers=recipient)
        assert unread.json()["data"]["unread_count"] == 0

        unread_back = await client.patch(f"/v1/notifications/{notification['id']}", json={"read": False}, headers=recipient)
        assert unread_back.status_code == 422

        inbox = await client.get("/v1/notifications", headers=recipient)
        assert [item["id"] for item in inbox.json()["data"]["items"]] == [notification["id"]]

        foreign = await client.get(f"/v1/notifications/{notification['id']}", headers=tenant_headers(tenant_b.tenant_id))
        assert foreign.status_code == 404
        assert foreign.json()["error"]["code"] == "NOT_FOUND"

        invalid = await client.post(
            "/v1/notifications", json={"recipient": "user-7", "title": "x", "message": "y", "channels": ["fax"]}, headers=author
        )
        assert invalid.status_code == 422
    await drain()


@pytest.mark.asyncio
async def test_templates_rules_and_preferences_endpoints() -> None:
    tenant_a = await provision_tenant()
    admin = tenant_headers(tenant_a.tenant_id, role="admin")
    member = tenant_headers(tenant_a.tenant_id)
    async with _client() as client:
        template = await client.put(
            "/v1/notification-templates/work_order_done",
            json={
                "key": "work_order_done",
                "title": "Work order {{number}} completed",
                "message": "Completed by {{technician}}",
                "required_variables": ["number"],
            },
            headers=admin,
        )
        assert template.status_code == 200
        member_template = await client.put(
            "/v1/notification-templates/work_order_done",
            json={"key": "work_order_done", "title": "t", "message": "m"},
            headers=member,
        )
        assert member_template.status_code == 403

        rule = await client.post(
            "/v1/notification-rules",
            json={
                "name": "Completed work orders",
                "event_type_pattern": "work_order.completed",
                "template_key": "work_order_done",
                "recipient": "dispatch",
                "recipient_kind": "role",
            },
            headers=admin,
        )
        assert rule.status_code == 201
        rules = await client.get("/v1/notification-rules", headers=admin)
        assert [item["name"] for item in rules.json()["data"]] == ["Completed work orders"]

        preference = await client.put(
            "/v1/notification-preferences/user-7",
            json={"disabled_channels": ["sms"], "muted_categories": ["marketing"]},
            headers=member,
        )
        assert preference.json()["data"]["disabled_channels"] == ["sms"]

        from_template = await client.post(
            "/v1/notifications",
            json={"template_key": "work_order_done", "variables": {"number": "WO-5"}, "recipient": "user-7", "channels": ["web", "sms"]},
            headers=member,
        )
        assert from_template.status_code == 201
        assert from_template.json()["data"]["title"] == "Work order WO-5 completed"
        assert from_template.json()["data"]["channels"] == ["web"]

        missing_vars = await client.post(
            "/v1/notifications",
            json={"template_key": "work_order_done", "variables": {}, "recipient": "user-7"},
            headers=member,
        )
        assert missing_vars.status_code == 422
        assert missing_vars.json()["error"]["details"]["missing"] == ["number"]

        await client.post(
            "/v1/activity-events",
            json={"type": "work_order.completed", "payload": {"number": "WO-6", "technician": "Sam"}},
            headers=member,
        )
        await drain()
        inbox = await client.get(
            "/v1/notifications", params={"recipient": "dispatch", "recipient_kind": "role"}, headers=member
        )
        assert [item["message"] for item in inbox.json()["data"]["items"]] == ["Completed by Sam"]
    await drain()


@pytest.mark.asyncio
async def test_ops_endpoints_require_admin() -> None:
    tenant_a = await provision_tenant()
    admin = tenant_headers(tenant_a.tenant_id, role="admin")
    async with _client() as client:
        forbidden = await client.get("/v1/ops/partitions", headers=tenant_headers(tenant_a.tenant_id))
        assert forbidden.status_code == 403

        partitions = await client.get("/v1/ops/partitions", headers=admin)
        assert partitions.status_code == 200
        rows = {row["key"]: row for row in partitions.json()["data"]}
        current = utc_now().strftime("%Y_%m")
        assert rows[current]["state"] == "active"
        assert rows[current]["kind"] == "monthly"

        run = await client.post("/v1/ops/partitions/run", headers=admin)
        assert run.status_code == 200
        assert run.json()["data"]["failures"] == {}

        hold = await client.post("/v1/ops/legal-holds", json={"reason": "regulator request"}, headers=admin)
        assert hold.status_code == 201
        hold_id = hold.json()["data"]["id"]
        released = await client.delete(f"/v1/ops/legal-holds/{hold_id}", headers=admin)
        assert released.json()["data"] == {"id": hold_id, "is_active": False}

        sweep = await client.post("/v1/ops/notifications/sweep", headers=admin)
        assert sweep.json()["data"] == {"expired": 0, "scheduled": 0}

        rollups = await client.post("/v1/ops/rollups/run", headers=admin)
        assert rollups.status_code == 200
        assert tenant_a.tenant_id in rollups.json()["data"]["computed"]
    await drain()


@pytest.mark.asyncio
async def test_analytics_and_health() -> None:
    tenant_a = await provision_tenant()
    headers = tenant_headers(tenant_a.tenant_id)
    async with _client() as client:
        for _ in range(3):
            await client.post("/v1/activity-events", json={"type": "report.generated", "duration_ms": 40}, headers=headers)
        summary = await client.get("/v1/analytics/activity", params=_window(), headers=headers)
        assert summary.status_code == 200
        data = summary.json()["data"]
        assert data["total_count"] == 3
        assert data["avg_duration_ms"] == 40.0

        no_range = await client.get("/v1/analytics/activity", headers=headers)
        assert no_range.status_code == 400

        health = await client.get("/v1/health")
        assert health.json()["data"] == {"status": "ok"}
        ready = await client.get("/v1/health/ready")
        assert ready.status_code == 200
        assert ready.json()["data"]["status"] == "ready"
    await drain()
