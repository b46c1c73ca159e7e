from __future__ import annotations

from uuid import uuid4

import httpx
import pytest

from relayq.apps.api.main import create_app
from relayq.core.config import get_settings


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def tenant_headers() -> dict[str, str]:
    return {"X-Tenant-Id": f"t-api-{uuid4().hex[:8]}"}


@pytest.mark.asyncio
async def test_health_envelopes_only_versioned_route(client) -> None:
    versioned = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    bare = await client.get("/health")

    assert versioned.status_code == 200
    body = versioned.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["database"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert versioned.headers["X-Request-Id"] == "req-123"
    assert bare.status_code == 200
    assert bare.json()["status"] == "ok"
    assert "meta" not in bare.json()


@pytest.mark.asyncio
async def test_missing_tenant_header_is_rejected(client) -> None:
    response = await client.get("/v1/entries")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_bearer_token_enforced_when_configured(client, tenant_headers, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "api_token", "s3cret-token")

    missing = await client.get("/v1/entries", headers=tenant_headers)
    wrong = await client.get("/v1/entries", headers={**tenant_headers, "Authorization": "Bearer nope"})
    ok = await client.get("/v1/entries", headers={**tenant_headers, "Authorization": "Bearer s3cret-token"})

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert ok.status_code == 200


@pytest.mark.asyncio
async def test_create_entry_from_default_template(client, tenant_headers) -> None:
    response = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={
            "destination": "555-123-4567",
            "notification_type": "order_shipped",
            "variables": {"brandName": "Acme", "orderNumber": "42", "trackingUrl": "https://t.example.com/1"},
        },
    )

    assert response.status_code == 201
    entry = response.json()["data"]
    assert entry["destination"] == "+15551234567"
    assert entry["status"] == "pending"
    assert entry["content"].startswith("Acme: Your order #42 has shipped!")
    assert entry["segment_count"] == 1
    assert entry["encoding"] == "GSM-7"

    fetched = await client.get(f"/v1/entries/{entry['id']}", headers=tenant_headers)
    assert fetched.status_code == 200
    assert fetched.json()["data"]["id"] == entry["id"]


@pytest.mark.asyncio
async def test_create_entry_rejects_unresolved_placeholders(client, tenant_headers) -> None:
    response = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "+15551234567", "notification_type": "verification_code", "variables": {"code": "1"}},
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "TEMPLATE_VARIABLES_MISSING"
    assert error["details"]["missing"] == ["brandName"]


@pytest.mark.asyncio
async def test_create_entry_rejects_invalid_destination_and_unknown_template(client, tenant_headers) -> None:
    invalid = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "12", "notification_type": "custom", "content": "Hello"},
    )
    unknown = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "+15551234567", "notification_type": "no_such_type"},
    )

    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "INVALID_DESTINATION"
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "TEMPLATE_NOT_FOUND"


@pytest.mark.asyncio
async def test_schedule_now_list_filters_and_stats(client, tenant_headers) -> None:
    for destination, schedule_now in (("+15551110001", True), ("+15551110002", False)):
        created = await client.post(
            "/v1/entries",
            headers=tenant_headers,
            json={
                "destination": destination,
                "notification_type": "custom",
                "content": "Hello {{name}}",
                "variables": {"name": "Ada"},
                "schedule_now": schedule_now,
            },
        )
        assert created.status_code == 201
    email = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "Jane@Example.com", "notification_type": "order_shipped", "channel": "email",
              "content": "Shipped"},
    )
    assert email.json()["data"]["destination"] == "jane@example.com"

    scheduled = await client.get("/v1/entries", headers=tenant_headers, params={"status": "scheduled"})
    by_destination = await client.get(
        "/v1/entries", headers=tenant_headers, params={"channel": "sms", "destination": "(555) 111-0002"}
    )
    stats = await client.get("/v1/stats", headers=tenant_headers, params={"channel": "sms"})

    assert scheduled.json()["data"]["total"] == 1
    assert scheduled.json()["data"]["entries"][0]["content"] == "Hello Ada"
    assert by_destination.json()["data"]["total"] == 1
    assert by_destination.json()["data"]["entries"][0]["destination"] == "+15551110002"
    stats_data = stats.json()["data"]
    assert stats_data["pending"] == 1
    assert stats_data["scheduled"] == 1
    assert stats_data["total"] == 2


@pytest.mark.asyncio
async def test_entries_are_tenant_scoped(client, tenant_headers) -> None:
    created = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "+15551234567", "notification_type": "custom", "content": "Hi"},
    )
    entry_id = created.json()["data"]["id"]

    other = await client.get(f"/v1/entries/{entry_id}", headers={"X-Tenant-Id": "t-api-someone-else"})
    assert other.status_code == 404
    assert other.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_opt_out_lifecycle_cancels_pending(client, tenant_headers) -> None:
    await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={"destination": "+15551234567", "notification_type": "custom", "content": "Hi"},
    )

    created = await client.post(
        "/v1/opt-outs", headers=tenant_headers, json={"destination": "555 123 4567", "method": "user"}
    )
    status = await client.get("/v1/opt-outs/+15551234567", headers=tenant_headers)
    removed = await client.delete("/v1/opt-outs/+15551234567", headers=tenant_headers)
    removed_again = await client.delete("/v1/opt-outs/+15551234567", headers=tenant_headers)
    after = await client.get("/v1/opt-outs/+15551234567", headers=tenant_headers)

    assert created.status_code == 201
    assert created.json()["data"]["opt_out"]["method"] == "user"
    assert created.json()["data"]["cancelled_entries"] == 1
    assert status.json()["data"]["opted_out"] is True
    assert removed.json()["data"]["removed"] is True
    assert removed_again.json()["data"]["removed"] is False
    assert after.json()["data"]["opted_out"] is False

    entries = await client.get("/v1/entries", headers=tenant_headers, params={"status": "skipped"})
    assert entries.json()["data"]["entries"][0]["skip_reason"] == "recipient_opted_out"


@pytest.mark.asyncio
async def test_template_preview_and_crud(client, tenant_headers) -> None:
    preview = await client.post(
        "/v1/templates/preview",
        headers=tenant_headers,
        json={"content": "{{brandName}}: code {{code}} {{extra}}", "notification_type": "verification_code"},
    )
    data = preview.json()["data"]
    assert data["preview"] == "Acme: code 123456 {{extra}}"
    assert data["missing_variables"] == ["extra"]
    assert data["segment_count"] == 1

    put = await client.put(
        "/v1/templates/order_shipped",
        headers=tenant_headers,
        json={"content": "{{brandName}} shipped #{{orderNumber}}"},
    )
    assert put.status_code == 200
    assert put.json()["data"]["available_variables"] == ["brandName", "orderNumber"]

    created = await client.post(
        "/v1/entries",
        headers=tenant_headers,
        json={
            "destination": "+15551234567",
            "notification_type": "order_shipped",
            "variables": {"brandName": "Acme", "orderNumber": "7"},
        },
    )
    assert created.json()["data"]["content"] == "Acme shipped #7"

    listed = await client.get("/v1/templates", headers=tenant_headers)
    assert [row["notification_type"] for row in listed.json()["data"]["templates"]] == ["order_shipped"]

    deleted = await client.delete("/v1/templates/order_shipped", headers=tenant_headers)
    missing = await client.delete("/v1/templates/order_shipped", headers=tenant_headers)
    assert deleted.status_code == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_settings_put_and_get(client, tenant_headers) -> None:
    missing = await client.get("/v1/settings/sms", headers=tenant_headers)
    assert missing.status_code == 404

    put = await client.put(
        "/v1/settings/sms",
        headers=tenant_headers,
        json={
            "enabled": True,
            "sender_id": "(555) 000-0000",
            "quiet_hours_enabled": True,
            "quiet_hours_start": "22:00",
            "quiet_hours_timezone": "America/New_York",
            "rate_limit_per_second": 5,
        },
    )
    assert put.status_code == 200
    data = put.json()["data"]
    assert data["sender_id"] == "+15550000000"
    assert data["quiet_hours_start"] == "22:00"
    assert data["quiet_hours_end"] == "09:00"
    assert data["daily_limit"] == get_settings().default_daily_limit
    assert "provider_credentials_ref" not in data

    patched = await client.put("/v1/settings/sms", headers=tenant_headers, json={"daily_limit": 10, "enabled": None})
    assert patched.json()["data"]["daily_limit"] == 10
    assert patched.json()["data"]["enabled"] is True

    bad = await client.put("/v1/settings/sms", headers=tenant_headers, json={"quiet_hours_end": "25:00"})
    assert bad.status_code == 422
    assert bad.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
