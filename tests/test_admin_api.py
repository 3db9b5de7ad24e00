"""Tests for the admin security and webhook endpoints."""
import asyncio

import pytest

from marketplace.main import app


@pytest.fixture
def admin(auth_headers):
    return auth_headers(user_id="ops-1", role="ADMIN")


def test_sellers_cannot_use_admin_endpoints(client, auth_headers):
    seller = auth_headers()

    assert client.get("/api/admin/security/blocks", headers=seller).status_code == 403
    assert client.get("/api/webhooks", headers=seller).status_code == 403
    assert client.get("/api/admin/security/blocks").status_code == 401


def test_manual_block_lifecycle(client, admin):
    """Test an admin can block, list and unblock an address."""
    response = client.post(
        "/api/admin/security/blocks",
        json={"identifier": "41.70.1.9", "duration_seconds": 600, "reason": "card testing"},
        headers=admin,
    )

    assert response.status_code == 201
    block = response.json()
    assert block["identifier"] == "41.70.1.9"
    assert block["reason"] == "Manual block: card testing"
    assert block["violations"] == 0
    assert 0 < block["remaining_seconds"] <= 600

    listed = client.get("/api/admin/security/blocks", headers=admin).json()
    assert [item["identifier"] for item in listed] == ["41.70.1.9"]

    assert client.delete("/api/admin/security/blocks/41.70.1.9", headers=admin).status_code == 204
    assert client.get("/api/admin/security/blocks", headers=admin).json() == []
    assert client.delete("/api/admin/security/blocks/41.70.1.9", headers=admin).status_code == 404


def test_manual_block_validation(client, admin):
    response = client.post(
        "/api/admin/security/blocks",
        json={"identifier": "41.70.1.9", "duration_seconds": 0, "reason": "x"},
        headers=admin,
    )
    assert response.status_code == 422


def test_blocked_client_is_refused(client, admin):
    """Test the middleware refuses a blocked address with retry headers."""
    asyncio.run(app.state.ip_blocker.manual_block("testclient", 600, "abuse"))

    response = client.get("/api/admin/security/blocks", headers=admin)

    assert response.status_code == 403
    assert response.headers["X-Block-Reason"] == "Manual block: abuse"
    assert 0 < int(response.headers["Retry-After"]) <= 600
    assert int(response.headers["X-Block-Expires"]) > 0
    assert client.get("/health").status_code == 200


def test_untrusted_forwarded_header_is_ignored(client, admin):
    """Test a direct client cannot pick its address with X-Forwarded-For."""
    asyncio.run(app.state.ip_blocker.manual_block("testclient", 600, "abuse"))
    asyncio.run(app.state.ip_blocker.manual_block("41.70.1.9", 600, "abuse"))

    escaped = client.get(
        "/api/admin/security/blocks",
        headers={**admin, "X-Forwarded-For": "198.51.100.7"},
    )
    assert escaped.status_code == 403

    asyncio.run(app.state.ip_blocker.unblock("testclient"))
    framed = client.get(
        "/api/admin/security/blocks",
        headers={**admin, "X-Forwarded-For": "41.70.1.9"},
    )
    assert framed.status_code == 200


def test_forwarded_address_from_trusted_proxy(client, admin, settings, monkeypatch):
    monkeypatch.setattr(settings, "trusted_proxies", ["testclient", "10.0.0.2"])
    asyncio.run(app.state.ip_blocker.manual_block("41.70.1.9", 600, "abuse"))

    blocked = client.get(
        "/api/admin/security/blocks",
        headers={**admin, "X-Forwarded-For": "198.51.100.7, 41.70.1.9, 10.0.0.2"},
    )
    allowed = client.get("/api/admin/security/blocks", headers=admin)

    assert blocked.status_code == 403
    assert allowed.status_code == 200


def test_violations_endpoint(client, admin):
    asyncio.run(app.state.ip_blocker.record_violation("41.70.1.9", "/api/x"))

    found = client.get("/api/admin/security/violations/41.70.1.9", headers=admin).json()
    assert found["count"] == 1
    assert found["endpoints"] == ["/api/x"]

    assert client.delete("/api/admin/security/violations/41.70.1.9", headers=admin).status_code == 204
    cleared = client.get("/api/admin/security/violations/41.70.1.9", headers=admin).json()
    assert cleared == {
        "identifier": "41.70.1.9",
        "count": 0,
        "last_violation": None,
        "endpoints": [],
    }


def test_store_outage_on_admin_path(client, admin, fake_redis):
    """Test admin writes report the outage while requests keep flowing."""
    fake_redis.fail = True

    response = client.post(
        "/api/admin/security/blocks",
        json={"identifier": "41.70.1.9", "reason": "abuse"},
        headers=admin,
    )

    assert response.status_code == 503
    assert client.get("/health").status_code == 200


def test_webhook_crud(client, admin):
    created = client.post(
        "/api/webhooks",
        json={"url": "https://hooks.example.com/uploads", "event_type": "bulk_upload.completed"},
        headers=admin,
    )
    assert created.status_code == 201
    webhook_id = created.json()["id"]

    updated = client.put(
        f"/api/webhooks/{webhook_id}", json={"enabled": False}, headers=admin
    )
    assert updated.json()["enabled"] is False
    assert updated.json()["url"] == "https://hooks.example.com/uploads"

    assert len(client.get("/api/webhooks", headers=admin).json()) == 1
    assert client.delete(f"/api/webhooks/{webhook_id}", headers=admin).status_code == 204
    assert client.get(f"/api/webhooks/{webhook_id}", headers=admin).status_code == 404


@pytest.mark.parametrize(
    "body",
    [
        {"url": "https://hooks.example.com/x", "event_type": "product.created"},
        {"url": "ftp://hooks.example.com/x", "event_type": "bulk_upload.failed"},
    ],
)
def test_webhook_validation(client, admin, body):
    assert client.post("/api/webhooks", json=body, headers=admin).status_code == 422
