"""HTTP contract tests for the metering router."""
from datetime import datetime, timedelta, timezone

import pytest

from atelier.core.config import settings
from atelier.features.ledger.service import balance


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "test-admin-key-123")
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    return "test-admin-key-123"


def test_list_plans(client):
    resp = client.get("/v1/metering/plans")
    assert resp.status_code == 200
    body = resp.json()
    assert [p["plan_id"] for p in body["plans"]] == ["monthly", "sixMonth", "annual"]
    assert body["plans"][0]["tokens_per_period"] == 5000


def test_balance_includes_display_fields(client):
    client.post("/v1/metering/users/api-user/deduct", json={"amount": 1})
    resp = client.get("/v1/metering/users/api-user/balance")
    assert resp.status_code == 200
    body = resp.json()
    assert body["remaining"] == 999
    assert body["percent_display"] == "0.10%"
    assert body["remaining_display"] == "999"
    assert body["usage_level"] == "low"
    assert body["plan_type"] == "free"


def test_deduct_commits(client):
    resp = client.post(
        "/v1/metering/users/api-user/deduct",
        json={"amount": 10, "reason": " caption ", "idempotency_key": "req-1"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "committed"
    assert body["remaining"] == 990
    assert body["operation_id"]

    usage = client.get("/v1/metering/users/api-user/usage").json()
    assert usage["events"][0]["reason"] == "caption"


def test_deduct_rejection_uses_quota_error_contract(client):
    resp = client.post("/v1/metering/users/api-user/deduct", json={"amount": 1001})
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "insufficient_tokens"
    assert error["remaining"] == 1000
    assert error["required"] == 1001
    assert error["request_id"] == resp.headers["x-request-id"]


def test_negative_deduct_is_invalid_amount(client):
    resp = client.post("/v1/metering/users/api-user/deduct", json={"amount": -3})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_amount"


def test_refund_by_operation(client):
    op = client.post("/v1/metering/users/api-user/deduct", json={"amount": 7}).json()
    resp = client.post(
        "/v1/metering/users/api-user/refund",
        json={"amount": 7, "operation_id": op["operation_id"]},
    )
    assert resp.status_code == 200
    assert resp.json()["remaining"] == 1000


def test_refund_unknown_operation_is_not_found(client):
    resp = client.post("/v1/metering/users/api-user/refund", json={"amount": 1, "operation_id": 424242})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_subscription_lifecycle_endpoints(client):
    base = "/v1/metering/users/api-user/subscription"

    activated = client.post(f"{base}/activate", json={"plan_id": "monthly"})
    assert activated.status_code == 200
    assert activated.json()["state"] == "active"
    assert activated.json()["tokens_limit"] == 5000

    cancelled = client.post(f"{base}/cancel")
    assert cancelled.json()["state"] == "cancelled"

    reactivated = client.post(f"{base}/reactivate")
    assert reactivated.json()["state"] == "active"

    current = client.get(base)
    assert current.json()["plan_type"] == "monthly"


def test_activate_unknown_plan(client):
    resp = client.post("/v1/metering/users/api-user/subscription/activate", json={"plan_id": "gold"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unknown_plan"


def test_reactivate_when_not_cancelled_conflicts(client):
    resp = client.post("/v1/metering/users/api-user/subscription/reactivate")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "not_cancelled"


def test_add_on_and_entitlement_endpoints(client):
    client.post("/v1/metering/users/api-user/subscription/activate", json={"plan_id": "annual"})

    purchased = client.post(
        "/v1/metering/users/api-user/add-ons",
        json={"resource_kind": "brand_profile", "quantity": 1, "idempotency_key": "co-1"},
    )
    assert purchased.status_code == 200
    add_on_id = purchased.json()["id"]

    cap = client.get(
        "/v1/metering/users/api-user/entitlements/brand_profile",
        params={"current_count": 2},
    ).json()
    assert cap["effective_cap"] == 3
    assert cap["can_create"] is True

    listed = client.get("/v1/metering/users/api-user/add-ons").json()
    assert listed["count"] == 1

    deleted = client.delete(f"/v1/metering/users/api-user/add-ons/{add_on_id}")
    assert deleted.status_code == 200
    assert deleted.json()["active"] is False

    cap = client.get("/v1/metering/users/api-user/entitlements/brand_profile").json()
    assert cap["effective_cap"] == 2
    assert "can_create" not in cap


def test_unknown_resource_kind_is_validation_error(client):
    resp = client.get("/v1/metering/users/api-user/entitlements/storefront")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_rollover_sweep_endpoint(client, admin_key):
    balance("sweep-user", now=datetime.now(timezone.utc) - timedelta(days=31))

    resp = client.post("/v1/metering/admin/rollover/sweep", headers={"X-Admin-Key": admin_key})
    assert resp.status_code == 200
    body = resp.json()
    assert body["scanned"] == 1
    assert body["renewed"] == 1


def test_rollover_sweep_requires_admin_key(client, admin_key):
    resp = client.post("/v1/metering/admin/rollover/sweep")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"

    resp = client.post("/v1/metering/admin/rollover/sweep", headers={"X-Admin-Key": "wrong"})
    assert resp.status_code == 401


def test_rollover_sweep_unconfigured_is_unavailable(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)

    resp = client.post("/v1/metering/admin/rollover/sweep")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


def test_rollover_sweep_ignores_client_clock(client, admin_key):
    client.post("/v1/metering/users/victim/deduct", json={"amount": 1000})

    resp = client.post(
        "/v1/metering/admin/rollover/sweep",
        headers={"X-Admin-Key": admin_key},
        json={"now": "2099-01-01T00:00:00Z"},
    )
    assert resp.status_code == 200
    assert resp.json()["renewed"] == 0

    rejected = client.post("/v1/metering/users/victim/deduct", json={"amount": 1000})
    assert rejected.status_code == 403
    assert rejected.json()["error"]["code"] == "insufficient_tokens"


def test_healthz_and_metrics(client):
    client.post("/v1/metering/users/api-user/deduct", json={"amount": 2})

    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert 'metering_deductions_total{outcome="committed"} 1.0' in metrics.text
    assert "metering_tokens_deducted_total 2.0" in metrics.text


def test_deduct_store_failure_is_503(client, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from atelier.features.ledger import service as ledger_service

    def lost_connection(*args, **kwargs):
        raise OperationalError("INSERT INTO usage_events", {}, Exception("server closed the connection"))

    monkeypatch.setattr(ledger_service, "record_usage_event", lost_connection)
    resp = client.post("/v1/metering/users/api-user/deduct", json={"amount": 5})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
