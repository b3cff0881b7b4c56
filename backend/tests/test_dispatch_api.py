"""API tests for dispatch and metrics routes."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import os
import sys
from pathlib import Path

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_api"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch.db")
os.environ["APP_MODE"] = "demo"
os.environ["AUTH_ENABLED"] = "false"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from courier_dispatch.core import auth  # noqa: E402
from courier_dispatch.core.config import Settings  # noqa: E402
from courier_dispatch.main import app  # noqa: E402
from courier_dispatch.services.dispatch_engine import DispatchEngine, get_dispatch_engine  # noqa: E402
from courier_dispatch.services.dispatch_state import DispatchStateStore  # noqa: E402


client = TestClient(app)


def _use_engine(tmp_path, **settings) -> DispatchEngine:
    engine = DispatchEngine(
        DispatchStateStore(tmp_path / "dispatch.db"),
        settings=Settings(**{"capacity_ceiling": 2, "app_mode": "demo", **settings}),
    )
    app.dependency_overrides[get_dispatch_engine] = lambda: engine
    return engine


def _order_payload(area: str = "North") -> dict:
    return {
        "customer": {"name": "Ada Lovelace", "phone": "555-0100", "address": "1 Main St"},
        "area": area,
        "items": [
            {"name": "Pad Thai", "quantity": 2, "price": "10.50"},
            {"name": "Spring Rolls", "quantity": 1, "price": "4.00"},
        ],
        "scheduled_for": (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat(),
    }


def _partner_payload(email: str, areas=None) -> dict:
    return {
        "name": "Rider One",
        "email": email,
        "password": "pw-123456",
        "areas": areas or ["North"],
        "shift": {"start": "08:00", "end": "16:00"},
    }


def test_health_endpoint():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_order_intake_assignment_and_delivery_flow(tmp_path):
    _use_engine(tmp_path)

    partner = client.post("/dispatch/partners", json=_partner_payload("one@example.com"))
    assert partner.status_code == 200
    assert "password" not in partner.json()
    partner_id = partner.json()["partner_id"]

    created = client.post("/dispatch/orders", json=_order_payload())
    assert created.status_code == 200
    order = created.json()
    assert order["status"] == "pending"
    assert Decimal(order["total_amount"]) == Decimal("25.00")

    assigned = client.post(f"/dispatch/orders/{order['order_id']}/assign")
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "success"
    assert assigned.json()["partner_id"] == partner_id

    picked = client.post(f"/dispatch/orders/{order['order_id']}/pick", json={"expected_version": 2})
    assert picked.status_code == 200
    assert picked.json()["status"] == "picked"

    delivered = client.post(f"/dispatch/orders/{order['order_id']}/deliver")
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "delivered"

    again = client.post(f"/dispatch/orders/{order['order_id']}/deliver")
    assert again.status_code == 409

    rider = client.get(f"/dispatch/partners/{partner_id}").json()
    assert rider["current_load"] == 0
    assert rider["metrics"]["completed_orders"] == 1

    timeline = client.get(f"/dispatch/orders/{order['order_id']}/timeline")
    assert timeline.status_code == 200
    assert len(timeline.json()["events"]) == 4
    assert len(timeline.json()["assignments"]) == 1

    app.dependency_overrides.clear()


def test_unmatched_order_is_a_recorded_failure_not_an_error(tmp_path):
    _use_engine(tmp_path)
    order_id = client.post("/dispatch/orders", json=_order_payload("Harbor")).json()["order_id"]

    response = client.post("/dispatch/assignments/run", json={"order_id": order_id})
    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["reason"] == "no eligible partner in area"

    ledger = client.get("/dispatch/assignments", params={"orderId": order_id, "status": "failed"})
    assert ledger.status_code == 200
    assert len(ledger.json()) == 1
    entry_id = ledger.json()[0]["entry_id"]
    assert client.get(f"/dispatch/assignments/{entry_id}").json()["order_id"] == order_id

    app.dependency_overrides.clear()


def test_error_mapping(tmp_path):
    _use_engine(tmp_path)

    assert client.get("/dispatch/orders/ORD-999999").status_code == 404
    assert client.get("/dispatch/assignments/ASN-999999").status_code == 404

    bad_total = {**_order_payload(), "total_amount": "1.00"}
    assert client.post("/dispatch/orders", json=bad_total).status_code == 422

    order_id = client.post("/dispatch/orders", json=_order_payload()).json()["order_id"]
    assert client.post(f"/dispatch/orders/{order_id}/pick").status_code == 409
    assert client.post(f"/dispatch/orders/{order_id}/cancel").status_code == 409

    client.post("/dispatch/partners", json=_partner_payload("one@example.com"))
    assert client.post("/dispatch/partners", json=_partner_payload("one@example.com")).status_code == 409

    client.post(f"/dispatch/orders/{order_id}/assign")
    assert client.post(f"/dispatch/orders/{order_id}/assign").status_code == 409

    stale = client.post(f"/dispatch/orders/{order_id}/pick", json={"expected_version": 1})
    assert stale.status_code == 409
    assert stale.json()["detail"]["retryable"] is True

    inverted = client.get("/metrics/trends", params={"bucketing": "day", "start": "2024-05-02", "end": "2024-05-01"})
    assert inverted.status_code == 400

    app.dependency_overrides.clear()


def test_assignment_stats_accept_mixed_timezone_bounds(tmp_path):
    _use_engine(tmp_path)

    mixed = client.get(
        "/metrics/assignments/stats",
        params={"fromDate": "2024-01-01T00:00:00Z", "toDate": "2024-02-01T00:00:00"},
    )
    assert mixed.status_code == 200
    assert mixed.json()["total_assignments"] == 0

    inverted = client.get(
        "/metrics/assignments/stats",
        params={"fromDate": "2024-02-01T00:00:00", "toDate": "2024-01-01T00:00:00Z"},
    )
    assert inverted.status_code == 400

    app.dependency_overrides.clear()


def test_trend_ranges_at_calendar_end_and_over_limit(tmp_path):
    _use_engine(tmp_path, trend_max_buckets=400)

    last_day = client.get("/metrics/trends", params={"bucketing": "day", "start": "9999-12-31", "end": "9999-12-31"})
    assert last_day.status_code == 200
    assert [bucket["bucket"] for bucket in last_day.json()] == ["9999-12-31"]

    last_month = client.get("/metrics/trends", params={"bucketing": "month", "start": "9999-12-01", "end": "9999-12-31"})
    assert last_month.status_code == 200
    assert len(last_month.json()) == 1

    too_wide = client.get("/metrics/trends", params={"bucketing": "day", "start": "0001-01-01", "end": "2999-12-01"})
    assert too_wide.status_code == 400
    assert "limit" in too_wide.json()["detail"]

    app.dependency_overrides.clear()


def test_idempotency_key_replays_first_response(tmp_path):
    engine = _use_engine(tmp_path)
    headers = {"Idempotency-Key": "order-abc"}

    first = client.post("/dispatch/orders", json=_order_payload(), headers=headers)
    second = client.post("/dispatch/orders", json=_order_payload(), headers=headers)
    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["order_id"] == second.json()["order_id"]
    assert len(engine.list_orders()) == 1

    app.dependency_overrides.clear()


def test_order_and_partner_listing_filters(tmp_path):
    _use_engine(tmp_path)
    client.post("/dispatch/orders", json=_order_payload("North"))
    client.post("/dispatch/orders", json=_order_payload("South"))
    client.post("/dispatch/partners", json=_partner_payload("n@example.com", ["North"]))
    partner_id = client.post("/dispatch/partners", json=_partner_payload("s@example.com", ["South"])).json()["partner_id"]

    assert len(client.get("/dispatch/orders").json()) == 2
    assert [o["area"] for o in client.get("/dispatch/orders", params={"area": "South"}).json()] == ["South"]
    assert client.get("/dispatch/orders", params={"status": "delivered"}).json() == []
    today = datetime.now(timezone.utc).date()
    assert len(client.get("/dispatch/orders", params={"date": today.isoformat()}).json()) == 2
    yesterday = (today - timedelta(days=1)).isoformat()
    assert client.get("/dispatch/orders", params={"date": yesterday}).json() == []


    patched = client.patch(f"/dispatch/partners/{partner_id}", json={"status": "inactive", "rating": 4.1})
    assert patched.status_code == 200
    assert patched.json()["metrics"]["rating"] == 4.1
    active = client.get("/dispatch/partners", params={"status": "active"}).json()
    assert [p["email"] for p in active] == ["n@example.com"]

    app.dependency_overrides.clear()


def test_batch_run_and_metrics_endpoints(tmp_path):
    _use_engine(tmp_path)
    client.post("/dispatch/partners", json=_partner_payload("n@example.com", ["North"]))
    for area in ("North", "North", "North", "Harbor"):
        client.post("/dispatch/orders", json=_order_payload(area))

    batch = client.post("/dispatch/assignments/run-batch", json={})
    assert batch.status_code == 200
    assert batch.json()["assigned"] == 2
    assert batch.json()["failed"] == 2

    snapshot = client.get("/metrics/assignments").json()
    assert snapshot["total_assigned"] == 2
    assert snapshot["success_rate"] == 50.0
    assert snapshot["failure_reasons"][0]["count"] == 1

    trends = client.get("/metrics/trends", params={"bucketing": "week"})
    assert trends.status_code == 200
    assert sum(bucket["orders"] for bucket in trends.json()) == 4

    locations = client.get("/metrics/locations").json()
    assert {row["area"] for row in locations} == {"North", "Harbor"}

    partners = client.get("/metrics/partners").json()
    assert partners["total_active"] == 1
    assert partners["top_areas"] == ["North"]

    stats = client.get("/metrics/assignments/stats").json()
    assert stats["total_assignments"] == 4
    assert stats["successful_assignments"] == 2

    dashboard = client.get("/metrics/dashboard").json()
    assert dashboard["total_orders"] == 4
    assert dashboard["assigned_orders"] == 2
    assert dashboard["pending_orders"] == 2

    app.dependency_overrides.clear()


def test_viewer_role_cannot_mutate(tmp_path):
    _use_engine(tmp_path)
    viewer = {"X-Actor": "vic", "X-Actor-Role": "viewer"}
    operator = {"X-Actor": "olga", "X-Actor-Role": "operator"}

    assert client.post("/dispatch/orders", json=_order_payload(), headers=viewer).status_code == 403
    assert client.get("/dispatch/orders", headers=viewer).status_code == 200
    assert client.post("/dispatch/orders", json=_order_payload(), headers=operator).status_code == 200
    assert client.post("/dispatch/partners", json=_partner_payload("x@example.com"), headers=operator).status_code == 403
    assert client.get("/dispatch/orders", headers={"X-Actor-Role": "captain"}).status_code == 400

    app.dependency_overrides.clear()


def test_bearer_tokens_when_auth_enabled(tmp_path, monkeypatch):
    _use_engine(tmp_path)
    secured = Settings(auth_enabled=True, api_tokens="tok-op:olga:operator,tok-view:vic:viewer,broken")
    monkeypatch.setattr(auth, "get_settings", lambda: secured)

    assert client.get("/dispatch/orders").status_code == 401
    assert client.get("/dispatch/orders", headers={"Authorization": "Bearer nope"}).status_code == 403
    viewer = {"Authorization": "Bearer tok-view"}
    assert client.post("/dispatch/orders", json=_order_payload(), headers=viewer).status_code == 403

    created = client.post("/dispatch/orders", json=_order_payload(), headers={"Authorization": "Bearer tok-op"})
    assert created.status_code == 200
    timeline = client.get(f"/dispatch/orders/{created.json()['order_id']}/timeline", headers=viewer).json()
    assert timeline["events"][0]["actor"] == "olga"

    app.dependency_overrides.clear()


def test_demo_seed_populates_store(tmp_path):
    _use_engine(tmp_path)
    response = client.post("/dispatch/seed", json={"seed": 11, "partners": 4, "orders": 12})
    assert response.status_code == 200
    payload = response.json()
    assert payload["partners_created"] == 4
    assert payload["orders_created"] == 12
    assert payload["assigned"] + payload["failed"] == 12

    dashboard = client.get("/metrics/dashboard").json()
    assert dashboard["total_orders"] == 12
    assert dashboard["total_partners"] == 4

    _use_engine(tmp_path / "prod", app_mode="production")
    assert client.post("/dispatch/seed", json={}).status_code == 403

    app.dependency_overrides.clear()
