"""
HTTP surface over in-memory services: status codes for each failure kind and the
full order flow driven through the routes.
"""
import asyncio
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from _helper import add_driver, build_services
from orderflow import main
from orderflow.config import settings
from orderflow.main import create_app


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


ORDER_BODY = {
    "restaurant_id": "r1",
    "items": [{"menu_item_id": "m1", "quantity": 2}, {"menu_item_id": "m2", "quantity": 2, "notes": "less ice"}],
    "delivery_address": "Jl. Raya Abepura 12",
}


@pytest.fixture
def services():
    return build_services()


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def place(client, token="tok-customer", body=ORDER_BODY, **headers):
    return client.post("/orders", json=body, headers={**auth(token), **headers})


def test_missing_or_bad_credentials(client):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"Authorization": "Basic abc"}).status_code == 401
    resp = client.get("/orders", headers=auth("tok-nope"))
    assert resp.status_code == 401
    assert resp.json()["error"] == "unauthorized"


def test_full_flow_over_http(services, client):
    asyncio.run(add_driver(services, "d1", available=False))
    asyncio.run(add_driver(services, "d2", available=False))

    resp = place(client)
    assert resp.status_code == 201
    order = resp.json()
    assert order["status"] == "placed"
    assert Decimal(order["total_amount"]) == Decimal("60000")
    order_id = order["id"]

    assert client.post(f"/orders/{order_id}/accept", headers=auth("tok-customer")).status_code == 403
    resp = client.post(f"/orders/{order_id}/accept", headers=auth("tok-owner"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "accepted"

    resp = client.post(f"/orders/{order_id}/ready", headers=auth("tok-admin"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "ready_for_pickup"
    assert resp.json()["dispatch"] == "pending"

    resp = client.put("/drivers/me/availability", json={"is_available": True}, headers=auth("tok-driver-1"))
    assert resp.status_code == 200
    assert resp.json()["active_order_id"] == order_id

    resp = client.get(f"/orders/{order_id}", headers=auth("tok-customer"))
    assert resp.json()["status"] == "out_for_delivery"
    assert resp.json()["driver_id"] == "d1"

    assert client.post(f"/orders/{order_id}/delivered", headers=auth("tok-driver-2")).status_code == 403
    resp = client.post(f"/orders/{order_id}/delivered", headers=auth("tok-driver-1"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    resp = client.post(f"/orders/{order_id}/delivered", headers=auth("tok-driver-1"))
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"
    assert client.post(f"/orders/{order_id}/cancel", headers=auth("tok-customer")).status_code == 409

    resp = client.get(f"/orders/{order_id}/history", headers=auth("tok-customer"))
    assert [h["status"] for h in resp.json()["results"]] == [
        "placed",
        "accepted",
        "ready_for_pickup",
        "out_for_delivery",
        "delivered",
    ]

    resp = client.get("/drivers/me/earnings", headers=auth("tok-driver-1"))
    assert resp.status_code == 200
    assert resp.json()["total_orders"] == 1
    assert Decimal(resp.json()["total_earnings"]) == Decimal("10000")


def test_ready_assigns_when_driver_free(services, client):
    asyncio.run(add_driver(services, "d1"))
    order_id = place(client).json()["id"]
    client.post(f"/orders/{order_id}/accept", headers=auth("tok-admin"))
    resp = client.post(f"/orders/{order_id}/ready", headers=auth("tok-admin"))
    assert resp.json()["dispatch"] == "assigned"
    assert resp.json()["driver_id"] == "d1"

    resp = client.post(f"/orders/{order_id}/reassign", json={"reason": "flat tyre"}, headers=auth("tok-driver-1"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "ready_for_pickup"


def test_invalid_order_is_422(client):
    body = {**ORDER_BODY, "items": [{"menu_item_id": "m3", "quantity": 1}]}
    resp = place(client, body=body)
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_order"

    resp = place(client, body={"restaurant_id": "r1", "items": []})
    assert resp.status_code == 422


def test_create_order_wrong_role_is_403(client):
    resp = place(client, token="tok-driver-1")
    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_idempotency_key_header(client):
    first = place(client, **{"Idempotency-Key": "abc"})
    second = place(client, **{"Idempotency-Key": "abc"})
    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert len(client.get("/orders", headers=auth("tok-customer")).json()["results"]) == 1


def test_idempotency_key_still_in_flight_is_409(services, client):
    asyncio.run(services.idempotency.claim("idempotency:cust-1:busy", "order-being-written"))
    resp = place(client, **{"Idempotency-Key": "busy"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "request_in_progress"


def test_cancel_with_reason_and_listing_filter(client):
    keep = place(client).json()["id"]
    drop = place(client).json()["id"]
    resp = client.post(f"/orders/{drop}/cancel", json={"reason": "duplicate"}, headers=auth("tok-customer"))
    assert resp.status_code == 200
    assert resp.json()["cancellation_reason"] == "duplicate"
    assert client.post(f"/orders/{keep}/cancel", headers=auth("tok-customer-2")).status_code == 403

    resp = client.get("/orders", params={"status": "placed"}, headers=auth("tok-customer"))
    assert [o["id"] for o in resp.json()["results"]] == [keep]
    assert client.get("/orders", params={"status": "bogus"}, headers=auth("tok-customer")).status_code == 422
    assert client.get(f"/orders/{keep}", headers=auth("tok-customer-2")).status_code == 403
    assert client.get("/orders/missing", headers=auth("tok-admin")).status_code == 404


def test_owner_lists_restaurant_orders(client):
    order_id = place(client).json()["id"]
    resp = client.get("/orders", params={"restaurant_id": "r1"}, headers=auth("tok-owner"))
    assert resp.status_code == 200
    assert [o["id"] for o in resp.json()["results"]] == [order_id]
    assert client.get(f"/orders/{order_id}", headers=auth("tok-owner")).status_code == 200
    assert client.get("/orders", params={"restaurant_id": "r3"}, headers=auth("tok-owner")).json()["results"] == []


def test_admin_dispatch_endpoints(services, client):
    order_id = place(client).json()["id"]
    client.post(f"/orders/{order_id}/accept", headers=auth("tok-admin"))
    client.post(f"/orders/{order_id}/ready", headers=auth("tok-admin"))

    assert client.post(f"/admin/orders/{order_id}/dispatch", headers=auth("tok-customer")).status_code == 403
    resp = client.post(f"/admin/orders/{order_id}/dispatch", headers=auth("tok-admin"))
    assert resp.status_code == 202
    assert resp.json() == {"order_id": order_id, "dispatch": "pending"}

    asyncio.run(add_driver(services, "d1"))
    resp = client.post("/admin/dispatch/run", headers=auth("tok-admin"))
    assert resp.status_code == 200
    assert resp.json()["assigned"] == [{"order_id": order_id, "driver_id": "d1"}]

    resp = client.post(f"/admin/orders/{order_id}/dispatch", headers=auth("tok-admin"))
    assert resp.status_code == 409
    assert resp.json()["error"] == "already_assigned"


def test_admin_driver_roster(services, client):
    asyncio.run(add_driver(services, "d1"))
    assert client.get("/admin/drivers", headers=auth("tok-driver-1")).status_code == 403
    resp = client.get("/admin/drivers", headers=auth("tok-admin"))
    assert [d["id"] for d in resp.json()["results"]] == ["d1"]

    resp = client.put("/admin/drivers/d1/active", json={"is_active": False}, headers=auth("tok-admin"))
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert client.put("/admin/drivers/ghost/active", json={"is_active": True}, headers=auth("tok-admin")).status_code == 404


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "ready_orders_waiting" in resp.text


def test_health_reports_unreachable_redis(client, monkeypatch):
    async def unreachable():
        return False

    monkeypatch.setattr(settings, "session_backend", "redis")
    monkeypatch.setattr(main, "redis_reachable", unreachable)
    resp = client.get("/health")
    assert resp.status_code == 503
    assert resp.json() == {"status": "degraded", "redis": False}
