"""Tests for the FastAPI read surface."""

import pytest
from fastapi.testclient import TestClient

from ordersync.main import create_app
from ordersync.services.diagnostics import DiagnosticsRecorder
from ordersync.services.orders_api.mock import (
    SAMPLE_CONFIG,
    SAMPLE_MENU,
    MockOrdersApi,
    build_sample_orders,
)
from ordersync.services.storage.memory import MemoryKeyValueStore
from ordersync.sync.engine import SyncEngine


@pytest.fixture
def sample_orders():
    return build_sample_orders(3)


@pytest.fixture
def client(settings, sample_orders):
    def engine_factory() -> SyncEngine:
        api = MockOrdersApi(orders=sample_orders, menu=SAMPLE_MENU, config=SAMPLE_CONFIG)
        return SyncEngine(api, MemoryKeyValueStore(), DiagnosticsRecorder(), settings=settings)

    app = create_app(engine_factory=engine_factory, polling_enabled=False)
    with TestClient(app) as test_client:
        yield test_client


def refresh(client):
    response = client.post("/api/refresh")
    assert response.status_code == 200
    return response.json()


def test_root(client):
    body = client.get("/").json()
    assert body["orders"] == "/api/orders"
    assert body["health"] == "/health"


def test_orders_empty_before_first_refresh(client):
    body = client.get("/api/orders").json()
    assert body["count"] == 0
    assert body["orders"] == []


def test_manual_refresh_publishes_orders(client, sample_orders):
    result = refresh(client)

    assert result["success"] is True
    assert result["orders_count"] == 3
    assert result["lookup_version"] == 1

    body = client.get("/api/orders").json()
    assert body["count"] == 3
    assert [order["guid"] for order in body["orders"]] == [order["guid"] for order in sample_orders]
    first = body["orders"][0]
    assert [item["name"] for item in first["items"]] == ["Big Brekky", "Flat White"]
    assert first["fulfillment_status"] == "SENT"


def test_status_filter(client):
    refresh(client)

    assert client.get("/api/orders", params={"status": "sent"}).json()["count"] == 3
    assert client.get("/api/orders", params={"status": "ready"}).json()["count"] == 0
    assert client.get("/api/orders", params={"status": "bogus"}).status_code == 422


def test_get_order(client, sample_orders):
    refresh(client)
    guid = sample_orders[1]["guid"]

    response = client.get(f"/api/orders/{guid}")
    assert response.status_code == 200
    assert response.json()["guid"] == guid

    assert client.get("/api/orders/missing").status_code == 404


def test_modifier_summary(client):
    refresh(client)

    groups = client.get("/api/modifiers").json()

    assert {group["name"] for group in groups} == {"Eggs", "Extras", "Milk"}
    for group in groups:
        assert all(item["qty"] == 3 for item in group["items"])


def test_diagnostics(client):
    refresh(client)

    body = client.get("/api/diagnostics", params={"type": "orders.refresh.success"}).json()
    assert len(body["events"]) == 1
    assert body["last_error"] is None


def test_debug_diff_available_in_development(client):
    refresh(client)

    body = client.get("/api/debug/diff").json()
    assert "entries" in body
    assert "issues" in body


def test_health(client):
    refresh(client)

    body = client.get("/health").json()
    assert body["status"] == "operational"
    assert body["upstream"] == "healthy"
    assert body["storage"] == "healthy"
    assert body["sync"] == "idle"
    assert body["orders_cached"] == 3
