"""
Tests for the saga API.

These tests run real scenarios through the FastAPI app on threaded systems
and inspect the results through the inspection endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app, history


@pytest.fixture
def api_client():
    """Create a test client with an empty run history."""
    history.clear()
    yield TestClient(app)
    history.clear()


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, api_client):
        response = api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "event-fabric"}


class TestDemoEndpoints:
    """Tests for running scenarios."""

    def test_list_scenarios(self, api_client):
        response = api_client.get("/demo/scenarios")

        assert response.status_code == 200
        names = [s["name"] for s in response.json()]
        assert names == [
            "success",
            "inventory-failure",
            "payment-failure",
            "notification-failure",
            "cancellation",
            "timeout",
        ]

    def test_run_success_scenario(self, api_client):
        response = api_client.post("/demo/order-saga", params={"scenario": "success", "order_id": "ord-api-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["scenario"] == "success"
        assert data["order_id"] == "ord-api-1"
        assert data["saga_state"] == "COMPLETED"
        assert data["order_status"] == "CONFIRMED"
        assert data["events"] == [
            "OrderPlaced",
            "InventoryReserved",
            "PaymentCharged",
            "NotificationSent",
            "OrderConfirmed",
        ]
        assert data["dead_letters"] == 0

    def test_run_payment_failure_scenario(self, api_client):
        response = api_client.post("/demo/order-saga", params={"scenario": "payment-failure"})

        data = response.json()
        assert data["saga_state"] == "FAILED"
        assert data["order_status"] == "CANCELLED"
        assert data["order_id"].startswith("ord-")

    def test_unknown_scenario(self, api_client):
        response = api_client.post("/demo/order-saga", params={"scenario": "meteor-strike"})

        assert response.status_code == 400
        assert "Unknown scenario" in response.json()["detail"]


class TestInspectionEndpoints:
    """Tests for sagas and dead letters from previous runs."""

    def test_get_saga(self, api_client):
        run = api_client.post("/demo/order-saga", params={"scenario": "success"}).json()

        response = api_client.get(f"/sagas/{run['correlation_id']}")

        assert response.status_code == 200
        saga = response.json()
        assert saga["state"] == "COMPLETED"
        assert saga["saga_type"] == "OrderFulfillment"
        assert saga["completed_steps"] == 3

    def test_get_unknown_saga(self, api_client):
        response = api_client.get("/sagas/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404

    def test_list_sagas_by_state(self, api_client):
        api_client.post("/demo/order-saga", params={"scenario": "success"})
        api_client.post("/demo/order-saga", params={"scenario": "inventory-failure"})

        assert len(api_client.get("/sagas").json()) == 2
        failed = api_client.get("/sagas", params={"state": "failed"}).json()
        assert [s["state"] for s in failed] == ["FAILED"]

    def test_dead_letters_start_empty(self, api_client):
        api_client.post("/demo/order-saga", params={"scenario": "success"})

        response = api_client.get("/dead-letters")

        assert response.status_code == 200
        assert response.json() == []
        assert api_client.get("/dead-letters", params={"handler_id": "payment.charge"}).json() == []
