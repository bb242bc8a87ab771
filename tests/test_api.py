# tests/test_api.py

"""
Tests for the HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from app.database import InMemoryRecordStore
from app.dependencies import get_record_store
from app.main import app


def gateway_row(id: str, amount: float) -> dict:
    return {
        "id": id,
        "source_domain": "gateway",
        "source": "braintree",
        "transaction_date": "2025-03-10",
        "amount": amount,
        "currency": "EUR",
        "metadata": {"gateway": "braintree", "order_id": f"INV-{id}"},
    }


def invoice_row(id: str, amount: float) -> dict:
    return {
        "id": f"i-{id}",
        "source_domain": "invoice",
        "source": "holded",
        "transaction_date": "2025-03-09",
        "amount": amount,
        "metadata": {"invoice_number": f"INV-{id}", "financial_account_code": "101"},
    }


@pytest.fixture
def store():
    return InMemoryRecordStore([gateway_row("g1", 120.0), invoice_row("g1", 120.0)])


@pytest.fixture
def client(store):
    app.dependency_overrides[get_record_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["service"] == "cash-reconciliation-api"

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"


class TestReconcileEndpoint:

    def test_run(self, client, store):
        response = client.post("/reconcile", json={})

        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is False
        assert body["phases"] == {"gateway_invoice": {"exact-identifier": 1}}
        assert body["coverage_percent"] == 100.0
        assert store.get_annotation("g1")["matched_target_id"] == "i-g1"

    def test_dry_run(self, client, store):
        response = client.post("/reconcile", json={"dry_run": True, "domain_filter": ["gateway"]})

        assert response.status_code == 200
        assert response.json()["merge"]["written"] == 0
        assert store.writes == 0

    def test_store_unavailable(self, client, store):
        store.fail_after_pages.update({"bank": 0, "gateway": 0, "invoice": 0})
        response = client.post("/reconcile", json={})

        assert response.status_code == 503

    def test_unconfigured_store(self):
        app.dependency_overrides.clear()
        response = TestClient(app).post("/reconcile", json={})

        assert response.status_code == 503


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
