"""
Tests for the HTTP API (FastAPI TestClient against in-memory storage).
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from main import app
from services.storage import InMemoryStorage, set_storage


@pytest.fixture
def memory():
    storage = InMemoryStorage()
    set_storage(storage)
    return storage


@pytest.fixture
def client(memory):
    return TestClient(app)


def create_batch(client, jobs=None):
    response = client.post("/batches", json={
        "name": "Florida realtors",
        "jobs": jobs or [{"query": "realtor", "location": "Miami"}, {"query": "broker"}],
        "delay_seconds": 30,
    })
    assert response.status_code == 200
    return response.json()


@pytest.mark.unit
class TestHealth:

    def test_reports_missing_env(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "warning"
        assert body["env_status"]["SERPER_API_KEY"] == "missing"

    def test_ok_when_configured(self, client, monkeypatch):
        for key in ("SERPER_API_KEY", "TRUELIST_API_KEY", "MAILS_SO_API_KEY",
                    "SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"):
            monkeypatch.setenv(key, "x")

        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert set(body["env_status"].values()) == {"set"}


@pytest.mark.unit
class TestBatchEndpoints:

    def test_create_and_get_batch(self, client):
        batch = create_batch(client)

        assert batch["status"] == "pending"
        assert batch["total_jobs"] == 2

        detail = client.get(f"/batches/{batch['id']}").json()
        assert [j["query"] for j in detail["jobs"]] == ["realtor", "broker"]
        assert detail["jobs"][0]["location"] == "Miami"

    def test_list_batches_newest_first(self, client, memory):
        first = create_batch(client)
        second = create_batch(client)
        for batch, when in ((first, "2024-01-01T00:00:00+00:00"), (second, "2024-01-02T00:00:00+00:00")):
            asyncio.run(memory.update("search_batches", {"id": batch["id"]}, {"created_at": when}))

        response = client.get("/batches")

        assert response.status_code == 200
        assert [b["id"] for b in response.json()["batches"]] == [second["id"], first["id"]]

    def test_start_pause_resume(self, client):
        batch = create_batch(client)

        assert client.post(f"/batches/{batch['id']}/start").json()["status"] == "running"
        assert client.post(f"/batches/{batch['id']}/pause").json()["status"] == "paused"
        assert client.post(f"/batches/{batch['id']}/resume").json()["status"] == "running"

    def test_invalid_transition_is_400(self, client):
        batch = create_batch(client)

        response = client.post(f"/batches/{batch['id']}/pause")

        assert response.status_code == 400
        assert "pending" in response.json()["detail"]

    def test_unknown_batch_is_404(self, client):
        response = client.get("/batches/missing")

        assert response.status_code == 404
        assert response.json()["detail"]

    def test_create_without_jobs_is_400(self, client):
        response = client.post("/batches", json={"name": "empty", "jobs": [{"query": "  "}]})
        assert response.status_code == 400

    def test_reset_without_body(self, client):
        batch = create_batch(client)

        response = client.post(f"/batches/{batch['id']}/reset")

        assert response.status_code == 200
        assert response.json() == {"batch_id": batch["id"], "reset_jobs": 0}

    def test_queue_process_requires_serper_key(self, client):
        response = client.post("/queue/process")

        assert response.status_code == 500
        assert "SERPER_API_KEY" in response.json()["detail"]


@pytest.mark.unit
class TestSearchEndpoint:

    def test_blank_query_is_400(self, client, monkeypatch):
        monkeypatch.setenv("SERPER_API_KEY", "s-key")

        response = client.post("/search", json={"query": "   "})

        assert response.status_code == 400
        assert response.json()["detail"] == "Query is required"


@pytest.mark.unit
class TestValidationEndpoints:

    def test_enqueue(self, client, memory):
        response = client.post("/validation/queue", json={"emails": ["a@acme.io", "A@acme.io", "b@acme.io"]})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["total_emails"] == 2
        assert body["truelist_batch_id"] is None
        assert len(memory.rows("validation_queue")) == 2

    def test_enqueue_empty_is_400(self, client):
        response = client.post("/validation/queue", json={"emails": []})
        assert response.status_code == 400

    def test_queue_process_without_key_is_500(self, client):
        response = client.post("/validation/queue/process")

        assert response.status_code == 500
        assert response.json()["detail"] == "MAILS_SO_API_KEY not configured"

    def test_submit_without_key_is_500(self, client):
        response = client.post("/validation/batches", json={"emails": ["a@acme.io"]})

        assert response.status_code == 500
        assert "TRUELIST_API_KEY" in response.json()["detail"]

    def test_status_of_unknown_list_is_404(self, client, monkeypatch):
        monkeypatch.setenv("TRUELIST_API_KEY", "t-key")

        response = client.get("/validation/lists/missing/status")

        assert response.status_code == 404

    def test_webhook_without_batch_id_sweeps(self, client, monkeypatch):
        monkeypatch.setenv("TRUELIST_API_KEY", "t-key")

        response = client.post("/validation/webhook", json={})

        assert response.status_code == 200
        assert response.json() == {"success": True, "checked": 0}

    def test_webhook_unknown_batch_is_404(self, client, monkeypatch):
        monkeypatch.setenv("TRUELIST_API_KEY", "t-key")

        response = client.post("/validation/webhook", json={"batch_id": "nope"})

        assert response.status_code == 404
