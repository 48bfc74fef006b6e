"""Tests for the HTTP API with the coordinator swapped for an in-memory device."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from protee.main import app
from protee.sync.engine import SyncCoordinator, get_sync_coordinator
from protee.sync.records import EntityType


@pytest.fixture
def device(make_device):
    return make_device()


@pytest.fixture
def client(device):
    app.dependency_overrides[get_sync_coordinator] = lambda: device.coordinator
    yield TestClient(app)
    app.dependency_overrides.clear()


def log(client, name="Eggs", protein=30, at="2026-03-01T08:00:00Z"):
    response = client.post("/api/entries", json={"food_name": name, "protein": protein, "consumed_at": at})
    assert response.status_code == 201
    return response.json()


class TestEntries:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_create_and_list(self, client):
        entry = log(client)
        assert entry["date"] == "2026-03-01"
        assert entry["sync_status"] == "pending"

        listed = client.get("/api/entries", params={"date": "2026-03-01"}).json()
        assert [e["sync_id"] for e in listed] == [entry["sync_id"]]

    def test_naive_timestamps_rejected(self, client):
        response = client.post(
            "/api/entries", json={"food_name": "Eggs", "protein": 30, "consumed_at": "2026-03-01T08:00:00"},
        )
        assert response.status_code == 422

    def test_update(self, client):
        entry = log(client)
        response = client.patch(f"/api/entries/{entry['sync_id']}", json={"protein": 42})
        assert response.status_code == 200
        assert response.json()["protein"] == 42
        assert response.json()["updated_at"] != entry["updated_at"]

    def test_delete_is_soft(self, client, device):
        entry = log(client)
        assert client.delete(f"/api/entries/{entry['sync_id']}").status_code == 204
        assert client.get("/api/entries", params={"date": "2026-03-01"}).json() == []
        assert device.local.get_by_sync_id(EntityType.food_entry, entry["sync_id"]).is_deleted

    def test_missing_entry(self, client):
        assert client.patch("/api/entries/nope", json={"protein": 1}).status_code == 404
        assert client.delete("/api/entries/nope").status_code == 404

    def test_storage_failure_is_500(self, client, device):
        with device.local._session_factory() as db:
            db.connection().exec_driver_sql("DROP TABLE food_entries")
            db.commit()
        response = client.post("/api/entries", json={"food_name": "Eggs", "protein": 30})
        assert response.status_code == 500


class TestGoalsMessagesMps:
    def test_goal_defaults_then_set(self, client):
        assert client.get("/api/goals/2026-03-01").json()["goal"] == 150
        set_ = client.put("/api/goals/2026-03-01", json={"goal": 180}).json()
        again = client.put("/api/goals/2026-03-01", json={"goal": 190}).json()
        assert again["sync_id"] == set_["sync_id"]
        assert client.get("/api/goals/2026-03-01").json()["goal"] == 190

    def test_messages(self, client):
        client.post("/api/messages", json={"role": "user", "content": "Had eggs"})
        client.post("/api/messages", json={"role": "assistant", "content": "Nice!", "quick_replies": ["More"]})
        messages = client.get("/api/messages").json()
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["quick_replies"] == ["More"]
        assert len(client.get("/api/messages", params={"limit": 1}).json()) == 1

    def test_mps(self, client):
        log(client, "Eggs", 30, "2026-03-01T08:00:00Z")
        log(client, "Apple", 10, "2026-03-01T09:00:00Z")
        log(client, "Shake", 28, "2026-03-01T10:30:00Z")
        log(client, "Steak", 26, "2026-03-01T13:30:00Z")
        body = client.get("/api/mps", params={"date": "2026-03-01"}).json()
        assert body["hit_count"] == 2
        assert [h["food_name"] for h in body["hits"]] == ["Eggs", "Steak"]

    def test_settings_are_local(self, client):
        assert client.patch("/api/settings", json={"default_goal": 170}).json()["default_goal"] == 170
        assert client.get("/api/goals/2026-03-02").json()["goal"] == 170


class TestSyncRoutes:
    def test_sync_now_and_status(self, client, backend):
        log(client)
        assert client.get("/api/sync/status").json()["pending_count"] == 1

        result = client.post("/api/sync").json()
        assert result["success"] is True
        assert result["types"]["food_entry"]["pushed"] == 1

        status = client.get("/api/sync/status").json()
        assert status["state"] == "idle"
        assert status["pending_count"] == 0
        assert status["user_id"] == "user-1"

    def test_force_resync(self, client, backend):
        log(client)
        client.post("/api/sync")
        backend.pull_log.clear()
        assert client.post("/api/sync/force-resync").json()["success"] is True
        assert all(since is None for _, since, _ in backend.pull_log)

    def test_sign_in_and_out(self, client, device):
        device.auth.session = None
        response = client.post("/api/sync/sign-in", json={"email": "me@example.com", "password": "secret"})
        assert response.status_code == 200
        assert response.json()["email"] == "me@example.com"

        status = client.post("/api/sync/sign-out").json()
        assert status["user_id"] is None

    def test_bad_credentials_are_401(self, client):
        response = client.post("/api/sync/sign-in", json={"email": "me@example.com", "password": "wrong"})
        assert response.status_code == 401

    def test_not_configured(self, client, device):
        app.dependency_overrides[get_sync_coordinator] = lambda: SyncCoordinator(device.local, device.state)
        assert client.get("/api/sync/status").json()["state"] == "not_configured"
        assert client.post("/api/sync").json()["skipped"] == "not_configured"
        response = client.post("/api/sync/sign-in", json={"email": "me@example.com", "password": "x"})
        assert response.status_code == 409

    def test_reset_remote(self, client, backend):
        log(client)
        client.post("/api/sync")
        body = client.delete("/api/sync/remote").json()
        assert body["scope"] == "own"
        assert body["deleted"]["food_entry"] == 1
        assert backend.rows == {}
