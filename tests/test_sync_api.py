"""
Tests for the local API routes.

The coordinator is the real SyncCoordinator on a temp database with the fake
gateway from conftest, patched in place of the module singletons.
"""
import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from crmsync.main import app
from crmsync.services.entities import KIND_CONTACT, KIND_TASK


@pytest.fixture
def client(coordinator):
    """TestClient with every route module using the test coordinator."""
    targets = [
        "crmsync.main.get_sync_coordinator",
        "crmsync.routes.sync.get_sync_coordinator",
        "crmsync.routes.contacts.get_sync_coordinator",
        "crmsync.routes.tasks.get_sync_coordinator",
    ]
    patchers = [patch(target, return_value=coordinator) for target in targets]
    for patcher in patchers:
        patcher.start()
    yield TestClient(app)
    for patcher in patchers:
        patcher.stop()


class TestContactMutations:
    """POST/PUT/DELETE contact endpoints."""

    def test_create_confirmed(self, client):
        response = client.post("/api/contacts", json={"name": "Jane Doe"})

        assert response.status_code == 201
        data = response.json()
        assert data["state"] == "confirmed"
        assert data["entity"]["id"] == "1"
        assert data["entity"]["name"] == "Jane Doe"

    def test_create_offline_returns_202(self, client, gateway):
        gateway.offline = True

        response = client.post("/api/contacts", json={"name": "Jane Doe"})

        assert response.status_code == 202
        data = response.json()
        assert data["state"] == "queued"
        assert data["entity"]["id"].startswith("tmp-")
        assert data["error"]

    def test_create_invalid_payload(self, client):
        response = client.post("/api/contacts", json={"company": "Acme"})

        assert response.status_code == 422
        assert "missing required field 'name'" in response.json()["detail"]

    def test_create_rejected_by_server(self, client, gateway):
        gateway.rejected = {(KIND_CONTACT, "create")}

        response = client.post("/api/contacts", json={"name": "Jane Doe"})

        assert response.status_code == 502
        assert response.json()["detail"] == {"status_code": 400, "message": "create not allowed"}

    def test_update(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe"})

        response = client.put("/api/contacts/1", json={"company": "Acme"})

        assert response.status_code == 200
        assert response.json()["entity"]["company"] == "Acme"

    def test_update_unknown_contact(self, client):
        response = client.put("/api/contacts/99", json={"company": "Acme"})
        assert response.status_code == 404

    def test_delete_and_restore(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe"})

        deleted = client.delete("/api/contacts/1")
        assert deleted.status_code == 200
        assert client.get("/api/contacts").json() == []

        restored = client.post("/api/contacts/1/restore")
        assert restored.status_code == 201
        assert restored.json()["entity"]["id"] == "2"

    def test_restore_without_delete(self, client):
        response = client.post("/api/contacts/1/restore")
        assert response.status_code == 410

    def test_bulk_tags(self, client):
        client.post("/api/contacts", json={"name": "Jane", "tags": ["vip"]})
        client.post("/api/contacts", json={"name": "John"})

        response = client.post("/api/contacts/bulk/tags", json={"ids": ["1", "2"], "tags": ["vip", "lead"]})

        assert response.status_code == 200
        assert {c["id"]: c["tags"] for c in response.json()} == {
            "1": ["vip", "lead"],
            "2": ["vip", "lead"],
        }

    def test_bulk_tags_requires_ids(self, client):
        response = client.post("/api/contacts/bulk/tags", json={"ids": [], "tags": ["vip"]})
        assert response.status_code == 422


class TestContactReads:
    """Offline-capable reads and derived state."""

    def test_list_with_filters(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe", "tags": ["vip", "lead"]})
        client.post("/api/contacts", json={"name": "John Smith", "tags": ["vip"]})

        assert len(client.get("/api/contacts").json()) == 2
        assert [c["name"] for c in client.get("/api/contacts", params={"q": "jane"}).json()] == ["Jane Doe"]
        tagged = client.get("/api/contacts", params=[("tags", "vip"), ("tags", "lead")]).json()
        assert [c["name"] for c in tagged] == ["Jane Doe"]

    def test_duplicates(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe", "emails": ["jane@example.com"]})

        by_email = client.get("/api/contacts/duplicates", params={"email": "JANE@example.com"}).json()
        assert [c["id"] for c in by_email] == ["1"]

        excluded = client.get("/api/contacts/duplicates", params={"name": "jane", "exclude_id": "1"}).json()
        assert excluded == []

    def test_completeness(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe"})

        response = client.get("/api/contacts/1/completeness")

        assert response.status_code == 200
        assert response.json()["percentage"] == 15
        assert response.json()["filled_fields"] == ["Name"]

    def test_completeness_unknown_contact(self, client):
        assert client.get("/api/contacts/99/completeness").status_code == 404

    def test_get_contact_and_recently_viewed(self, client):
        client.post("/api/contacts", json={"name": "Jane Doe"})
        client.post("/api/contacts", json={"name": "John Smith"})

        assert client.get("/api/contacts/1").json()["name"] == "Jane Doe"
        assert client.get("/api/contacts/2").json()["name"] == "John Smith"
        client.get("/api/contacts/1")

        recent = client.get("/api/contacts/recent").json()
        assert [c["id"] for c in recent] == ["1", "2"]

    def test_get_unknown_contact(self, client):
        assert client.get("/api/contacts/99").status_code == 404


class TestSyncEndpoints:
    """Status, pending list and replay."""

    def test_offline_then_replay(self, client, gateway):
        gateway.offline = True
        client.post("/api/contacts", json={"name": "Jane Doe"})

        status = client.get("/api/sync/status").json()
        assert status["online"] is False
        assert status["pending_count"] == 1

        pending = client.get("/api/sync/pending").json()
        assert [(op["op_kind"], op["entity_kind"]) for op in pending] == [("create", "contact")]

        gateway.offline = False
        report = client.post("/api/sync/replay").json()

        assert report["replayed"] == 1
        assert report["remaining"] == 0
        assert report["halted"] is False
        assert client.get("/api/sync/status").json()["pending_count"] == 0
        assert client.get("/api/sync/status").json()["last_replay_at"] is not None

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["service"] == "crm-sync"


class TestTaskEndpoints:
    """Task completion and counters."""

    def test_complete_recurring_task(self, client, coordinator, gateway):
        gateway.resource(KIND_TASK).seed(
            title="Send invoice", status="PENDING", recurrence="MONTHLY", dueDate="2024-01-31",
        )
        asyncio.run(coordinator.load(KIND_TASK))

        response = client.post("/api/tasks/1/complete")

        assert response.status_code == 200
        data = response.json()
        assert data["completed"]["entity"]["status"] == "COMPLETED"
        assert data["successor"]["entity"]["dueDate"] == "2024-03-02"
        assert data["successor"]["entity"]["parentTaskId"] == "1"

    def test_complete_unknown_task(self, client):
        assert client.post("/api/tasks/99/complete").status_code == 404

    def test_stats(self, client, coordinator, gateway):
        tasks = gateway.resource(KIND_TASK)
        tasks.seed(title="a", status="PENDING", dueDate="2024-05-01")
        tasks.seed(title="b", status="PENDING", dueDate="2024-05-10")
        tasks.seed(title="c", status="COMPLETED")
        asyncio.run(coordinator.load(KIND_TASK))

        stats = client.get("/api/tasks/stats", params={"today": "2024-05-10"}).json()

        assert stats["total"] == 3
        assert stats["pending"] == 2
        assert stats["completed"] == 1
        assert stats["overdue"] == 1
        assert stats["due_today"] == 1
