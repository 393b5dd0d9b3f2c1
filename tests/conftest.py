"""
Pytest configuration and shared fixtures for CRM sync tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- integration: Tests requiring a running CRM API

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
from __future__ import annotations

import itertools
import tempfile

import pytest

from crmsync.services.entities import ENTITY_KINDS, KIND_CONTACT, utc_now_iso
from crmsync.services.errors import NetworkFailure, RequestRejected
from crmsync.services.local_cache import LocalCache
from crmsync.services.pending_queue import PendingOperationQueue
from crmsync.services.sync_coordinator import SyncCoordinator


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (CRM API required)")


class FakeResource:
    """In-memory stand-in for one CRM collection endpoint."""

    def __init__(self, gateway: "FakeGateway", kind: str):
        self.gateway = gateway
        self.kind = kind
        self.records: dict[str, dict] = {}

    def seed(self, **fields) -> dict:
        """Put a record on the server directly (no call recorded)."""
        record_id = str(next(self.gateway.ids))
        now = utc_now_iso()
        self.records[record_id] = {**fields, "id": record_id, "createdAt": now, "updatedAt": now}
        return dict(self.records[record_id])

    async def _call(self, op: str, entity_id=None, payload=None):
        self.gateway.calls.append((op, self.kind, entity_id, payload))
        if self.gateway.hold is not None:
            await self.gateway.hold.wait()
        if self.gateway.offline:
            raise NetworkFailure("Connection refused")
        if (self.kind, entity_id) in self.gateway.rejected or (self.kind, op) in self.gateway.rejected:
            raise RequestRejected(400, f"{op} not allowed")

    async def list(self) -> list[dict]:
        await self._call("list")
        return [dict(r) for r in self.records.values()]

    async def get(self, entity_id: str) -> dict:
        await self._call("get", entity_id)
        if entity_id not in self.records:
            raise RequestRejected(404, "Not found")
        return dict(self.records[entity_id])

    async def create(self, payload: dict) -> dict:
        await self._call("create", None, payload)
        record_id = str(next(self.gateway.ids))
        now = utc_now_iso()
        self.records[record_id] = {**payload, "id": record_id, "userId": "u1",
                                   "createdAt": now, "updatedAt": now}
        return dict(self.records[record_id])

    async def update(self, entity_id: str, payload: dict) -> dict:
        await self._call("update", entity_id, payload)
        if entity_id not in self.records:
            raise RequestRejected(404, "Not found")
        self.records[entity_id] = {**self.records[entity_id], **payload, "updatedAt": utc_now_iso()}
        return dict(self.records[entity_id])

    async def delete(self, entity_id: str) -> None:
        await self._call("delete", entity_id)
        if entity_id not in self.records:
            raise RequestRejected(404, "Not found")
        del self.records[entity_id]

    async def bulk_add_tags(self, ids: list[str], tags: list[str]) -> list[dict]:
        await self._call("bulk_add_tags", tuple(ids), tags)
        updated = []
        for record_id in ids:
            record = self.records[record_id]
            record["tags"] = list(dict.fromkeys((record.get("tags") or []) + tags))
            updated.append(dict(record))
        return updated


class FakeGateway:
    """
    RemoteGateway double backed by dicts.

    offline: every call raises NetworkFailure
    rejected: {(kind, entity_id)} or {(kind, op)} answered with a 400
    hold: asyncio.Event every call waits on before answering
    """

    def __init__(self):
        self.offline = False
        self.rejected: set[tuple] = set()
        self.hold = None
        self.calls: list[tuple] = []
        self.ids = itertools.count(1)
        self._resources = {kind: FakeResource(self, kind) for kind in ENTITY_KINDS}

    def resource(self, kind: str) -> FakeResource:
        return self._resources[kind]

    @property
    def contacts(self) -> FakeResource:
        return self._resources[KIND_CONTACT]

    async def ping(self) -> bool:
        return not self.offline

    def ops(self) -> list[tuple]:
        """(op, kind) of every call made, in order."""
        return [(op, kind) for op, kind, _, _ in self.calls]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield f.name


@pytest.fixture
def cache(temp_db):
    """LocalCache on the temp database."""
    return LocalCache(db_path=temp_db)


@pytest.fixture
def queue(temp_db):
    """PendingOperationQueue sharing the cache's database."""
    return PendingOperationQueue(db_path=temp_db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(cache, queue, gateway, clock):
    """SyncCoordinator wired to the temp database and the fake gateway."""
    return SyncCoordinator(
        cache=cache,
        queue=queue,
        gateway=gateway,
        undo_window_seconds=10,
        clock=clock,
    )
