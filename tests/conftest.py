"""Shared fixtures: in-memory store, recording sink, fixed clock, API client."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

# Must be set before opsflow.config is imported anywhere
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SYNC_WEBHOOK_SECRET", "test-secret")

from fastapi.testclient import TestClient

from opsflow.adapters.notifications import NotificationSink
from opsflow.deps import build_services
from opsflow.engine.store import MemoryStore

# Monday 2024-03-04 10:00 America/New_York
START = datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

WEBHOOK_SECRET = "test-secret"


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class RecordingSink(NotificationSink):
    """Records every call. fail_times / fail_all make calls return success=False."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, Optional[dict[str, Any]]]] = []
        self.fail_times = 0
        self.fail_all = False

    def _result(self) -> dict[str, Any]:
        if self.fail_all:
            return {"success": False, "error": "boom"}
        if self.fail_times > 0:
            self.fail_times -= 1
            return {"success": False, "error": "boom"}
        return {"success": True}

    async def send(self, entity_id, template_kind, payload):
        self.calls.append(("send", entity_id, template_kind, payload))
        return self._result()

    async def enroll_in_sequence(self, entity_id, sequence):
        self.calls.append(("enroll", entity_id, sequence, None))
        return self._result()

    async def unenroll(self, entity_id, sequence):
        self.calls.append(("unenroll", entity_id, sequence, None))
        return self._result()

    def ops(self, op: str) -> list[tuple[str, str, str, Optional[dict[str, Any]]]]:
        return [c for c in self.calls if c[0] == op]


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []

    def presign_put(self, key, content_type, expires_seconds=600):
        return f"https://spaces.test/{key}?op=put&ct={content_type}"

    def presign_get(self, key, expires_seconds=300):
        return f"https://spaces.test/{key}?op=get"

    def head_object(self, key):
        return self.objects.get(key)

    def delete_object(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def services(store, sink, clock):
    return build_services(store, sink, clock=clock, business_timezone="America/New_York")


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def scheduler(services):
    return services.scheduler


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def client(services, storage):
    from opsflow.deps import get_services, get_storage
    from opsflow.engine.webhooks import get_webhook_secret
    from opsflow.main import app

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_webhook_secret] = lambda: WEBHOOK_SECRET
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


async def walk_to(engine, entity_id: str, stage_id: str):
    """Advance an entity stage by stage until it sits on stage_id."""
    entity = await engine.get_entity(entity_id)
    target_order = engine.catalog.index_of(entity.workflow_type, stage_id)
    while engine.catalog.index_of(entity.workflow_type, entity.current_stage_id) < target_order:
        entity = await engine.advance(entity_id, entity.current_stage_id, "test")
    assert entity.current_stage_id == stage_id
    return entity
