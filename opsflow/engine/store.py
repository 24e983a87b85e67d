"""
Entity state store: the persistence contract the engine relies on.

Each call is assumed atomic on its own; the engine never assumes cross-call
transactions. Entity writes carry an expected version so that two writers
(e.g. the API process and the timer worker) cannot both apply a transition
computed from the same stale read.

MemoryStore backs tests and local dev. PostgresStore (pg_store.py) is the
deployed implementation.
"""
from __future__ import annotations

import abc
from dataclasses import replace
from datetime import datetime
from typing import Optional

from .errors import Conflict, NotFound
from .models import (
    Artifact,
    AutomationTimer,
    ChecklistItem,
    CompletionRecord,
    TIMER_ARMED,
    TIMER_FIRING,
    TrackedEntity,
    TransitionEvent,
)


class EntityStore(abc.ABC):
    # --- entities ---------------------------------------------------------

    @abc.abstractmethod
    async def find(self, entity_id: str) -> Optional[TrackedEntity]: ...

    async def get(self, entity_id: str) -> TrackedEntity:
        entity = await self.find(entity_id)
        if entity is None:
            raise NotFound(f"Unknown entity: {entity_id}")
        return entity

    @abc.abstractmethod
    async def insert(self, entity: TrackedEntity) -> TrackedEntity:
        """Create a new entity; Conflict if the id is taken."""

    @abc.abstractmethod
    async def upsert(self, entity: TrackedEntity, expected_version: int) -> TrackedEntity:
        """Write entity if the stored version still equals expected_version; returns the stored copy."""

    @abc.abstractmethod
    async def list_entities(self, workflow_type: Optional[str] = None) -> list[TrackedEntity]: ...

    # --- completions ------------------------------------------------------

    @abc.abstractmethod
    async def list_completions(self, entity_id: str) -> list[CompletionRecord]: ...

    async def get_completion(self, entity_id: str, stage_id: str) -> Optional[CompletionRecord]:
        for record in await self.list_completions(entity_id):
            if record.stage_id == stage_id:
                return record
        return None

    @abc.abstractmethod
    async def upsert_completion(self, record: CompletionRecord) -> bool:
        """Insert the record unless one exists for (entity, stage). True if inserted."""

    @abc.abstractmethod
    async def delete_completions_from(self, entity_id: str, order: int) -> int:
        """Delete records whose stage_order >= order. Returns the number deleted."""

    # --- checklist --------------------------------------------------------

    @abc.abstractmethod
    async def list_checklist(self, entity_id: str, stage_id: Optional[str] = None) -> list[ChecklistItem]: ...

    @abc.abstractmethod
    async def set_checklist_item(self, item: ChecklistItem) -> None: ...

    # --- timers -----------------------------------------------------------

    @abc.abstractmethod
    async def get_timer(self, entity_id: str, stage_id: str, kind: str) -> Optional[AutomationTimer]: ...

    @abc.abstractmethod
    async def upsert_timer(self, timer: AutomationTimer) -> None: ...

    @abc.abstractmethod
    async def list_timers(self, entity_id: str) -> list[AutomationTimer]: ...

    @abc.abstractmethod
    async def claim_due_timers(self, now: datetime, limit: int) -> list[AutomationTimer]:
        """Flip armed timers with fires_at <= now to firing and return them, oldest first."""

    # --- artifacts --------------------------------------------------------

    @abc.abstractmethod
    async def upsert_artifact(self, artifact: Artifact) -> None: ...

    @abc.abstractmethod
    async def get_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]: ...

    @abc.abstractmethod
    async def delete_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]: ...

    @abc.abstractmethod
    async def list_artifacts(self, entity_id: str) -> list[Artifact]: ...

    # --- audit / idempotency ----------------------------------------------

    @abc.abstractmethod
    async def append_event(self, event: TransitionEvent) -> None: ...

    @abc.abstractmethod
    async def list_events(self, entity_id: str) -> list[TransitionEvent]: ...

    @abc.abstractmethod
    async def record_sync_event(self, source_event_id: str) -> bool:
        """Remember a webhook delivery id. False if it was already seen."""

    @abc.abstractmethod
    async def forget_sync_event(self, source_event_id: str) -> None:
        """Drop a delivery id so a redelivery of the same event is applied."""


class MemoryStore(EntityStore):
    """Dict-backed store. Hands out copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._entities: dict[str, TrackedEntity] = {}
        self._completions: dict[str, dict[str, CompletionRecord]] = {}
        self._checklist: dict[tuple[str, str, str], ChecklistItem] = {}
        self._timers: dict[tuple[str, str, str], AutomationTimer] = {}
        self._artifacts: dict[tuple[str, str], Artifact] = {}
        self._events: dict[str, list[TransitionEvent]] = {}
        self._sync_events: set[str] = set()

    async def find(self, entity_id: str) -> Optional[TrackedEntity]:
        entity = self._entities.get(entity_id)
        return entity.copy() if entity else None

    async def insert(self, entity: TrackedEntity) -> TrackedEntity:
        if entity.entity_id in self._entities:
            raise Conflict(f"Entity already exists: {entity.entity_id}")
        stored = entity.copy()
        stored.version = 1
        self._entities[entity.entity_id] = stored
        return stored.copy()

    async def upsert(self, entity: TrackedEntity, expected_version: int) -> TrackedEntity:
        current = self._entities.get(entity.entity_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise Conflict(
                f"Entity {entity.entity_id} was modified concurrently "
                f"(expected version {expected_version}, found {current_version})"
            )
        stored = entity.copy()
        stored.version = current_version + 1
        self._entities[entity.entity_id] = stored
        return stored.copy()

    async def list_entities(self, workflow_type: Optional[str] = None) -> list[TrackedEntity]:
        return [
            e.copy() for e in self._entities.values()
            if workflow_type is None or e.workflow_type == workflow_type
        ]

    async def list_completions(self, entity_id: str) -> list[CompletionRecord]:
        records = self._completions.get(entity_id, {})
        return sorted(records.values(), key=lambda r: r.stage_order)

    async def upsert_completion(self, record: CompletionRecord) -> bool:
        records = self._completions.setdefault(record.entity_id, {})
        if record.stage_id in records:
            return False
        records[record.stage_id] = record
        return True

    async def delete_completions_from(self, entity_id: str, order: int) -> int:
        records = self._completions.get(entity_id, {})
        doomed = [sid for sid, r in records.items() if r.stage_order >= order]
        for sid in doomed:
            del records[sid]
        return len(doomed)

    async def list_checklist(self, entity_id: str, stage_id: Optional[str] = None) -> list[ChecklistItem]:
        return [
            item for (eid, sid, _), item in self._checklist.items()
            if eid == entity_id and (stage_id is None or sid == stage_id)
        ]

    async def set_checklist_item(self, item: ChecklistItem) -> None:
        self._checklist[(item.entity_id, item.stage_id, item.item_id)] = item

    async def get_timer(self, entity_id: str, stage_id: str, kind: str) -> Optional[AutomationTimer]:
        timer = self._timers.get((entity_id, stage_id, kind))
        return _copy_timer(timer) if timer else None

    async def upsert_timer(self, timer: AutomationTimer) -> None:
        self._timers[timer.key] = _copy_timer(timer)

    async def list_timers(self, entity_id: str) -> list[AutomationTimer]:
        return [_copy_timer(t) for t in self._timers.values() if t.entity_id == entity_id]

    async def claim_due_timers(self, now: datetime, limit: int) -> list[AutomationTimer]:
        due = [
            t for t in self._timers.values()
            if t.status == TIMER_ARMED and t.cancelled_at is None and t.fires_at <= now
        ]
        due.sort(key=lambda t: t.fires_at)
        claimed = []
        for t in due[:limit]:
            t.status = TIMER_FIRING
            claimed.append(_copy_timer(t))
        return claimed

    async def upsert_artifact(self, artifact: Artifact) -> None:
        self._artifacts[(artifact.entity_id, artifact.slot_id)] = artifact

    async def get_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]:
        return self._artifacts.get((entity_id, slot_id))

    async def delete_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]:
        return self._artifacts.pop((entity_id, slot_id), None)

    async def list_artifacts(self, entity_id: str) -> list[Artifact]:
        return [a for (eid, _), a in self._artifacts.items() if eid == entity_id]

    async def append_event(self, event: TransitionEvent) -> None:
        self._events.setdefault(event.entity_id, []).append(event)

    async def list_events(self, entity_id: str) -> list[TransitionEvent]:
        return list(self._events.get(entity_id, []))

    async def record_sync_event(self, source_event_id: str) -> bool:
        if source_event_id in self._sync_events:
            return False
        self._sync_events.add(source_event_id)
        return True

    async def forget_sync_event(self, source_event_id: str) -> None:
        self._sync_events.discard(source_event_id)


def _copy_timer(timer: AutomationTimer) -> AutomationTimer:
    return replace(timer)
