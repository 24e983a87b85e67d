"""
PostgreSQL-backed entity state store (asyncpg).

Tables live in the `engine` schema; see scripts/engine_migrate.py.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import asyncpg

from .errors import Conflict
from .models import (
    Artifact,
    AutomationTimer,
    ChecklistItem,
    CompletionRecord,
    TrackedEntity,
    TransitionEvent,
)
from .store import EntityStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# SQL - Entities
# ---------------------------------------------------------------------------

ENTITY_COLUMNS = """
entity_id, workflow_type, current_stage_id, created_at, updated_at,
version, outcome, outcome_data, decided_at
"""

FIND_ENTITY_SQL = f"""
SELECT {ENTITY_COLUMNS}
FROM engine.entities
WHERE entity_id = $1::text;
"""

INSERT_ENTITY_SQL = f"""
INSERT INTO engine.entities (
    entity_id, workflow_type, current_stage_id, created_at, updated_at,
    version, outcome, outcome_data, decided_at
)
VALUES (
    $1::text, $2::text, $3::text, $4::timestamptz, $5::timestamptz,
    1, $6::text, COALESCE($7::jsonb, '{{}}'::jsonb), $8::timestamptz
)
ON CONFLICT (entity_id) DO NOTHING
RETURNING {ENTITY_COLUMNS};
"""

# Optimistic write: only applies when the stored version is still $2
UPDATE_ENTITY_SQL = f"""
UPDATE engine.entities
SET current_stage_id = $3::text,
    updated_at       = $4::timestamptz,
    outcome          = $5::text,
    outcome_data     = COALESCE($6::jsonb, '{{}}'::jsonb),
    decided_at       = $7::timestamptz,
    version          = version + 1
WHERE entity_id = $1::text
  AND version = $2::int
RETURNING {ENTITY_COLUMNS};
"""

LIST_ENTITIES_SQL = f"""
SELECT {ENTITY_COLUMNS}
FROM engine.entities
WHERE ($1::text IS NULL OR workflow_type = $1::text)
ORDER BY updated_at DESC;
"""

# ---------------------------------------------------------------------------
# SQL - Completions
# ---------------------------------------------------------------------------

LIST_COMPLETIONS_SQL = """
SELECT entity_id, stage_id, stage_order, completed_at, is_skipped, is_auto_synced, reason
FROM engine.stage_completions
WHERE entity_id = $1::text
ORDER BY stage_order ASC;
"""

INSERT_COMPLETION_SQL = """
INSERT INTO engine.stage_completions (
    entity_id, stage_id, stage_order, completed_at, is_skipped, is_auto_synced, reason
)
VALUES ($1::text, $2::text, $3::int, $4::timestamptz, $5::bool, $6::bool, $7::text)
ON CONFLICT (entity_id, stage_id) DO NOTHING
RETURNING stage_id;
"""

DELETE_COMPLETIONS_FROM_SQL = """
DELETE FROM engine.stage_completions
WHERE entity_id = $1::text
  AND stage_order >= $2::int;
"""

# ---------------------------------------------------------------------------
# SQL - Checklist
# ---------------------------------------------------------------------------

LIST_CHECKLIST_SQL = """
SELECT entity_id, stage_id, item_id, checked, updated_at
FROM engine.checklist_items
WHERE entity_id = $1::text
  AND ($2::text IS NULL OR stage_id = $2::text)
ORDER BY stage_id, item_id;
"""

UPSERT_CHECKLIST_SQL = """
INSERT INTO engine.checklist_items (entity_id, stage_id, item_id, checked, updated_at)
VALUES ($1::text, $2::text, $3::text, $4::bool, $5::timestamptz)
ON CONFLICT (entity_id, stage_id, item_id)
DO UPDATE SET checked = EXCLUDED.checked,
              updated_at = EXCLUDED.updated_at;
"""

# ---------------------------------------------------------------------------
# SQL - Timers
# ---------------------------------------------------------------------------

TIMER_COLUMNS = """
entity_id, stage_id, kind, armed_at, fires_at, fired_count,
cancelled_at, status, attempts, last_error
"""

GET_TIMER_SQL = f"""
SELECT {TIMER_COLUMNS}
FROM engine.automation_timers
WHERE entity_id = $1::text AND stage_id = $2::text AND kind = $3::text;
"""

UPSERT_TIMER_SQL = """
INSERT INTO engine.automation_timers (
    entity_id, stage_id, kind, armed_at, fires_at, fired_count,
    cancelled_at, status, attempts, last_error
)
VALUES (
    $1::text, $2::text, $3::text, $4::timestamptz, $5::timestamptz, $6::int,
    $7::timestamptz, $8::text, $9::int, $10::text
)
ON CONFLICT (entity_id, stage_id, kind)
DO UPDATE SET armed_at     = EXCLUDED.armed_at,
              fires_at     = EXCLUDED.fires_at,
              fired_count  = EXCLUDED.fired_count,
              cancelled_at = EXCLUDED.cancelled_at,
              status       = EXCLUDED.status,
              attempts     = EXCLUDED.attempts,
              last_error   = EXCLUDED.last_error;
"""

LIST_TIMERS_SQL = f"""
SELECT {TIMER_COLUMNS}
FROM engine.automation_timers
WHERE entity_id = $1::text
ORDER BY armed_at ASC;
"""

CLAIM_DUE_TIMERS_SQL = f"""
WITH cte AS (
  SELECT entity_id, stage_id, kind
  FROM engine.automation_timers
  WHERE status = 'armed'
    AND cancelled_at IS NULL
    AND fires_at <= $1::timestamptz
  ORDER BY fires_at ASC
  LIMIT $2
  FOR UPDATE SKIP LOCKED
)
UPDATE engine.automation_timers t
SET status = 'firing'
FROM cte
WHERE t.entity_id = cte.entity_id
  AND t.stage_id = cte.stage_id
  AND t.kind = cte.kind
RETURNING t.entity_id, t.stage_id, t.kind, t.armed_at, t.fires_at, t.fired_count,
          t.cancelled_at, t.status, t.attempts, t.last_error;
"""

# ---------------------------------------------------------------------------
# SQL - Artifacts
# ---------------------------------------------------------------------------

UPSERT_ARTIFACT_SQL = """
INSERT INTO engine.artifacts (
    entity_id, slot_id, file_name, storage_key, content_type, size_bytes, uploaded_at
)
VALUES ($1::text, $2::text, $3::text, $4::text, $5::text, $6::bigint, $7::timestamptz)
ON CONFLICT (entity_id, slot_id)
DO UPDATE SET file_name    = EXCLUDED.file_name,
              storage_key  = EXCLUDED.storage_key,
              content_type = EXCLUDED.content_type,
              size_bytes   = EXCLUDED.size_bytes,
              uploaded_at  = EXCLUDED.uploaded_at;
"""

GET_ARTIFACT_SQL = """
SELECT entity_id, slot_id, file_name, storage_key, content_type, size_bytes, uploaded_at
FROM engine.artifacts
WHERE entity_id = $1::text AND slot_id = $2::text;
"""

DELETE_ARTIFACT_SQL = """
DELETE FROM engine.artifacts
WHERE entity_id = $1::text AND slot_id = $2::text
RETURNING entity_id, slot_id, file_name, storage_key, content_type, size_bytes, uploaded_at;
"""

LIST_ARTIFACTS_SQL = """
SELECT entity_id, slot_id, file_name, storage_key, content_type, size_bytes, uploaded_at
FROM engine.artifacts
WHERE entity_id = $1::text
ORDER BY uploaded_at ASC;
"""

# ---------------------------------------------------------------------------
# SQL - Events / sync idempotency
# ---------------------------------------------------------------------------

INSERT_EVENT_SQL = """
INSERT INTO engine.transition_events (
    event_id, entity_id, action, from_stage_id, to_stage_id,
    reason, source, payload, occurred_at
)
VALUES (
    $1::text, $2::text, $3::text, $4::text, $5::text,
    $6::text, $7::text, COALESCE($8::jsonb, '{}'::jsonb), $9::timestamptz
)
ON CONFLICT (event_id) DO NOTHING;
"""

LIST_EVENTS_SQL = """
SELECT event_id, entity_id, action, from_stage_id, to_stage_id,
       reason, source, payload, occurred_at
FROM engine.transition_events
WHERE entity_id = $1::text
ORDER BY seq ASC;
"""

RECORD_SYNC_EVENT_SQL = """
INSERT INTO engine.sync_deliveries (source_event_id, received_at)
VALUES ($1::text, now())
ON CONFLICT (source_event_id) DO NOTHING
RETURNING source_event_id;
"""

FORGET_SYNC_EVENT_SQL = """
DELETE FROM engine.sync_deliveries
WHERE source_event_id = $1::text;
"""


def _entity(row: Any) -> TrackedEntity:
    data = dict(row)
    data["outcome_data"] = data.get("outcome_data") or {}
    return TrackedEntity(**data)


class PostgresStore(EntityStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def find(self, entity_id: str) -> Optional[TrackedEntity]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(FIND_ENTITY_SQL, entity_id)
        return _entity(row) if row else None

    async def insert(self, entity: TrackedEntity) -> TrackedEntity:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                INSERT_ENTITY_SQL,
                entity.entity_id,
                entity.workflow_type,
                entity.current_stage_id,
                entity.created_at,
                entity.updated_at,
                entity.outcome,
                entity.outcome_data,
                entity.decided_at,
            )
        if row is None:
            raise Conflict(f"Entity already exists: {entity.entity_id}")
        return _entity(row)

    async def upsert(self, entity: TrackedEntity, expected_version: int) -> TrackedEntity:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                UPDATE_ENTITY_SQL,
                entity.entity_id,
                expected_version,
                entity.current_stage_id,
                entity.updated_at,
                entity.outcome,
                entity.outcome_data,
                entity.decided_at,
            )
        if row is None:
            raise Conflict(
                f"Entity {entity.entity_id} was modified concurrently (expected version {expected_version})"
            )
        return _entity(row)

    async def list_entities(self, workflow_type: Optional[str] = None) -> list[TrackedEntity]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_ENTITIES_SQL, workflow_type)
        return [_entity(r) for r in rows]

    async def list_completions(self, entity_id: str) -> list[CompletionRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_COMPLETIONS_SQL, entity_id)
        return [CompletionRecord(**dict(r)) for r in rows]

    async def upsert_completion(self, record: CompletionRecord) -> bool:
        async with self._pool.acquire() as conn:
            inserted = await conn.fetchval(
                INSERT_COMPLETION_SQL,
                record.entity_id,
                record.stage_id,
                record.stage_order,
                record.completed_at,
                record.is_skipped,
                record.is_auto_synced,
                record.reason,
            )
        return inserted is not None

    async def delete_completions_from(self, entity_id: str, order: int) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(DELETE_COMPLETIONS_FROM_SQL, entity_id, order)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    async def list_checklist(self, entity_id: str, stage_id: Optional[str] = None) -> list[ChecklistItem]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_CHECKLIST_SQL, entity_id, stage_id)
        return [ChecklistItem(**dict(r)) for r in rows]

    async def set_checklist_item(self, item: ChecklistItem) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                UPSERT_CHECKLIST_SQL,
                item.entity_id,
                item.stage_id,
                item.item_id,
                item.checked,
                item.updated_at,
            )

    async def get_timer(self, entity_id: str, stage_id: str, kind: str) -> Optional[AutomationTimer]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(GET_TIMER_SQL, entity_id, stage_id, kind)
        return AutomationTimer(**dict(row)) if row else None

    async def upsert_timer(self, timer: AutomationTimer) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                UPSERT_TIMER_SQL,
                timer.entity_id,
                timer.stage_id,
                timer.kind,
                timer.armed_at,
                timer.fires_at,
                timer.fired_count,
                timer.cancelled_at,
                timer.status,
                timer.attempts,
                timer.last_error,
            )

    async def list_timers(self, entity_id: str) -> list[AutomationTimer]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_TIMERS_SQL, entity_id)
        return [AutomationTimer(**dict(r)) for r in rows]

    async def claim_due_timers(self, now: datetime, limit: int) -> list[AutomationTimer]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(CLAIM_DUE_TIMERS_SQL, now, limit)
        return [AutomationTimer(**dict(r)) for r in rows]

    async def upsert_artifact(self, artifact: Artifact) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                UPSERT_ARTIFACT_SQL,
                artifact.entity_id,
                artifact.slot_id,
                artifact.file_name,
                artifact.storage_key,
                artifact.content_type,
                artifact.size_bytes,
                artifact.uploaded_at,
            )

    async def get_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(GET_ARTIFACT_SQL, entity_id, slot_id)
        return Artifact(**dict(row)) if row else None

    async def delete_artifact(self, entity_id: str, slot_id: str) -> Optional[Artifact]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(DELETE_ARTIFACT_SQL, entity_id, slot_id)
        return Artifact(**dict(row)) if row else None

    async def list_artifacts(self, entity_id: str) -> list[Artifact]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_ARTIFACTS_SQL, entity_id)
        return [Artifact(**dict(r)) for r in rows]

    async def append_event(self, event: TransitionEvent) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                INSERT_EVENT_SQL,
                event.event_id,
                event.entity_id,
                event.action,
                event.from_stage_id,
                event.to_stage_id,
                event.reason,
                event.source,
                event.payload,
                event.occurred_at,
            )

    async def list_events(self, entity_id: str) -> list[TransitionEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(LIST_EVENTS_SQL, entity_id)
        events = []
        for r in rows:
            data = dict(r)
            data["payload"] = data.get("payload") or {}
            events.append(TransitionEvent(**data))
        return events

    async def record_sync_event(self, source_event_id: str) -> bool:
        async with self._pool.acquire() as conn:
            inserted = await conn.fetchval(RECORD_SYNC_EVENT_SQL, source_event_id)
        if inserted is None:
            logger.info("Duplicate sync delivery ignored: %s", source_event_id)
        return inserted is not None

    async def forget_sync_event(self, source_event_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(FORGET_SYNC_EVENT_SQL, source_event_id)
