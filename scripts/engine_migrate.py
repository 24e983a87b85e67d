"""
Stage engine schema migration.

Usage:
  python scripts/engine_migrate.py

Creates (idempotent):
  - engine schema
  - engine.entities, engine.stage_completions, engine.checklist_items
  - engine.automation_timers (+ due index for the runner's claim query)
  - engine.artifacts, engine.transition_events, engine.sync_deliveries
  - Grants to ENGINE_APP_ROLE when set
"""
import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

import asyncpg

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    print("ERROR: DATABASE_URL not set")
    sys.exit(1)

APP_ROLE = os.getenv("ENGINE_APP_ROLE")


async def migrate():
    conn = await asyncpg.connect(DATABASE_URL)
    try:
        print("Running engine migration...")

        await conn.execute("CREATE SCHEMA IF NOT EXISTS engine")
        print("OK schema engine")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.entities (
                entity_id        TEXT PRIMARY KEY,
                workflow_type    TEXT NOT NULL,
                current_stage_id TEXT NOT NULL,
                created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
                version          INT NOT NULL DEFAULT 1,
                outcome          TEXT,
                outcome_data     JSONB NOT NULL DEFAULT '{}'::jsonb,
                decided_at       TIMESTAMPTZ
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS entities_workflow_idx ON engine.entities (workflow_type, updated_at DESC)"
        )
        print("OK engine.entities")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.stage_completions (
                entity_id      TEXT NOT NULL REFERENCES engine.entities(entity_id) ON DELETE CASCADE,
                stage_id       TEXT NOT NULL,
                stage_order    INT NOT NULL,
                completed_at   TIMESTAMPTZ NOT NULL,
                is_skipped     BOOLEAN NOT NULL DEFAULT false,
                is_auto_synced BOOLEAN NOT NULL DEFAULT false,
                reason         TEXT,
                PRIMARY KEY (entity_id, stage_id)
            )
        """)
        print("OK engine.stage_completions")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.checklist_items (
                entity_id  TEXT NOT NULL REFERENCES engine.entities(entity_id) ON DELETE CASCADE,
                stage_id   TEXT NOT NULL,
                item_id    TEXT NOT NULL,
                checked    BOOLEAN NOT NULL DEFAULT false,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (entity_id, stage_id, item_id)
            )
        """)
        print("OK engine.checklist_items")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.automation_timers (
                entity_id    TEXT NOT NULL REFERENCES engine.entities(entity_id) ON DELETE CASCADE,
                stage_id     TEXT NOT NULL,
                kind         TEXT NOT NULL,
                armed_at     TIMESTAMPTZ NOT NULL,
                fires_at     TIMESTAMPTZ NOT NULL,
                fired_count  INT NOT NULL DEFAULT 0,
                cancelled_at TIMESTAMPTZ,
                status       TEXT NOT NULL DEFAULT 'armed',
                attempts     INT NOT NULL DEFAULT 0,
                last_error   TEXT,
                PRIMARY KEY (entity_id, stage_id, kind)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS automation_timers_due_idx
            ON engine.automation_timers (fires_at)
            WHERE status = 'armed' AND cancelled_at IS NULL
        """)
        print("OK engine.automation_timers")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.artifacts (
                entity_id    TEXT NOT NULL REFERENCES engine.entities(entity_id) ON DELETE CASCADE,
                slot_id      TEXT NOT NULL,
                file_name    TEXT NOT NULL,
                storage_key  TEXT,
                content_type TEXT,
                size_bytes   BIGINT,
                uploaded_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (entity_id, slot_id)
            )
        """)
        print("OK engine.artifacts")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.transition_events (
                seq           BIGSERIAL,
                event_id      TEXT PRIMARY KEY,
                entity_id     TEXT NOT NULL REFERENCES engine.entities(entity_id) ON DELETE CASCADE,
                action        TEXT NOT NULL,
                from_stage_id TEXT,
                to_stage_id   TEXT,
                reason        TEXT,
                source        TEXT NOT NULL,
                payload       JSONB NOT NULL DEFAULT '{}'::jsonb,
                occurred_at   TIMESTAMPTZ NOT NULL
            )
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS transition_events_entity_idx ON engine.transition_events (entity_id, seq)"
        )
        print("OK engine.transition_events")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS engine.sync_deliveries (
                source_event_id TEXT PRIMARY KEY,
                received_at     TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)
        print("OK engine.sync_deliveries")

        if APP_ROLE:
            await conn.execute(f"GRANT USAGE ON SCHEMA engine TO {APP_ROLE}")
            await conn.execute(f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA engine TO {APP_ROLE}")
            await conn.execute(f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA engine TO {APP_ROLE}")
            print(f"OK grants to {APP_ROLE}")

        print("\nMigration complete.")

    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(migrate())
