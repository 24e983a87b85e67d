"""
Automation scheduler: time-based side effects attached to stages.

Timer lifecycle per (entity, stage, kind):

    armed -> firing -> armed      (recurring, below max_fires)
                    -> fired      (one-shot, or recurring exhausted)
                    -> cancelled  (entity left the stage mid-fire)
                    -> armed      (sink failure, retried with backoff)
                    -> dead       (sink failure after MAX_FIRE_ATTEMPTS)
    armed -> cancelled            (entity left the stage)

Side effects never run inside the entity lock and never propagate failures
to whoever triggered the transition.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from opsflow.adapters.notifications import NotificationSink

from .errors import SinkFailure
from .locks import EntityLocks
from .models import (
    AutomationTimer,
    TIMER_ARMED,
    TIMER_CANCELLED,
    TIMER_DEAD,
    TIMER_FIRED,
    TIMER_FIRING,
    TrackedEntity,
    utcnow,
)
from .stages import CATALOG, ENROLL, StageCatalog, StageDefinition, TimerSpec
from .store import EntityStore

logger = logging.getLogger(__name__)

# Retry configuration for failed fires
MAX_FIRE_ATTEMPTS = 6
# Backoff schedule in seconds: 30s, 2m, 10m, 30m, 2h, 2h (capped)
BACKOFF_SECONDS = [30, 120, 600, 1800, 7200, 7200]


def _get_backoff_seconds(attempt: int) -> int:
    """Get backoff delay in seconds for given attempt number (1-indexed)."""
    idx = min(attempt - 1, len(BACKOFF_SECONDS) - 1)
    return BACKOFF_SECONDS[idx] if idx >= 0 else BACKOFF_SECONDS[0]


def add_business_days(start: datetime, days: int, tz: ZoneInfo) -> datetime:
    """start + `days` weekdays, keeping the local time of day. Result is UTC."""
    local = start.astimezone(tz)
    added = 0
    while added < days:
        local = local + timedelta(days=1)
        if local.weekday() < 5:
            added += 1
    return local.astimezone(timezone.utc)


class AutomationScheduler:
    def __init__(
        self,
        store: EntityStore,
        sink: NotificationSink,
        *,
        catalog: StageCatalog = CATALOG,
        locks: Optional[EntityLocks] = None,
        clock: Callable[[], datetime] = utcnow,
        business_timezone: str = "America/New_York",
    ):
        self.store = store
        self.sink = sink
        self.catalog = catalog
        self.locks = locks or EntityLocks()
        self.clock = clock
        self.tz = ZoneInfo(business_timezone)
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Arming / cancelling (called by the engine while it holds the lock)
    # ------------------------------------------------------------------

    async def on_stage_entered(
        self,
        entity: TrackedEntity,
        stage: StageDefinition,
        now: Optional[datetime] = None,
    ) -> list[AutomationTimer]:
        if stage.terminal or entity.is_decided:
            return []
        now = now or self.clock()
        return [await self.arm(entity.entity_id, stage.id, spec, now) for spec in stage.timers]

    async def arm(self, entity_id: str, stage_id: str, spec: TimerSpec, now: datetime) -> AutomationTimer:
        """Arm (or re-arm) a timer. An existing timer for the same key is replaced, never stacked."""
        timer = AutomationTimer(
            entity_id=entity_id,
            stage_id=stage_id,
            kind=spec.kind,
            armed_at=now,
            fires_at=add_business_days(now, spec.business_days, self.tz),
        )
        await self.store.upsert_timer(timer)
        logger.info(json.dumps({
            "event": "timer_armed",
            "entity_id": entity_id,
            "stage_id": stage_id,
            "kind": spec.kind,
            "fires_at": timer.fires_at.isoformat(),
        }))
        return timer

    async def on_stage_exited(
        self,
        entity: TrackedEntity,
        stage_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel the entity's timers for stages it has left. Returns how many were cancelled."""
        now = now or self.clock()
        exited = set(stage_ids)
        cancelled = 0
        for timer in await self.store.list_timers(entity.entity_id):
            if timer.stage_id not in exited:
                continue
            if timer.status in (TIMER_CANCELLED, TIMER_DEAD) or timer.cancelled_at is not None:
                continue
            spec = self._spec_for(entity.workflow_type, timer)
            timer.cancelled_at = now
            # a firing timer keeps its status; the fire path sees cancelled_at and stops there
            if timer.status != TIMER_FIRING:
                timer.status = TIMER_CANCELLED
                if spec and spec.action == ENROLL and timer.fired_count > 0:
                    self._unenroll_later(entity.entity_id, spec)
            await self.store.upsert_timer(timer)
            cancelled += 1
            logger.info(json.dumps({
                "event": "timer_cancelled",
                "entity_id": entity.entity_id,
                "stage_id": timer.stage_id,
                "kind": timer.kind,
            }))
        return cancelled

    async def cancel_all(self, entity: TrackedEntity, now: Optional[datetime] = None) -> int:
        stage_ids = [s.id for s in self.catalog.stages_for(entity.workflow_type)]
        return await self.on_stage_exited(entity, stage_ids, now)

    # ------------------------------------------------------------------
    # Firing (runner loop)
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None, limit: int = 50) -> dict[str, int]:
        """Claim and fire every due timer. Returns counters for the runner log."""
        now = now or self.clock()
        claimed = await self.store.claim_due_timers(now, limit)
        result = {"claimed": len(claimed), "fired": 0, "failed": 0, "skipped": 0}
        for timer in claimed:
            outcome = await self.fire(timer, now)
            result[outcome] += 1
        return result

    async def fire(self, timer: AutomationTimer, now: datetime) -> str:
        """Fire one claimed timer. Returns "fired", "failed" or "skipped"."""
        async with self.locks.hold(timer.entity_id):
            current = await self.store.get_timer(timer.entity_id, timer.stage_id, timer.kind)
            if current is None or current.status != TIMER_FIRING or current.cancelled_at is not None:
                if current is not None and current.status == TIMER_FIRING:
                    current.status = TIMER_CANCELLED
                    await self.store.upsert_timer(current)
                return "skipped"
            entity = await self.store.find(timer.entity_id)
            if entity is None or entity.current_stage_id != timer.stage_id or entity.is_decided:
                current.status = TIMER_CANCELLED
                current.cancelled_at = now
                await self.store.upsert_timer(current)
                return "skipped"
            spec = self._spec_for(entity.workflow_type, current)
            if spec is None:
                logger.warning("Timer %s/%s/%s has no stage definition; cancelling", *current.key)
                current.status = TIMER_CANCELLED
                current.cancelled_at = now
                await self.store.upsert_timer(current)
                return "skipped"

        # Side effect outside the lock: user actions on this entity are not held up by the sink
        try:
            await self._perform(entity, spec)
        except SinkFailure as e:
            await self._record_failure(timer, spec, str(e), now)
            return "failed"

        async with self.locks.hold(timer.entity_id):
            current = await self.store.get_timer(timer.entity_id, timer.stage_id, timer.kind)
            if self._is_stale(timer, current):
                # left and re-entered the stage mid-fire: the fresh timer belongs to the new stay
                if spec.action == ENROLL:
                    self._unenroll_later(timer.entity_id, spec)
                logger.info(json.dumps({
                    "event": "timer_fire_stale",
                    "entity_id": timer.entity_id,
                    "stage_id": timer.stage_id,
                    "kind": timer.kind,
                }))
                return "fired"
            current.fired_count += 1
            current.attempts = 0
            current.last_error = None
            if current.cancelled_at is not None:
                # left the stage while we were firing: the side effect stands, no re-arm
                current.status = TIMER_CANCELLED
                if spec.action == ENROLL:
                    self._unenroll_later(timer.entity_id, spec)
            elif spec.recurring and current.fired_count < spec.max_fires:
                current.status = TIMER_ARMED
                current.armed_at = now
                current.fires_at = add_business_days(now, spec.business_days, self.tz)
            else:
                current.status = TIMER_FIRED
            await self.store.upsert_timer(current)

        logger.info(json.dumps({
            "event": "timer_fired",
            "entity_id": timer.entity_id,
            "stage_id": timer.stage_id,
            "kind": timer.kind,
            "fired_count": current.fired_count,
            "status": current.status,
        }))
        return "fired"

    async def _perform(self, entity: TrackedEntity, spec: TimerSpec) -> None:
        try:
            if spec.action == ENROLL:
                result = await self.sink.enroll_in_sequence(entity.entity_id, spec.template)
            else:
                result = await self.sink.send(
                    entity.entity_id,
                    spec.template,
                    {"workflow_type": entity.workflow_type, "stage_id": entity.current_stage_id},
                )
        except Exception as e:
            raise SinkFailure(f"{spec.kind}: {e}") from e
        if not result.get("success"):
            raise SinkFailure(f"{spec.kind}: {result.get('error', 'unknown sink error')}")

    async def _record_failure(self, timer: AutomationTimer, spec: TimerSpec, error: str, now: datetime) -> None:
        async with self.locks.hold(timer.entity_id):
            current = await self.store.get_timer(timer.entity_id, timer.stage_id, timer.kind)
            if self._is_stale(timer, current):
                logger.info(json.dumps({
                    "event": "timer_failure_stale",
                    "entity_id": timer.entity_id,
                    "stage_id": timer.stage_id,
                    "kind": timer.kind,
                    "error": error,
                }))
                return
            current.attempts += 1
            current.last_error = error
            if current.cancelled_at is not None:
                current.status = TIMER_CANCELLED
            elif current.attempts >= MAX_FIRE_ATTEMPTS:
                current.status = TIMER_DEAD
            else:
                # retried on a later tick
                current.status = TIMER_ARMED
                current.fires_at = now + timedelta(seconds=_get_backoff_seconds(current.attempts))
            await self.store.upsert_timer(current)

        logger.warning(json.dumps({
            "event": "timer_fire_failed",
            "entity_id": timer.entity_id,
            "stage_id": timer.stage_id,
            "kind": timer.kind,
            "attempts": current.attempts,
            "status": current.status,
            "error": error,
        }))

    def _spec_for(self, workflow_type: str, timer: AutomationTimer) -> Optional[TimerSpec]:
        stage = self.catalog.get_stage(workflow_type, timer.stage_id)
        for spec in stage.timers:
            if spec.kind == timer.kind:
                return spec
        return None

    @staticmethod
    def _is_stale(claimed: AutomationTimer, current: Optional[AutomationTimer]) -> bool:
        """True when the stored timer is gone or was re-armed since `claimed` was taken."""
        return current is None or current.armed_at != claimed.armed_at

    # ------------------------------------------------------------------
    # Background side effects
    # ------------------------------------------------------------------

    def notify(self, entity_id: str, template_kind: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget sink.send; failure is logged, never raised."""
        self.spawn(self._checked(self.sink.send(entity_id, template_kind, payload)), label=f"send:{template_kind}:{entity_id}")

    def _unenroll_later(self, entity_id: str, spec: TimerSpec) -> None:
        self.spawn(self._checked(self.sink.unenroll(entity_id, spec.template)), label=f"unenroll:{spec.template}:{entity_id}")

    @staticmethod
    async def _checked(call: Awaitable[dict[str, Any]]) -> None:
        result = await call
        if not result.get("success"):
            raise SinkFailure(result.get("error", "unknown sink error"))

    def spawn(self, coro: Awaitable[Any], *, label: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guarded(coro: Awaitable[Any], label: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(json.dumps({"event": "background_task_failed", "task": label, "error": str(e)}))

    async def drain(self) -> None:
        """Wait for in-flight background side effects (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
