"""
Stage transition engine.

The only writer of TrackedEntity.current_stage_id. Every mutating operation:
  1. takes the per-entity lock
  2. re-reads the entity and validates against the catalog
  3. writes completion records (idempotent: one per entity/stage)
  4. persists the entity with an optimistic version check
  5. disarms/arms automation timers
  6. appends a TransitionEvent and emits a trace record

Public methods take the lock; the underscore helpers assume it is held so
that multi-step operations (auto sync, outcome reset) do not re-enter it.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .automation import AutomationScheduler
from .errors import AlreadyDecided, Conflict, InvalidTransition, NotFound
from .locks import EntityLocks
from .models import (
    AutomationTimer,
    ChecklistItem,
    CompletionRecord,
    TrackedEntity,
    TransitionEvent,
    utcnow,
)
from .progress import ProgressSnapshot, project
from .stages import (
    CATALOG,
    LOST_REASONS,
    OUTCOME_COMPLETED,
    OUTCOME_LOST,
    OUTCOME_REJECTED,
    OUTCOME_WON,
    StageCatalog,
    StageDefinition,
)
from .store import EntityStore
from .trace_logger import log_transition

logger = logging.getLogger(__name__)


class StageTransitionEngine:
    def __init__(
        self,
        store: EntityStore,
        *,
        catalog: StageCatalog = CATALOG,
        scheduler: Optional[AutomationScheduler] = None,
        locks: Optional[EntityLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.scheduler = scheduler
        # timers and user actions must share one lock registry
        self.locks = locks or (scheduler.locks if scheduler else EntityLocks())
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads (no lock)
    # ------------------------------------------------------------------

    async def get_entity(self, entity_id: str) -> TrackedEntity:
        return await self.store.get(entity_id)

    async def progress(self, entity_id: str) -> ProgressSnapshot:
        entity = await self.store.get(entity_id)
        completions = await self.store.list_completions(entity_id)
        return project(entity, completions, self.catalog)

    async def list_events(self, entity_id: str) -> list[TransitionEvent]:
        await self.store.get(entity_id)
        return await self.store.list_events(entity_id)

    async def list_timers(self, entity_id: str) -> list[AutomationTimer]:
        await self.store.get(entity_id)
        return await self.store.list_timers(entity_id)

    async def list_checklist(self, entity_id: str, stage_id: Optional[str] = None) -> list[ChecklistItem]:
        await self.store.get(entity_id)
        return await self.store.list_checklist(entity_id, stage_id)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_entity(self, entity_id: str, workflow_type: str) -> TrackedEntity:
        """New lead/deal/customer, always starting at the first stage of its workflow."""
        first = self.catalog.first_stage(workflow_type)
        async with self.locks.hold(entity_id):
            now = self.clock()
            entity = await self.store.insert(TrackedEntity(
                entity_id=entity_id,
                workflow_type=workflow_type,
                current_stage_id=first.id,
                created_at=now,
                updated_at=now,
            ))
            if self.scheduler:
                await self.scheduler.on_stage_entered(entity, first, now)
            await self._emit(entity, "create", now=now, to_stage_id=first.id)
            return entity

    # ------------------------------------------------------------------
    # Linear movement
    # ------------------------------------------------------------------

    async def advance(
        self,
        entity_id: str,
        from_stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """
        Complete from_stage_id and move to the next open stage.

        Raises:
            Conflict: from_stage_id is not the entity's current stage
            InvalidTransition: stage is terminal, entity is decided, or a hard-gate item is unchecked
        """
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            return await self._advance(entity, from_stage_id, reason, self.clock(), source=source)

    async def revert(
        self,
        entity_id: str,
        to_stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """Move back to to_stage_id, deleting its completion and every later one."""
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            return await self._revert(entity, to_stage_id, reason, self.clock(), source=source)

    async def skip(
        self,
        entity_id: str,
        stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """
        Mark a stage completed-but-skipped.

        Current stage: the entity moves on. Later stage: pre-marked, advance
        steps over it. Already recorded: no-op.
        """
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            stage = self.catalog.get_stage(entity.workflow_type, stage_id)
            if stage.terminal:
                raise InvalidTransition(f"Terminal stage {stage_id} cannot be skipped; confirm an outcome instead")
            self._require_undecided(entity)

            if await self.store.get_completion(entity_id, stage_id) is not None:
                return entity

            now = self.clock()
            await self._complete(entity, stage, now, skipped=True, reason=reason)

            if stage.id != entity.current_stage_id:
                expected = entity.version
                entity.updated_at = now
                stored = await self.store.upsert(entity, expected)
                await self._emit(
                    stored, "skip", now=now,
                    from_stage_id=stored.current_stage_id, to_stage_id=stored.current_stage_id,
                    reason=reason, source=source, completions={"skipped": [stage.id]},
                )
                return stored

            target, stepped = await self._next_open_stage(entity, stage)
            return await self._move(
                entity, target,
                exited=[stage.id] + [s.id for s in stepped],
                now=now, action="skip", from_stage_id=stage.id, reason=reason, source=source,
                completions={"skipped": [stage.id], "stepped_over": [s.id for s in stepped]},
            )

    # ------------------------------------------------------------------
    # Non-linear movement
    # ------------------------------------------------------------------

    async def branch_to(
        self,
        entity_id: str,
        from_stage_id: str,
        target_stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """Complete from_stage_id, skip everything strictly between, land on target_stage_id."""
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            return await self._branch(entity, from_stage_id, target_stage_id, reason, self.clock(), source=source)

    async def reject(
        self,
        entity_id: str,
        from_stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """
        Not a fit / proposal declined: skip every remaining stage, including
        the final one, and close the entity with outcome "rejected".
        """
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            self._require_current(entity, from_stage_id)
            self._require_undecided(entity)
            stage = self.catalog.get_stage(entity.workflow_type, from_stage_id)
            if stage.terminal:
                raise InvalidTransition(f"Cannot reject from terminal stage {stage.id}")

            now = self.clock()
            final = self.catalog.final_stage(entity.workflow_type)
            await self._complete(entity, stage, now, reason=reason)
            remaining = [s for s in self.catalog.stages_for(entity.workflow_type) if s.order > stage.order]
            for s in remaining:
                await self._complete(entity, s, now, skipped=True, reason=reason)

            entity.outcome = OUTCOME_REJECTED
            entity.outcome_data = {"reason": reason, "decided_from_stage_id": stage.id}
            entity.decided_at = now
            return await self._move(
                entity, final,
                exited=[stage.id] + [s.id for s in remaining],
                now=now, action="reject", from_stage_id=stage.id, reason=reason, source=source,
                completions={"recorded": [stage.id], "skipped": [s.id for s in remaining]},
            )

    # ------------------------------------------------------------------
    # External sync
    # ------------------------------------------------------------------

    async def record_auto_sync(
        self,
        entity_id: str,
        external_stage_name: str,
        occurred_at: Optional[datetime] = None,
        *,
        source: str = "external-sync",
    ) -> TrackedEntity:
        """
        Mirror an external (CRM) stage forward. Never moves backward; unknown
        names and decided entities leave the entity unchanged.
        """
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            target = self.catalog.stage_for_external_name(entity.workflow_type, external_stage_name)
            log_ctx = {
                "entity_id": entity_id,
                "external_stage_name": external_stage_name,
                "occurred_at": occurred_at.isoformat() if occurred_at else None,
            }
            if target is None:
                logger.warning(json.dumps({"event": "sync_unknown_stage", **log_ctx}))
                return entity
            if entity.is_decided:
                logger.info(json.dumps({"event": "sync_ignored_decided", "outcome": entity.outcome, **log_ctx}))
                return entity

            current = self.catalog.get_stage(entity.workflow_type, entity.current_stage_id)
            if target.order <= current.order or current.terminal:
                logger.info(json.dumps({"event": "sync_not_ahead", "current_stage_id": current.id, **log_ctx}))
                return entity

            reason = f"synced: {external_stage_name}"
            now = self.clock()
            if target.id not in self._linear_path(entity.workflow_type, current):
                return await self._branch(entity, current.id, target.id, reason, now, source=source, auto_synced=True)

            while True:
                current = self.catalog.get_stage(entity.workflow_type, entity.current_stage_id)
                if current.order >= target.order:
                    return entity
                entity = await self._advance(
                    entity, current.id, reason, now,
                    source=source, auto_synced=True, enforce_gate=False,
                )

    # ------------------------------------------------------------------
    # Terminal confirmation
    # ------------------------------------------------------------------

    async def finish(
        self,
        entity_id: str,
        from_stage_id: str,
        reason: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        """Complete a single-outcome terminal stage (kickoff, complete)."""
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            self._require_current(entity, from_stage_id)
            if entity.is_decided:
                raise AlreadyDecided(entity_id, entity.outcome)
            stage = self.catalog.get_stage(entity.workflow_type, from_stage_id)
            if not stage.terminal or stage.outcome != OUTCOME_COMPLETED:
                raise InvalidTransition(f"Stage {stage.id} is not a completion stage")

            now = self.clock()
            await self._complete(entity, stage, now, reason=reason)
            entity.outcome = OUTCOME_COMPLETED
            entity.outcome_data = {"decided_from_stage_id": stage.id}
            entity.decided_at = now
            return await self._move(
                entity, stage,
                exited=[s.id for s in self.catalog.stages_for(entity.workflow_type)],
                now=now, action="finish", from_stage_id=stage.id, reason=reason, source=source,
                completions={"recorded": [stage.id]},
            )

    async def confirm_won(self, entity_id: str, final_value: Optional[float] = None, *, source: str = "engine") -> TrackedEntity:
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            return await self._confirm_outcome(
                entity, OUTCOME_WON, {"final_value": final_value}, self.clock(), source=source,
            )

    async def confirm_lost(
        self,
        entity_id: str,
        reason: str,
        details: Optional[str] = None,
        *,
        source: str = "engine",
    ) -> TrackedEntity:
        if reason not in LOST_REASONS:
            logger.warning(json.dumps({"event": "unknown_lost_reason", "entity_id": entity_id, "reason": reason}))
            reason = "other"
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            return await self._confirm_outcome(
                entity, OUTCOME_LOST, {"lost_reason": reason, "details": details}, self.clock(), source=source,
            )

    async def reset_outcome(self, entity_id: str, *, source: str = "engine") -> TrackedEntity:
        """Undo a recorded outcome, returning to the stage it was decided from."""
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            if not entity.is_decided:
                raise InvalidTransition(f"Entity {entity_id} has no outcome to reset")
            to_stage_id = entity.outcome_data.get("decided_from_stage_id") or entity.current_stage_id
            return await self._revert(
                entity, to_stage_id, f"reset {entity.outcome}", self.clock(),
                source=source, action="reset_outcome",
            )

    # ------------------------------------------------------------------
    # Checklist
    # ------------------------------------------------------------------

    async def set_checklist_item(self, entity_id: str, stage_id: str, item_id: str, checked: bool) -> ChecklistItem:
        async with self.locks.hold(entity_id):
            entity = await self.store.get(entity_id)
            stage = self.catalog.get_stage(entity.workflow_type, stage_id)
            if item_id not in stage.checklist:
                raise NotFound(f"Stage {stage_id} has no checklist item {item_id!r}")
            if await self.store.get_completion(entity_id, stage_id) is not None:
                raise InvalidTransition(f"Stage {stage_id} is completed; its checklist is read-only")
            item = ChecklistItem(
                entity_id=entity_id,
                stage_id=stage_id,
                item_id=item_id,
                checked=checked,
                updated_at=self.clock(),
            )
            await self.store.set_checklist_item(item)
            logger.info(json.dumps({
                "event": "checklist_item_set",
                "entity_id": entity_id,
                "stage_id": stage_id,
                "item_id": item_id,
                "checked": checked,
            }))
            return item

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    async def _advance(
        self,
        entity: TrackedEntity,
        from_stage_id: str,
        reason: Optional[str],
        now: datetime,
        *,
        source: str,
        auto_synced: bool = False,
        enforce_gate: bool = True,
    ) -> TrackedEntity:
        self._require_current(entity, from_stage_id)
        stage = self.catalog.get_stage(entity.workflow_type, from_stage_id)
        self._require_undecided(entity)
        if stage.terminal:
            raise InvalidTransition(
                f"Stage {stage.id} is terminal; it completes only through an outcome confirmation"
            )
        if enforce_gate:
            await self._check_gate(entity, stage)

        recorded = await self._complete(entity, stage, now, auto_synced=auto_synced, reason=reason)
        target, stepped = await self._next_open_stage(entity, stage)
        return await self._move(
            entity, target,
            exited=[stage.id] + [s.id for s in stepped],
            now=now, action="advance", from_stage_id=stage.id, reason=reason, source=source,
            completions={"recorded": [stage.id] if recorded else [], "stepped_over": [s.id for s in stepped]},
        )

    async def _revert(
        self,
        entity: TrackedEntity,
        to_stage_id: str,
        reason: Optional[str],
        now: datetime,
        *,
        source: str,
        action: str = "revert",
    ) -> TrackedEntity:
        target = self.catalog.get_stage(entity.workflow_type, to_stage_id)
        current = self.catalog.get_stage(entity.workflow_type, entity.current_stage_id)
        if target.order > current.order:
            raise InvalidTransition(
                f"Cannot revert {entity.entity_id} forward from {current.id} to {target.id}"
            )

        deleted = await self.store.delete_completions_from(entity.entity_id, target.order)
        entity.outcome = None
        entity.outcome_data = {}
        entity.decided_at = None
        exited = [s.id for s in self.catalog.stages_for(entity.workflow_type) if s.order >= target.order]
        return await self._move(
            entity, target,
            exited=exited,
            now=now, action=action, from_stage_id=current.id, reason=reason, source=source,
            completions={"deleted": deleted},
        )

    async def _branch(
        self,
        entity: TrackedEntity,
        from_stage_id: str,
        target_stage_id: str,
        reason: Optional[str],
        now: datetime,
        *,
        source: str,
        auto_synced: bool = False,
    ) -> TrackedEntity:
        self._require_current(entity, from_stage_id)
        self._require_undecided(entity)
        stage = self.catalog.get_stage(entity.workflow_type, from_stage_id)
        target = self.catalog.get_stage(entity.workflow_type, target_stage_id)
        if stage.terminal:
            raise InvalidTransition(f"Cannot branch from terminal stage {stage.id}")
        if target.order <= stage.order:
            raise InvalidTransition(f"Cannot branch backward from {stage.id} to {target.id}; use revert")

        await self._complete(entity, stage, now, auto_synced=auto_synced, reason=reason)
        between = self.catalog.stages_between(entity.workflow_type, stage.order, target.order)
        for s in between:
            await self._complete(entity, s, now, skipped=True, auto_synced=auto_synced, reason=reason)
        return await self._move(
            entity, target,
            exited=[stage.id] + [s.id for s in between],
            now=now, action="branch", from_stage_id=stage.id, reason=reason, source=source,
            completions={"recorded": [stage.id], "skipped": [s.id for s in between]},
        )

    async def _confirm_outcome(
        self,
        entity: TrackedEntity,
        outcome: str,
        data: dict[str, Any],
        now: datetime,
        *,
        source: str,
    ) -> TrackedEntity:
        if entity.is_decided:
            raise AlreadyDecided(entity.entity_id, entity.outcome)
        outcome_stages = self.catalog.outcome_stages(entity.workflow_type)
        terminal = next((s for s in outcome_stages if s.outcome == outcome), None)
        if terminal is None:
            raise InvalidTransition(f"Workflow {entity.workflow_type} has no {outcome} outcome")
        if await self.store.get_completion(entity.entity_id, terminal.id) is not None:
            raise InvalidTransition(f"Stage {terminal.id} is already recorded; revert before confirming {outcome}")

        current = self.catalog.get_stage(entity.workflow_type, entity.current_stage_id)
        recorded, skipped = [], []
        if not current.terminal:
            await self._complete(entity, current, now)
            recorded.append(current.id)
        for s in self.catalog.stages_between(entity.workflow_type, current.order, terminal.order):
            if s.terminal:
                continue
            if await self._complete(entity, s, now, skipped=True, reason=f"closed {outcome}"):
                skipped.append(s.id)
        await self._complete(entity, terminal, now)
        recorded.append(terminal.id)
        # the other outcome is moot once this one is recorded
        for alt in outcome_stages:
            if alt.id != terminal.id and await self._complete(entity, alt, now, skipped=True, reason="moot"):
                skipped.append(alt.id)

        entity.outcome = outcome
        entity.outcome_data = {**data, "decided_from_stage_id": current.id}
        entity.decided_at = now
        stored = await self._move(
            entity, terminal,
            exited=[s.id for s in self.catalog.stages_for(entity.workflow_type)],
            now=now, action=f"confirm_{outcome}", from_stage_id=current.id,
            reason=data.get("lost_reason"), source=source, payload=data,
            completions={"recorded": recorded, "skipped": skipped},
        )
        if self.scheduler:
            # CRM mirror of the decision; failures are logged by the scheduler
            self.scheduler.notify(
                stored.entity_id,
                f"deal-closed-{outcome}",
                {"workflow_type": stored.workflow_type, **stored.outcome_data},
            )
        return stored

    async def _move(
        self,
        entity: TrackedEntity,
        target: StageDefinition,
        *,
        exited: list[str],
        now: datetime,
        action: str,
        from_stage_id: Optional[str],
        reason: Optional[str],
        source: str,
        completions: dict[str, Any],
        payload: Optional[dict[str, Any]] = None,
    ) -> TrackedEntity:
        expected = entity.version
        entity.current_stage_id = target.id
        entity.updated_at = now
        stored = await self.store.upsert(entity, expected)
        if self.scheduler:
            await self.scheduler.on_stage_exited(stored, exited, now)
            await self.scheduler.on_stage_entered(stored, target, now)
        await self._emit(
            stored, action, now=now,
            from_stage_id=from_stage_id, to_stage_id=target.id,
            reason=reason, source=source, payload=payload, completions=completions,
        )
        return stored

    async def _complete(
        self,
        entity: TrackedEntity,
        stage: StageDefinition,
        now: datetime,
        *,
        skipped: bool = False,
        auto_synced: bool = False,
        reason: Optional[str] = None,
    ) -> bool:
        return await self.store.upsert_completion(CompletionRecord(
            entity_id=entity.entity_id,
            stage_id=stage.id,
            stage_order=stage.order,
            completed_at=now,
            is_skipped=skipped,
            is_auto_synced=auto_synced,
            reason=reason,
        ))

    async def _next_open_stage(
        self, entity: TrackedEntity, stage: StageDefinition
    ) -> tuple[StageDefinition, list[StageDefinition]]:
        """Next stage after `stage`, stepping over stages already pre-marked skipped."""
        recorded = {r.stage_id: r for r in await self.store.list_completions(entity.entity_id)}
        stepped: list[StageDefinition] = []
        candidate = self.catalog.next_stage(entity.workflow_type, stage.id)
        if candidate is None:
            raise InvalidTransition(f"Stage {stage.id} has no next stage")
        while not candidate.terminal:
            record = recorded.get(candidate.id)
            if record is None or not record.is_skipped:
                break
            following = self.catalog.next_stage(entity.workflow_type, candidate.id)
            if following is None:
                break
            stepped.append(candidate)
            candidate = following
        return candidate, stepped

    def _linear_path(self, workflow_type: str, start: StageDefinition) -> list[str]:
        path = []
        stage = self.catalog.next_stage(workflow_type, start.id)
        while stage is not None:
            path.append(stage.id)
            stage = self.catalog.next_stage(workflow_type, stage.id)
        return path

    async def _check_gate(self, entity: TrackedEntity, stage: StageDefinition) -> None:
        if not stage.required_checklist:
            return
        items = await self.store.list_checklist(entity.entity_id, stage.id)
        checked = {i.item_id for i in items if i.checked}
        missing = [i for i in stage.required_checklist if i not in checked]
        if missing:
            raise InvalidTransition(f"Stage {stage.id} requires checklist items: {', '.join(missing)}")

    @staticmethod
    def _require_current(entity: TrackedEntity, from_stage_id: str) -> None:
        if entity.current_stage_id != from_stage_id:
            raise Conflict(
                f"Entity {entity.entity_id} is at {entity.current_stage_id}, not {from_stage_id}; re-read and retry"
            )

    @staticmethod
    def _require_undecided(entity: TrackedEntity) -> None:
        if entity.is_decided:
            raise InvalidTransition(f"Entity {entity.entity_id} is already {entity.outcome}")

    async def _emit(
        self,
        entity: TrackedEntity,
        action: str,
        *,
        now: datetime,
        from_stage_id: Optional[str] = None,
        to_stage_id: Optional[str] = None,
        reason: Optional[str] = None,
        source: str = "engine",
        payload: Optional[dict[str, Any]] = None,
        completions: Optional[dict[str, Any]] = None,
    ) -> None:
        event = TransitionEvent(
            entity_id=entity.entity_id,
            action=action,
            occurred_at=now,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            reason=reason,
            source=source,
            payload=payload or {},
        )
        await self.store.append_event(event)
        log_transition(event, workflow_type=entity.workflow_type, version=entity.version, completions=completions)
