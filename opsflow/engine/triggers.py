"""
Trigger adapters: translate outside events into engine calls.

- FileUploadTrigger: artifact stored / deleted for a stage's slot
- ManualConfirmTrigger: operator clicked "confirm" on a stage
- DecisionTrigger: operator picked one of a decision stage's options
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import Conflict, InvalidTransition
from .models import Artifact
from .stages import (
    DECISION,
    LOST,
    NEXT,
    OUTCOME_COMPLETED,
    REJECT,
    DecisionOption,
    StageDefinition,
)
from .transitions import StageTransitionEngine

logger = logging.getLogger(__name__)


class FileUploadTrigger:
    def __init__(self, engine: StageTransitionEngine):
        self.engine = engine

    async def on_uploaded(
        self,
        entity_id: str,
        slot_id: str,
        file_name: str,
        storage_key: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> Artifact:
        """
        Store the artifact; advance only when the slot belongs to the active stage.

        Uploads to an already-completed stage's slot are stored and nothing moves.
        """
        entity = await self.engine.get_entity(entity_id)
        stage = self.engine.catalog.stage_for_slot(entity.workflow_type, slot_id)
        artifact = Artifact(
            entity_id=entity_id,
            slot_id=slot_id,
            file_name=file_name,
            storage_key=storage_key,
            uploaded_at=self.engine.clock(),
            content_type=content_type,
            size_bytes=size_bytes,
        )
        await self.engine.store.upsert_artifact(artifact)

        if entity.current_stage_id != stage.id or entity.is_decided:
            logger.info(json.dumps({
                "event": "upload_no_transition",
                "entity_id": entity_id,
                "slot_id": slot_id,
                "current_stage_id": entity.current_stage_id,
            }))
            return artifact

        try:
            if stage.terminal:
                await self.engine.finish(entity_id, stage.id, "file-uploaded", source="file-upload")
            else:
                await self.engine.advance(entity_id, stage.id, "file-uploaded", source="file-upload")
        except Conflict:
            # moved on between our read and the engine's; the artifact is stored either way
            logger.info(json.dumps({"event": "upload_stale_stage", "entity_id": entity_id, "slot_id": slot_id}))
        return artifact

    async def on_deleted(self, entity_id: str, slot_id: str) -> Optional[Artifact]:
        """
        Remove the artifact and fall back to the stage that requires it.

        Only a stage that was actually completed is reopened. Skipped stages and
        decided entities keep their state; undoing an outcome is reset_outcome's job.
        """
        entity = await self.engine.get_entity(entity_id)
        stage = self.engine.catalog.stage_for_slot(entity.workflow_type, slot_id)
        removed = await self.engine.store.delete_artifact(entity_id, slot_id)

        record = await self.engine.store.get_completion(entity_id, stage.id)
        if record is None or record.is_skipped or entity.is_decided:
            logger.info(json.dumps({
                "event": "delete_no_transition",
                "entity_id": entity_id,
                "slot_id": slot_id,
                "current_stage_id": entity.current_stage_id,
                "outcome": entity.outcome,
            }))
            return removed

        await self.engine.revert(entity_id, stage.id, "file-deleted", source="file-upload")
        return removed


class ManualConfirmTrigger:
    def __init__(self, engine: StageTransitionEngine):
        self.engine = engine

    async def confirm(self, entity_id: str, stage_id: str, reason: Optional[str] = None):
        # stale UI: only the live current stage's confirm is enabled
        entity = await self.engine.get_entity(entity_id)
        if entity.current_stage_id != stage_id:
            raise Conflict(f"Entity {entity_id} is at {entity.current_stage_id}, not {stage_id}")
        stage = self.engine.catalog.get_stage(entity.workflow_type, stage_id)
        if stage.trigger_kind == DECISION:
            raise InvalidTransition(f"Stage {stage_id} is a decision; choose an option")
        if stage.terminal:
            if stage.outcome != OUTCOME_COMPLETED:
                raise InvalidTransition(f"Stage {stage_id} completes only through confirm {stage.outcome}")
            return await self.engine.finish(entity_id, stage_id, reason or "confirmed", source="manual")
        return await self.engine.advance(entity_id, stage_id, reason or "confirmed", source="manual")


@dataclass(frozen=True)
class DecisionChoice:
    stage: StageDefinition
    options: tuple[DecisionOption, ...]


class DecisionTrigger:
    def __init__(self, engine: StageTransitionEngine):
        self.engine = engine

    async def options(self, entity_id: str) -> DecisionChoice:
        entity = await self.engine.get_entity(entity_id)
        stage = self.engine.catalog.get_stage(entity.workflow_type, entity.current_stage_id)
        if stage.trigger_kind != DECISION or entity.is_decided:
            return DecisionChoice(stage=stage, options=())
        return DecisionChoice(stage=stage, options=stage.decision_options)

    async def choose(self, entity_id: str, stage_id: str, option_key: str, details: Optional[str] = None):
        entity = await self.engine.get_entity(entity_id)
        if entity.current_stage_id != stage_id:
            raise Conflict(f"Entity {entity_id} is at {entity.current_stage_id}, not {stage_id}")
        stage = self.engine.catalog.get_stage(entity.workflow_type, stage_id)
        if stage.trigger_kind != DECISION:
            raise InvalidTransition(f"Stage {stage_id} is not a decision stage")
        option = stage.option(option_key)

        reason = f"decision: {option.key}"
        if option.target == NEXT:
            return await self.engine.advance(entity_id, stage_id, reason, source="decision")
        if option.target == REJECT:
            return await self.engine.reject(entity_id, stage_id, reason, source="decision")
        if option.target == LOST:
            return await self.engine.confirm_lost(entity_id, option.key, details, source="decision")
        return await self.engine.branch_to(entity_id, stage_id, option.target, reason, source="decision")
