"""
Progress projection: read-only display metrics derived from completions.

Skipped stages count as completed (flagged is_skipped) and are excluded from
the remaining count.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .models import CompletionRecord, TrackedEntity
from .stages import CATALOG, StageCatalog

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_IN_PROGRESS = "in_progress"
STATUS_PENDING = "pending"


@dataclass(frozen=True)
class StageProgress:
    stage_id: str
    title: str
    order: int
    status: str
    completed_at: Optional[datetime] = None
    is_skipped: bool = False
    is_auto_synced: bool = False


@dataclass(frozen=True)
class ProgressSnapshot:
    entity_id: str
    workflow_type: str
    current_stage_id: str
    outcome: Optional[str]
    completed: int
    skipped: int
    total: int
    remaining: int
    percent: int
    stages: list[StageProgress]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def project(
    entity: TrackedEntity,
    completions: Iterable[CompletionRecord],
    catalog: StageCatalog = CATALOG,
) -> ProgressSnapshot:
    stages = catalog.stages_for(entity.workflow_type)
    by_stage = {r.stage_id: r for r in completions if r.entity_id == entity.entity_id}

    rows: list[StageProgress] = []
    completed = skipped = 0
    for stage in stages:
        record = by_stage.get(stage.id)
        if record is not None:
            completed += 1
            if record.is_skipped:
                skipped += 1
            rows.append(StageProgress(
                stage_id=stage.id,
                title=stage.title,
                order=stage.order,
                status=STATUS_SKIPPED if record.is_skipped else STATUS_COMPLETED,
                completed_at=record.completed_at,
                is_skipped=record.is_skipped,
                is_auto_synced=record.is_auto_synced,
            ))
        else:
            status = STATUS_IN_PROGRESS if stage.id == entity.current_stage_id else STATUS_PENDING
            rows.append(StageProgress(stage_id=stage.id, title=stage.title, order=stage.order, status=status))

    total = len(stages)
    return ProgressSnapshot(
        entity_id=entity.entity_id,
        workflow_type=entity.workflow_type,
        current_stage_id=entity.current_stage_id,
        outcome=entity.outcome,
        completed=completed,
        skipped=skipped,
        total=total,
        remaining=total - completed,
        percent=round_half_up(100 * completed / total) if total else 0,
        stages=rows,
    )
