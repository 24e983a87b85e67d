from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

# Timer statuses
TIMER_ARMED = "armed"
TIMER_FIRING = "firing"
TIMER_FIRED = "fired"
TIMER_CANCELLED = "cancelled"
TIMER_DEAD = "dead"

ACTIVE_TIMER_STATUSES: frozenset[str] = frozenset([TIMER_ARMED, TIMER_FIRING])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrackedEntity:
    entity_id: str
    workflow_type: str
    current_stage_id: str
    created_at: datetime
    updated_at: datetime
    version: int = 0
    outcome: Optional[str] = None
    outcome_data: dict[str, Any] = field(default_factory=dict)
    decided_at: Optional[datetime] = None

    @property
    def is_decided(self) -> bool:
        return self.outcome is not None

    def copy(self) -> "TrackedEntity":
        return replace(self, outcome_data=dict(self.outcome_data))


@dataclass(frozen=True)
class CompletionRecord:
    entity_id: str
    stage_id: str
    stage_order: int
    completed_at: datetime
    is_skipped: bool = False
    is_auto_synced: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class ChecklistItem:
    entity_id: str
    stage_id: str
    item_id: str
    checked: bool
    updated_at: datetime


@dataclass
class AutomationTimer:
    entity_id: str
    stage_id: str
    kind: str
    armed_at: datetime
    fires_at: datetime
    fired_count: int = 0
    cancelled_at: Optional[datetime] = None
    status: str = TIMER_ARMED
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.entity_id, self.stage_id, self.kind)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TIMER_STATUSES and self.cancelled_at is None


@dataclass(frozen=True)
class Artifact:
    entity_id: str
    slot_id: str
    file_name: str
    storage_key: Optional[str]
    uploaded_at: datetime
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class TransitionEvent:
    entity_id: str
    action: str
    occurred_at: datetime
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None
    reason: Optional[str] = None
    source: str = "engine"
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)
