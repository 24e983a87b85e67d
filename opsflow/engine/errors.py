"""
Engine error taxonomy.

Conflict          stale from_stage_id / concurrent write; caller re-reads and retries
InvalidTransition target not reachable under the catalog ordering; not retried
NotFound          unknown entity, stage, slot or workflow type
SinkFailure       notification/sync side effect failed; logged, never surfaced
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every error the engine raises."""

    code = "workflow_error"


class Conflict(WorkflowError):
    code = "conflict"


class AlreadyDecided(Conflict):
    code = "already_decided"

    def __init__(self, entity_id: str, outcome: str):
        super().__init__(f"already decided: entity {entity_id} is {outcome}")
        self.entity_id = entity_id
        self.outcome = outcome


class InvalidTransition(WorkflowError):
    code = "invalid_transition"


class NotFound(WorkflowError):
    code = "not_found"


class SinkFailure(WorkflowError):
    code = "sink_failure"
