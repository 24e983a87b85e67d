"""
Structured JSON logging for stage transitions.

One flat, queryable record per engine mutation, written to a dedicated
logger so operational logs stay readable.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import Any, Optional

from .models import TransitionEvent

# Dedicated logger for transition traces (separate from operational logs)
_trace_logger: Optional[logging.Logger] = None


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # record.msg is already a dict for trace records
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, default=str, ensure_ascii=False)
        return super().format(record)


def _get_trace_logger() -> logging.Logger:
    """Get or create the trace logger with JSON formatting."""
    global _trace_logger
    if _trace_logger is not None:
        return _trace_logger

    _trace_logger = logging.getLogger("opsflow.trace")
    _trace_logger.setLevel(logging.INFO)
    _trace_logger.propagate = False  # Don't bubble to root logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(JsonFormatter())
    _trace_logger.addHandler(handler)

    return _trace_logger


def log_transition(
    event: TransitionEvent,
    *,
    workflow_type: str,
    version: Optional[int] = None,
    completions: Optional[dict[str, Any]] = None,
) -> None:
    """
    Log a single structured record for an engine mutation.

    Args:
        event: The transition event appended to the entity's history
        workflow_type: Workflow the entity belongs to
        version: Entity version after the write
        completions: {"recorded": [...], "skipped": [...], "deleted": n}
    """
    logger = _get_trace_logger()

    record: dict[str, Any] = {
        "type": "stage_transition",
        "ts": event.occurred_at.isoformat(),
        "event_id": event.event_id,
        "entity_id": event.entity_id,
        "workflow_type": workflow_type,
        "action": event.action,
        "from": event.from_stage_id,
        "to": event.to_stage_id,
        "reason": event.reason,
        "source": event.source,
    }

    # Optional fields (only include if present)
    if version is not None:
        record["version"] = version

    if completions:
        record["completions"] = completions

    logger.info(record)
