from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True)
class NormalizedSyncEvent:
    provider: str
    entity_id: str
    external_stage_name: Optional[str]
    event_type: str
    occurred_at: datetime
    source_event_id: str
    raw_payload: dict[str, Any]


def _first_non_empty(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        val = payload.get(key)
        if isinstance(val, (int, float)) and not isinstance(val, bool):
            return str(val)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        seconds = float(value)
        # HubSpot sends epoch milliseconds
        if seconds > 1e11:
            seconds = seconds / 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        txt = value.strip()
        if txt.isdigit():
            return _parse_dt(int(txt))
        if txt.endswith("Z"):
            txt = txt[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(txt)
            if dt.tzinfo is None:
                return dt.replace(tzinfo=timezone.utc)
            return dt
        except ValueError:
            return datetime.now(tz=timezone.utc)
    return datetime.now(tz=timezone.utc)


def _deterministic_event_id(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def parse_hubspot_webhook(payload: dict[str, Any]) -> NormalizedSyncEvent:
    """
    Parse one HubSpot deal webhook event into the sync contract.

    Accepts the native subscription shape
        {"eventId", "subscriptionType", "objectId", "propertyName": "dealstage",
         "propertyValue", "occurredAt"}
    as well as the flatter workflow-webhook shape
        {"entity_id" | "dealId", "stage" | "dealstage", "timestamp"}.
    """
    properties = payload.get("properties")
    if not isinstance(properties, dict):
        properties = {}

    entity_id = _first_non_empty(payload, "entity_id", "entityId", "dealId", "deal_id", "objectId")
    if not entity_id:
        raise ValueError("Missing entity id in HubSpot webhook payload")

    external_stage_name = None
    property_name = _first_non_empty(payload, "propertyName")
    if property_name == "dealstage":
        external_stage_name = _first_non_empty(payload, "propertyValue")
    if not external_stage_name:
        external_stage_name = (
            _first_non_empty(payload, "stage", "stageName", "dealstage", "dealStage")
            or _first_non_empty(properties, "dealstage", "stage")
        )

    subscription = (_first_non_empty(payload, "subscriptionType", "type", "event") or "").lower()
    event_type = "stage_changed" if external_stage_name or "stage" in subscription else "ignored"

    occurred_at = _parse_dt(
        payload.get("occurredAt")
        or payload.get("occurred_at")
        or payload.get("timestamp")
        or payload.get("updatedAt")
    )

    source_event_id = (
        _first_non_empty(payload, "eventId", "event_id", "webhookId", "deliveryId", "id")
        or _deterministic_event_id(payload)
    )

    return NormalizedSyncEvent(
        provider="hubspot",
        entity_id=entity_id,
        external_stage_name=external_stage_name,
        event_type=event_type,
        occurred_at=occurred_at,
        source_event_id=source_event_id,
        raw_payload=payload,
    )
