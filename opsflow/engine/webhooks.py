"""
External stage sync: CRM webhooks pushed into record_auto_sync.

POST /engine/webhooks/{provider}/{webhook_secret}
Body is one event object or a list of them (HubSpot batches deliveries).
Each delivery id is recorded once; redeliveries are acknowledged and skipped.
"""
from __future__ import annotations

import json
import logging
import secrets
from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import settings
from ..deps import Services, get_services
from .errors import Conflict, NotFound
from .providers.hubspot_webhook_parser import NormalizedSyncEvent, parse_hubspot_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/engine/webhooks", tags=["engine"])

# one in-place retry when another process wrote the entity between read and write
SYNC_CONFLICT_ATTEMPTS = 2


def get_webhook_secret() -> str:
    return settings.sync_webhook_secret


def _get_parser(provider: str) -> Callable[[dict[str, Any]], NormalizedSyncEvent]:
    provider_l = provider.lower()
    if provider_l == "hubspot":
        return parse_hubspot_webhook
    raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")


async def _apply(services: Services, provider: str, event: NormalizedSyncEvent) -> dict[str, Any]:
    result: dict[str, Any] = {
        "entity_id": event.entity_id,
        "source_event_id": event.source_event_id,
        "external_stage_name": event.external_stage_name,
    }
    if event.event_type != "stage_changed" or not event.external_stage_name:
        return {**result, "status": "ignored"}

    delivery_id = f"{provider}:{event.source_event_id}"
    is_new = await services.store.record_sync_event(delivery_id)
    if not is_new:
        return {**result, "status": "duplicate"}

    before = None
    for attempt in range(1, SYNC_CONFLICT_ATTEMPTS + 1):
        try:
            before = await services.engine.get_entity(event.entity_id)
            after = await services.engine.record_auto_sync(
                event.entity_id,
                event.external_stage_name,
                event.occurred_at,
                source=f"webhook:{provider}",
            )
            break
        except NotFound:
            logger.warning(
                "Sync for unknown entity provider=%s entity_id=%s source_event_id=%s",
                provider,
                event.entity_id,
                event.source_event_id,
            )
            return {**result, "status": "unknown_entity"}
        except Conflict:
            if attempt == SYNC_CONFLICT_ATTEMPTS:
                # not applied: the CRM redelivers on 409 and that delivery must go through
                await services.store.forget_sync_event(delivery_id)
                raise HTTPException(status_code=409, detail=f"Entity {event.entity_id} changed concurrently")

    moved = before is not None and before.current_stage_id != after.current_stage_id
    logger.info(json.dumps({
        "event": "sync_applied",
        "provider": provider,
        "entity_id": event.entity_id,
        "source_event_id": event.source_event_id,
        "from": before.current_stage_id if before else None,
        "to": after.current_stage_id,
    }))
    return {**result, "status": "applied" if moved else "unchanged", "current_stage_id": after.current_stage_id}


@router.post("/{provider}/{webhook_secret}")
async def ingest_sync_webhook(
    provider: str,
    webhook_secret: str,
    request: Request,
    services: Services = Depends(get_services),
    expected_secret: str = Depends(get_webhook_secret),
) -> dict[str, Any]:
    if not expected_secret or not secrets.compare_digest(expected_secret, webhook_secret):
        raise HTTPException(status_code=401, detail="Webhook authentication failed")
    parser = _get_parser(provider)

    payload = await request.json()
    items = payload if isinstance(payload, list) else [payload]
    if not items or not all(isinstance(item, dict) for item in items):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object or a list of objects")

    try:
        events = [parser(item) for item in items]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    results = [await _apply(services, provider.lower(), event) for event in events]
    return {"ok": True, "provider": provider.lower(), "results": results}
