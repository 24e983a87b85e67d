"""
Notification sink: outbound email / sequence / CRM side effects.

HttpNotificationSink posts JSON to the automation webhook base URL
(NOTIFICATIONS_BASE_URL), one endpoint per operation:
    POST {base}/send
    POST {base}/sequences/enroll
    POST {base}/sequences/unenroll
Falls back to stub mode when NOTIFICATIONS_STUB env var is set.

Every call returns {"success": bool, ...}; callers decide what a failure means.
"""
from __future__ import annotations

import abc
import json
import logging
import os
import uuid
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

NOTIFICATIONS_STUB_ENABLED_KEY = "NOTIFICATIONS_STUB"


class NotificationSink(abc.ABC):
    @abc.abstractmethod
    async def send(self, entity_id: str, template_kind: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def enroll_in_sequence(self, entity_id: str, sequence: str) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def unenroll(self, entity_id: str, sequence: str) -> dict[str, Any]: ...


class HttpNotificationSink(NotificationSink):
    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def send(self, entity_id: str, template_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._post("/send", {
            "entity_id": entity_id,
            "template_kind": template_kind,
            "payload": payload,
        })

    async def enroll_in_sequence(self, entity_id: str, sequence: str) -> dict[str, Any]:
        return await self._post("/sequences/enroll", {"entity_id": entity_id, "sequence": sequence})

    async def unenroll(self, entity_id: str, sequence: str) -> dict[str, Any]:
        return await self._post("/sequences/unenroll", {"entity_id": entity_id, "sequence": sequence})

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        # Stub mode for testing / local dev
        if os.getenv(NOTIFICATIONS_STUB_ENABLED_KEY):
            return {
                "success": True,
                "request_id": f"stub-{uuid.uuid4().hex[:16]}",
                "raw_response": {"status": "accepted", "stub": True},
            }

        if not self.base_url:
            return {"success": False, "error": "notifications_not_configured"}

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}{path}"
        logger.info(json.dumps({
            "event": "notification_request",
            "path": path,
            "entity_id": body.get("entity_id"),
        }))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            return {"success": False, "error": f"notification_transport_error:{type(e).__name__}"}

        logger.info(json.dumps({
            "event": "notification_response",
            "path": path,
            "entity_id": body.get("entity_id"),
            "status": resp.status_code,
            "body": resp.text[:500],
        }))

        if resp.status_code not in (200, 201, 202, 204):
            return {
                "success": False,
                "error": f"notification_api_error:{resp.status_code}",
                "raw_response": {"status": resp.status_code, "detail": resp.text[:300]},
            }

        data = resp.json() if resp.content else {}
        return {
            "success": True,
            "request_id": data.get("id") or f"req-{uuid.uuid4().hex[:16]}",
            "raw_response": data,
        }
