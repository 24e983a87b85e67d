"""Tests for CRM stage-sync webhooks."""

from datetime import datetime, timezone

import pytest

from conftest import WEBHOOK_SECRET
from opsflow.engine.errors import Conflict
from opsflow.engine.providers.hubspot_webhook_parser import parse_hubspot_webhook

URL = f"/engine/webhooks/hubspot/{WEBHOOK_SECRET}"

MONDAY_MS = 1709564400000  # 2024-03-04T15:00:00Z


def stage_event(event_id, deal_id, stage):
    return {
        "eventId": event_id,
        "subscriptionType": "deal.propertyChange",
        "objectId": deal_id,
        "propertyName": "dealstage",
        "propertyValue": stage,
        "occurredAt": MONDAY_MS,
    }


@pytest.fixture
def deal(client):
    resp = client.post("/engine/entities", json={"entity_id": "555", "workflow_type": "sales-deal"})
    assert resp.status_code == 201
    return "555"


class TestParser:
    def test_native_property_change(self):
        event = parse_hubspot_webhook(stage_event(101, 555, "SQL - Create Quote"))
        assert event.entity_id == "555"
        assert event.source_event_id == "101"
        assert event.external_stage_name == "SQL - Create Quote"
        assert event.event_type == "stage_changed"
        assert event.occurred_at == datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

    def test_flat_workflow_shape(self):
        event = parse_hubspot_webhook({"dealId": "d-1", "stage": "EA Sent", "timestamp": "2024-03-04T15:00:00Z"})
        assert event.entity_id == "d-1"
        assert event.external_stage_name == "EA Sent"
        assert event.occurred_at == datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)
        # no delivery id: derived from the payload, stable across redeliveries
        assert len(event.source_event_id) == 64
        assert event.source_event_id == parse_hubspot_webhook(
            {"dealId": "d-1", "stage": "EA Sent", "timestamp": "2024-03-04T15:00:00Z"}
        ).source_event_id

    def test_digit_string_timestamp(self):
        event = parse_hubspot_webhook({"dealId": "d-1", "stage": "EA Sent", "timestamp": str(MONDAY_MS)})
        assert event.occurred_at == datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

    def test_other_property_is_ignored(self):
        event = parse_hubspot_webhook({
            "eventId": 7,
            "subscriptionType": "deal.propertyChange",
            "objectId": 555,
            "propertyName": "amount",
            "propertyValue": "1000",
        })
        assert event.event_type == "ignored"
        assert event.external_stage_name is None

    def test_missing_entity_id(self):
        with pytest.raises(ValueError):
            parse_hubspot_webhook({"propertyName": "dealstage", "propertyValue": "EA Sent"})


class TestAuth:
    def test_wrong_secret(self, client, deal):
        resp = client.post("/engine/webhooks/hubspot/nope", json=stage_event(1, 555, "EA Sent"))
        assert resp.status_code == 401

    def test_unknown_provider(self, client, deal):
        resp = client.post(f"/engine/webhooks/pipedrive/{WEBHOOK_SECRET}", json=stage_event(1, 555, "EA Sent"))
        assert resp.status_code == 404


class TestIngest:
    def test_batch_moves_deal_forward(self, client, deal):
        resp = client.post(URL, json=[stage_event(101, 555, "SQL - Create Quote")])

        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["results"][0]["status"] == "applied"
        assert body["results"][0]["current_stage_id"] == "create-quote"

        view = client.get("/engine/entities/555").json()
        assert view["entity"]["current_stage_id"] == "create-quote"
        rows = {r["stage_id"]: r for r in view["progress"]["stages"]}
        assert rows["demo-call"]["is_auto_synced"] is True
        assert rows["gl-review"]["is_auto_synced"] is True

        events = client.get("/engine/entities/555/events").json()["events"]
        assert events[-1]["source"] == "webhook:hubspot"

    def test_single_object_body(self, client, deal):
        resp = client.post(URL, json=stage_event(102, 555, "SQL - Need Info"))
        assert resp.json()["results"][0]["current_stage_id"] == "needs-info"

    def test_redelivery_is_duplicate(self, client, deal):
        client.post(URL, json=[stage_event(101, 555, "SQL - Need Info")])
        resp = client.post(URL, json=[stage_event(101, 555, "SQL - Need Info")])
        assert resp.json()["results"][0]["status"] == "duplicate"

    def test_conflicted_delivery_applies_on_redelivery(self, client, deal, services, monkeypatch):
        calls = []

        async def always_conflicts(entity_id, *args, **kwargs):
            calls.append(entity_id)
            raise Conflict(f"Entity {entity_id} was updated concurrently")

        with monkeypatch.context() as m:
            m.setattr(services.engine, "record_auto_sync", always_conflicts)
            resp = client.post(URL, json=[stage_event(104, 555, "SQL - Create Quote")])
        assert resp.status_code == 409
        assert calls == ["555", "555"]

        resp = client.post(URL, json=[stage_event(104, 555, "SQL - Create Quote")])

        assert resp.status_code == 200
        assert resp.json()["results"][0]["status"] == "applied"
        assert client.get("/engine/entities/555").json()["entity"]["current_stage_id"] == "create-quote"

    def test_backward_stage_is_unchanged(self, client, deal):
        client.post(URL, json=[stage_event(101, 555, "SQL - Create Quote")])
        resp = client.post(URL, json=[stage_event(102, 555, "SQL - Need Info")])

        result = resp.json()["results"][0]
        assert result["status"] == "unchanged"
        assert result["current_stage_id"] == "create-quote"

    def test_unmapped_stage_name_is_unchanged(self, client, deal):
        resp = client.post(URL, json=[stage_event(103, 555, "Appointment Scheduled")])
        result = resp.json()["results"][0]
        assert result["status"] == "unchanged"
        assert result["current_stage_id"] == "demo-call"

    def test_unknown_entity(self, client):
        resp = client.post(URL, json=[stage_event(104, 999, "EA Sent")])
        assert resp.status_code == 200
        assert resp.json()["results"][0]["status"] == "unknown_entity"

    def test_non_stage_event_is_ignored(self, client, deal):
        resp = client.post(URL, json=[{"eventId": 5, "subscriptionType": "deal.creation", "objectId": 555}])
        assert resp.json()["results"][0]["status"] == "ignored"

    def test_missing_entity_id_is_bad_request(self, client):
        resp = client.post(URL, json=[{"eventId": 6, "propertyName": "dealstage", "propertyValue": "EA Sent"}])
        assert resp.status_code == 400

    @pytest.mark.parametrize("payload", [[], ["not-an-object"], "text"])
    def test_malformed_body(self, client, payload):
        resp = client.post(URL, json=payload)
        assert resp.status_code == 400
