"""HTTP surface tests: status codes, views and artifact flows."""

from datetime import datetime, timezone


def create(client, entity_id="lead-1", workflow_type="sales-lead"):
    resp = client.post("/engine/entities", json={"entity_id": entity_id, "workflow_type": workflow_type})
    assert resp.status_code == 201, resp.text
    return resp.json()


def advance(client, entity_id, from_stage_id):
    return client.post(f"/engine/entities/{entity_id}/advance", json={"from_stage_id": from_stage_id})


def walk(client, entity_id, stage_ids):
    for stage_id in stage_ids:
        assert advance(client, entity_id, stage_id).status_code == 200


class TestCatalog:
    def test_workflows(self, client):
        body = client.get("/engine/workflows").json()
        assert set(body["workflow_types"]) == {"sales-lead", "sales-deal", "offboarding"}

    def test_stages(self, client):
        body = client.get("/engine/workflows/offboarding/stages").json()
        assert [s["id"] for s in body["stages"]][:2] == ["terminate-automations", "terminate-billing"]
        assert body["stages"][1]["required_checklist"] == ["billing-stopped"]

    def test_unknown_workflow(self, client):
        assert client.get("/engine/workflows/recruiting/stages").status_code == 404


class TestEntities:
    def test_create_returns_view(self, client):
        body = create(client)
        assert body["entity"]["current_stage_id"] == "demo"
        assert body["progress"]["percent"] == 0
        assert body["progress"]["stages"][0]["status"] == "in_progress"

    def test_duplicate_create_is_409(self, client):
        create(client)
        resp = client.post("/engine/entities", json={"entity_id": "lead-1", "workflow_type": "sales-lead"})
        assert resp.status_code == 409

    def test_unknown_workflow_is_404(self, client):
        resp = client.post("/engine/entities", json={"entity_id": "x", "workflow_type": "recruiting"})
        assert resp.status_code == 404

    def test_unknown_entity_is_404(self, client):
        assert client.get("/engine/entities/missing").status_code == 404

    def test_list_filtered_by_workflow(self, client):
        create(client, "lead-1")
        create(client, "deal-1", "sales-deal")
        body = client.get("/engine/entities", params={"workflow_type": "sales-deal"}).json()
        assert [e["entity_id"] for e in body["entities"]] == ["deal-1"]


class TestTransitions:
    def test_advance_then_stale_advance(self, client):
        create(client)
        resp = advance(client, "lead-1", "demo")
        assert resp.status_code == 200
        assert resp.json()["entity"]["current_stage_id"] == "readiness"

        stale = advance(client, "lead-1", "demo")
        assert stale.status_code == 409

    def test_revert_forward_is_422(self, client):
        create(client)
        resp = client.post("/engine/entities/lead-1/revert", json={"to_stage_id": "scoping"})
        assert resp.status_code == 422

    def test_revert(self, client):
        create(client)
        walk(client, "lead-1", ["demo", "readiness"])
        resp = client.post("/engine/entities/lead-1/revert", json={"to_stage_id": "demo", "reason": "redo"})
        assert resp.json()["entity"]["current_stage_id"] == "demo"
        assert resp.json()["progress"]["completed"] == 0

    def test_skip_and_branch(self, client):
        create(client)
        resp = client.post("/engine/entities/lead-1/skip", json={"stage_id": "demo"})
        assert resp.json()["entity"]["current_stage_id"] == "readiness"

        resp = client.post(
            "/engine/entities/lead-1/branch",
            json={"from_stage_id": "readiness", "target_stage_id": "proposal"},
        )
        body = resp.json()
        assert body["entity"]["current_stage_id"] == "proposal"
        assert body["progress"]["skipped"] == 7

    def test_confirm(self, client):
        create(client, "cust-1", "offboarding")
        resp = client.post("/engine/entities/cust-1/confirm", json={"stage_id": "terminate-automations"})
        assert resp.json()["entity"]["current_stage_id"] == "terminate-billing"

        blocked = client.post("/engine/entities/cust-1/confirm", json={"stage_id": "terminate-billing"})
        assert blocked.status_code == 422

    def test_checklist(self, client):
        create(client, "cust-1", "offboarding")
        walk(client, "cust-1", ["terminate-automations"])

        resp = client.put(
            "/engine/entities/cust-1/checklist/terminate-billing/billing-stopped",
            json={"checked": True},
        )
        assert resp.status_code == 200
        assert resp.json()["checked"] is True

        items = client.get("/engine/entities/cust-1/checklist", params={"stage_id": "terminate-billing"}).json()
        assert [i["item_id"] for i in items["items"]] == ["billing-stopped"]

        assert advance(client, "cust-1", "terminate-billing").status_code == 200
        locked = client.put(
            "/engine/entities/cust-1/checklist/terminate-billing/refund-issued",
            json={"checked": True},
        )
        assert locked.status_code == 422
        unknown = client.put(
            "/engine/entities/cust-1/checklist/revoke-access/vpn",
            json={"checked": True},
        )
        assert unknown.status_code == 404

    def test_events(self, client):
        create(client)
        walk(client, "lead-1", ["demo"])
        events = client.get("/engine/entities/lead-1/events").json()["events"]
        assert [e["action"] for e in events] == ["create", "advance"]
        assert events[1]["source"] == "api"


class TestDecisionsAndOutcomes:
    def test_decision_flow(self, client):
        create(client)
        walk(client, "lead-1", ["demo", "readiness"])

        options = client.get("/engine/entities/lead-1/decision").json()
        assert options["stage_id"] == "decision"
        assert [o["key"] for o in options["options"]] == ["proceed", "reject"]

        resp = client.post(
            "/engine/entities/lead-1/decision",
            json={"stage_id": "decision", "option_key": "reject"},
        )
        body = resp.json()
        assert body["entity"]["outcome"] == "rejected"
        assert body["progress"]["percent"] == 100

    def test_unknown_option_is_404(self, client):
        create(client)
        walk(client, "lead-1", ["demo", "readiness"])
        resp = client.post(
            "/engine/entities/lead-1/decision",
            json={"stage_id": "decision", "option_key": "maybe"},
        )
        assert resp.status_code == 404

    def test_won_lost_and_reset(self, client):
        create(client, "deal-1", "sales-deal")
        walk(client, "deal-1", ["demo-call", "needs-info", "gl-review", "create-quote"])

        lost = client.post("/engine/entities/deal-1/lost", json={"reason": "competitor", "details": "chose X"})
        assert lost.status_code == 200
        assert lost.json()["entity"]["current_stage_id"] == "closed-lost"
        assert lost.json()["entity"]["outcome_data"]["lost_reason"] == "competitor"

        again = client.post("/engine/entities/deal-1/lost", json={"reason": "budget"})
        assert again.status_code == 409
        assert "already decided" in again.json()["detail"]

        reset = client.post("/engine/entities/deal-1/reset-outcome")
        assert reset.json()["entity"]["current_stage_id"] == "quote-sent"
        assert reset.json()["entity"]["outcome"] is None

        won = client.post("/engine/entities/deal-1/won", json={"final_value": 15000})
        assert won.json()["entity"]["outcome"] == "won"
        assert won.json()["entity"]["outcome_data"]["final_value"] == 15000

    def test_won_on_lead_is_422(self, client):
        create(client)
        assert client.post("/engine/entities/lead-1/won", json={}).status_code == 422

    def test_reset_undecided_is_422(self, client):
        create(client)
        assert client.post("/engine/entities/lead-1/reset-outcome").status_code == 422


class TestTimers:
    def test_timers_listed_and_fired_by_worker_tick(self, client, clock, sink):
        create(client, "deal-1", "sales-deal")
        walk(client, "deal-1", ["demo-call"])

        timers = client.get("/engine/entities/deal-1/timers").json()["timers"]
        assert [(t["stage_id"], t["status"]) for t in timers] == [("needs-info", "armed")]

        clock.set(datetime(2024, 3, 7, 15, 0, tzinfo=timezone.utc))
        body = client.post("/worker/tick").json()
        assert body["fired"] == 1
        assert sink.ops("enroll") == [("enroll", "deal-1", "need-info", None)]

    def test_tick_limit_bounds(self, client):
        assert client.post("/worker/tick", params={"limit": 0}).status_code == 400


class TestArtifacts:
    KEY = "sales-lead/lead-1/demo-call-transcript/demo.txt"

    def test_upload_url(self, client):
        create(client)
        resp = client.post(
            "/engine/entities/lead-1/artifacts/demo-call-transcript/upload-url",
            json={"filename": "demo.txt", "content_type": "text/plain"},
        )
        body = resp.json()
        assert body["storage_key"] == self.KEY
        assert body["upload_url"].startswith("https://spaces.test/")
        assert body["expires_in_seconds"] == 600

    def test_upload_url_unknown_slot(self, client):
        create(client, "cust-1", "offboarding")
        resp = client.post(
            "/engine/entities/cust-1/artifacts/readiness-pdf/upload-url",
            json={"filename": "r.pdf", "content_type": "application/pdf"},
        )
        assert resp.status_code == 404

    def test_confirm_missing_object_is_400(self, client):
        create(client)
        resp = client.post(
            "/engine/entities/lead-1/artifacts/demo-call-transcript/confirm",
            json={"filename": "demo.txt", "storage_key": self.KEY},
        )
        assert resp.status_code == 400
        assert client.get("/engine/entities/lead-1").json()["entity"]["current_stage_id"] == "demo"

    def test_confirm_download_delete(self, client, storage):
        create(client)
        storage.objects[self.KEY] = {"content_type": "text/plain", "size_bytes": 42}

        confirmed = client.post(
            "/engine/entities/lead-1/artifacts/demo-call-transcript/confirm",
            json={"filename": "demo.txt", "storage_key": self.KEY},
        )
        assert confirmed.status_code == 200
        body = confirmed.json()
        assert body["artifact"]["size_bytes"] == 42
        assert body["entity"]["current_stage_id"] == "readiness"

        listed = client.get("/engine/entities/lead-1/artifacts").json()["artifacts"]
        assert [a["slot_id"] for a in listed] == ["demo-call-transcript"]

        download = client.get("/engine/entities/lead-1/artifacts/demo-call-transcript/download").json()
        assert download["download_url"] == f"https://spaces.test/{self.KEY}?op=get"

        deleted = client.delete("/engine/entities/lead-1/artifacts/demo-call-transcript")
        assert deleted.json()["deleted"] is True
        assert deleted.json()["entity"]["current_stage_id"] == "demo"
        assert storage.deleted == [self.KEY]

    def test_download_missing_is_404(self, client):
        create(client)
        assert client.get("/engine/entities/lead-1/artifacts/readiness-pdf/download").status_code == 404


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["store"] == "memory"
