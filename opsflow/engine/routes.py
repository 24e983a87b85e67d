from __future__ import annotations

from dataclasses import asdict
from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import Services, get_services
from .errors import Conflict, InvalidTransition, NotFound, WorkflowError
from .models import TrackedEntity
from .stages import StageDefinition

router = APIRouter(prefix="/engine", tags=["engine"])

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateEntityRequest(BaseModel):
    entity_id: str
    workflow_type: str


class AdvanceRequest(BaseModel):
    from_stage_id: str
    reason: Optional[str] = None


class RevertRequest(BaseModel):
    to_stage_id: str
    reason: Optional[str] = None


class SkipRequest(BaseModel):
    stage_id: str
    reason: Optional[str] = None


class BranchRequest(BaseModel):
    from_stage_id: str
    target_stage_id: str
    reason: Optional[str] = None


class ConfirmRequest(BaseModel):
    stage_id: str
    reason: Optional[str] = None


class DecisionRequest(BaseModel):
    stage_id: str
    option_key: str
    details: Optional[str] = None


class WonRequest(BaseModel):
    final_value: Optional[float] = None


class LostRequest(BaseModel):
    reason: str
    details: Optional[str] = None


class ChecklistRequest(BaseModel):
    checked: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _http_error(e: WorkflowError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


async def run_or_http(call: Awaitable[T]) -> T:
    try:
        return await call
    except WorkflowError as e:
        raise _http_error(e) from e


async def entity_view(services: Services, entity: TrackedEntity) -> dict[str, Any]:
    progress = await services.engine.progress(entity.entity_id)
    return {"entity": asdict(entity), "progress": asdict(progress)}


def _stage_view(stage: StageDefinition) -> dict[str, Any]:
    return {
        "id": stage.id,
        "order": stage.order,
        "title": stage.title,
        "automation_level": stage.automation_level,
        "trigger_kind": stage.trigger_kind,
        "terminal": stage.terminal,
        "outcome": stage.outcome,
        "artifact_slot": stage.artifact_slot,
        "checklist": list(stage.checklist),
        "required_checklist": list(stage.required_checklist),
        "decision_options": [
            {"key": o.key, "label": o.label, "target": o.target} for o in stage.decision_options
        ],
        "owner": stage.owner,
    }


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@router.get("/workflows")
async def list_workflows(services: Services = Depends(get_services)):
    return {"workflow_types": services.engine.catalog.workflow_types}


@router.get("/workflows/{workflow_type}/stages")
async def list_stages(workflow_type: str, services: Services = Depends(get_services)):
    try:
        stages = services.engine.catalog.stages_for(workflow_type)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"workflow_type": workflow_type, "stages": [_stage_view(s) for s in stages]}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@router.post("/entities", status_code=201)
async def create_entity(body: CreateEntityRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.create_entity(body.entity_id, body.workflow_type))
    return await entity_view(services, entity)


@router.get("/entities")
async def list_entities(workflow_type: Optional[str] = None, services: Services = Depends(get_services)):
    entities = await services.store.list_entities(workflow_type)
    return {"entities": [asdict(e) for e in entities]}


@router.get("/entities/{entity_id}")
async def get_entity(entity_id: str, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.get_entity(entity_id))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/advance")
async def advance(entity_id: str, body: AdvanceRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.advance(entity_id, body.from_stage_id, body.reason, source="api"))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/revert")
async def revert(entity_id: str, body: RevertRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.revert(entity_id, body.to_stage_id, body.reason, source="api"))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/skip")
async def skip(entity_id: str, body: SkipRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.skip(entity_id, body.stage_id, body.reason, source="api"))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/branch")
async def branch(entity_id: str, body: BranchRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.branch_to(
        entity_id, body.from_stage_id, body.target_stage_id, body.reason, source="api",
    ))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/confirm")
async def confirm(entity_id: str, body: ConfirmRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.confirms.confirm(entity_id, body.stage_id, body.reason))
    return await entity_view(services, entity)


@router.get("/entities/{entity_id}/decision")
async def decision_options(entity_id: str, services: Services = Depends(get_services)):
    choice = await run_or_http(services.decisions.options(entity_id))
    return {
        "stage_id": choice.stage.id,
        "options": [{"key": o.key, "label": o.label, "target": o.target} for o in choice.options],
    }


@router.post("/entities/{entity_id}/decision")
async def choose_decision(entity_id: str, body: DecisionRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.decisions.choose(entity_id, body.stage_id, body.option_key, body.details))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/won")
async def confirm_won(entity_id: str, body: WonRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.confirm_won(entity_id, body.final_value, source="api"))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/lost")
async def confirm_lost(entity_id: str, body: LostRequest, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.confirm_lost(entity_id, body.reason, body.details, source="api"))
    return await entity_view(services, entity)


@router.post("/entities/{entity_id}/reset-outcome")
async def reset_outcome(entity_id: str, services: Services = Depends(get_services)):
    entity = await run_or_http(services.engine.reset_outcome(entity_id, source="api"))
    return await entity_view(services, entity)


@router.get("/entities/{entity_id}/checklist")
async def list_checklist(entity_id: str, stage_id: Optional[str] = None, services: Services = Depends(get_services)):
    items = await run_or_http(services.engine.list_checklist(entity_id, stage_id))
    return {"items": [asdict(i) for i in items]}


@router.put("/entities/{entity_id}/checklist/{stage_id}/{item_id}")
async def set_checklist_item(
    entity_id: str,
    stage_id: str,
    item_id: str,
    body: ChecklistRequest,
    services: Services = Depends(get_services),
):
    item = await run_or_http(services.engine.set_checklist_item(entity_id, stage_id, item_id, body.checked))
    return asdict(item)


@router.get("/entities/{entity_id}/events")
async def list_events(entity_id: str, services: Services = Depends(get_services)):
    events = await run_or_http(services.engine.list_events(entity_id))
    return {"events": [asdict(e) for e in events]}


@router.get("/entities/{entity_id}/timers")
async def list_timers(entity_id: str, services: Services = Depends(get_services)):
    timers = await run_or_http(services.engine.list_timers(entity_id))
    return {"timers": [asdict(t) for t in timers]}
