from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Body, Depends, HTTPException

from ..deps import Services, get_services, get_storage
from ..engine.errors import NotFound
from ..engine.routes import entity_view, run_or_http
from .storage import SpacesStorage

router = APIRouter(prefix="/engine/entities/{entity_id}/artifacts", tags=["artifacts"])

UPLOAD_URL_EXPIRES_SECONDS = 600


def _object_key(workflow_type: str, entity_id: str, slot_id: str, filename: str) -> str:
    return f"{workflow_type}/{entity_id}/{slot_id}/{filename}"


@router.get("")
async def list_artifacts(entity_id: str, services: Services = Depends(get_services)):
    await run_or_http(services.engine.get_entity(entity_id))
    artifacts = await services.store.list_artifacts(entity_id)
    return {"artifacts": [asdict(a) for a in artifacts]}


@router.post("/{slot_id}/upload-url")
async def create_upload_url(
    entity_id: str,
    slot_id: str,
    filename: str = Body(..., embed=True),
    content_type: str = Body(..., embed=True),
    services: Services = Depends(get_services),
    storage: SpacesStorage = Depends(get_storage),
):
    entity = await run_or_http(services.engine.get_entity(entity_id))
    try:
        services.engine.catalog.stage_for_slot(entity.workflow_type, slot_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    object_key = _object_key(entity.workflow_type, entity_id, slot_id, filename)
    upload_url = storage.presign_put(object_key, content_type, UPLOAD_URL_EXPIRES_SECONDS)
    return {
        "upload_url": upload_url,
        "storage_key": object_key,
        "expires_in_seconds": UPLOAD_URL_EXPIRES_SECONDS,
    }


@router.post("/{slot_id}/confirm")
async def confirm_upload(
    entity_id: str,
    slot_id: str,
    filename: str = Body(..., embed=True),
    storage_key: str = Body(..., embed=True),
    services: Services = Depends(get_services),
    storage: SpacesStorage = Depends(get_storage),
):
    obj_meta = storage.head_object(storage_key)
    if not obj_meta:
        raise HTTPException(status_code=400, detail="Object not found in storage")

    artifact = await run_or_http(services.uploads.on_uploaded(
        entity_id,
        slot_id,
        filename,
        storage_key=storage_key,
        content_type=obj_meta.get("content_type"),
        size_bytes=obj_meta.get("size_bytes"),
    ))
    entity = await run_or_http(services.engine.get_entity(entity_id))
    return {"artifact": asdict(artifact), **await entity_view(services, entity)}


@router.delete("/{slot_id}")
async def delete_artifact(
    entity_id: str,
    slot_id: str,
    services: Services = Depends(get_services),
    storage: SpacesStorage = Depends(get_storage),
):
    removed = await run_or_http(services.uploads.on_deleted(entity_id, slot_id))
    if removed is not None and removed.storage_key:
        storage.delete_object(removed.storage_key)
    entity = await run_or_http(services.engine.get_entity(entity_id))
    return {"deleted": removed is not None, **await entity_view(services, entity)}


@router.get("/{slot_id}/download")
async def download_artifact(
    entity_id: str,
    slot_id: str,
    services: Services = Depends(get_services),
    storage: SpacesStorage = Depends(get_storage),
):
    artifact = await services.store.get_artifact(entity_id, slot_id)
    if artifact is None or not artifact.storage_key:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return {"download_url": storage.presign_get(artifact.storage_key), "file_name": artifact.file_name}
