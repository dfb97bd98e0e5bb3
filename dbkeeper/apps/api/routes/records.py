from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from dbkeeper.apps.api.deps import get_store
from dbkeeper.apps.api.response import success_response
from dbkeeper.core.errors import RecordNotFoundError
from dbkeeper.domain.records import (
    Backup,
    BackupSchedule,
    BackupScheduleSpec,
    BackupSpec,
    ObjectMeta,
    Resource,
    Restore,
    RestoreSpec,
)
from dbkeeper.persistence.store import RecordStore


router = APIRouter(prefix="/v1/namespaces/{namespace}", tags=["records"])

_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"


class _CreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=253, pattern=_NAME_PATTERN)
    labels: dict[str, str] = Field(default_factory=dict)


class BackupCreateRequest(_CreateRequest):
    spec: BackupSpec


class BackupScheduleCreateRequest(_CreateRequest):
    spec: BackupScheduleSpec


class RestoreCreateRequest(_CreateRequest):
    spec: RestoreSpec


def _public(record: Resource) -> dict[str, Any]:
    # Spec and status are the public contract; finalizers and versions help debugging.
    payload = record.model_dump(mode="json")
    return {
        "kind": record.kind,
        "metadata": payload["metadata"],
        "spec": payload.get("spec", {}),
        "status": payload.get("status", {}),
    }


async def _create(store: RecordStore, model: type[Resource], namespace: str, body: _CreateRequest) -> dict[str, Any]:
    record = model(metadata=ObjectMeta(name=body.name, namespace=namespace, labels=body.labels), spec=body.spec)
    return _public(await store.create(record))


async def _list(store: RecordStore, model: type[Resource], namespace: str) -> list[dict[str, Any]]:
    return [_public(record) for record in await store.list(model, namespace)]


async def _delete(store: RecordStore, model: type[Resource], namespace: str, name: str) -> dict[str, Any]:
    # Deletion is two-phase: records with finalizers stay until their cleanup finishes.
    await store.delete(model, namespace, name)
    try:
        record = await store.get(model, namespace, name)
    except RecordNotFoundError:
        return {"name": name, "state": "deleted"}
    return {"name": name, "state": "terminating", "finalizers": list(record.metadata.finalizers)}


@router.post("/backups", status_code=status.HTTP_201_CREATED)
async def create_backup(
    namespace: str,
    body: BackupCreateRequest,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict:
    return success_response(request=request, data=await _create(store, Backup, namespace, body))


@router.get("/backups")
async def list_backups(namespace: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=await _list(store, Backup, namespace))


@router.get("/backups/{name}")
async def get_backup(namespace: str, name: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=_public(await store.get(Backup, namespace, name)))


@router.delete("/backups/{name}", status_code=status.HTTP_202_ACCEPTED)
async def delete_backup(namespace: str, name: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=await _delete(store, Backup, namespace, name))


@router.post("/backupschedules", status_code=status.HTTP_201_CREATED)
async def create_backup_schedule(
    namespace: str,
    body: BackupScheduleCreateRequest,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict:
    return success_response(request=request, data=await _create(store, BackupSchedule, namespace, body))


@router.get("/backupschedules")
async def list_backup_schedules(namespace: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=await _list(store, BackupSchedule, namespace))


@router.get("/backupschedules/{name}")
async def get_backup_schedule(
    namespace: str,
    name: str,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict:
    return success_response(request=request, data=_public(await store.get(BackupSchedule, namespace, name)))


@router.delete("/backupschedules/{name}", status_code=status.HTTP_202_ACCEPTED)
async def delete_backup_schedule(
    namespace: str,
    name: str,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict:
    return success_response(request=request, data=await _delete(store, BackupSchedule, namespace, name))


@router.post("/restores", status_code=status.HTTP_201_CREATED)
async def create_restore(
    namespace: str,
    body: RestoreCreateRequest,
    request: Request,
    store: RecordStore = Depends(get_store),
) -> dict:
    return success_response(request=request, data=await _create(store, Restore, namespace, body))


@router.get("/restores")
async def list_restores(namespace: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=await _list(store, Restore, namespace))


@router.get("/restores/{name}")
async def get_restore(namespace: str, name: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=_public(await store.get(Restore, namespace, name)))


@router.delete("/restores/{name}", status_code=status.HTTP_202_ACCEPTED)
async def delete_restore(namespace: str, name: str, request: Request, store: RecordStore = Depends(get_store)) -> dict:
    return success_response(request=request, data=await _delete(store, Restore, namespace, name))
