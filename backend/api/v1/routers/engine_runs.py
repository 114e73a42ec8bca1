"""
Engine Runs Router — trigger and cancel size engine runs.

A trigger runs inline by default and returns the structured run result
(409 when another run is in flight). With `enqueue` it is handed to the
Celery worker instead.
"""

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.deps import get_orchestrator, get_tenant_id
from core.types import RunId, RunStatus, TenantId
from engine.orchestrator import SizeEngineOrchestrator

router = APIRouter(prefix="/api/v1/tenants/{tenant_id}/engine", tags=["engine"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class TriggerRunRequest(BaseModel):
    as_of_date: date | None = None
    enqueue: bool = False


class RunResultResponse(BaseModel):
    run_id: str
    tenant_id: str
    status: str
    as_of_date: date
    rows_written: dict[str, int]
    errors: list[dict[str, Any]]
    data_quality: list[dict[str, Any]]


class EnqueuedRunResponse(BaseModel):
    task_id: str
    status: str = "queued"


class CancelRunResponse(BaseModel):
    run_id: str
    cancelled: bool


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/runs", response_model=RunResultResponse | EnqueuedRunResponse)
async def trigger_run(
    body: TriggerRunRequest | None = None,
    tenant_id: TenantId = Depends(get_tenant_id),
    orchestrator: SizeEngineOrchestrator = Depends(get_orchestrator),
):
    body = body or TriggerRunRequest()
    if body.enqueue:
        from workers.size_engine import run_size_engine

        as_of = body.as_of_date.isoformat() if body.as_of_date else None
        task = run_size_engine.delay(tenant_id, as_of)
        return JSONResponse(status_code=202, content=EnqueuedRunResponse(task_id=task.id).model_dump())

    result = await orchestrator.trigger_run(tenant_id, as_of_date=body.as_of_date)
    payload = RunResultResponse(**result.to_dict())
    if result.status == RunStatus.REJECTED:
        return JSONResponse(status_code=409, content=payload.model_dump(mode="json"))
    return payload


@router.post("/runs/{run_id}/cancel", response_model=CancelRunResponse)
async def cancel_run(
    run_id: str,
    tenant_id: TenantId = Depends(get_tenant_id),
    orchestrator: SizeEngineOrchestrator = Depends(get_orchestrator),
):
    cancelled = await orchestrator.cancel_run(RunId(run_id), tenant_id=tenant_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail="Run is not in flight")
    return CancelRunResponse(run_id=run_id, cancelled=True)
