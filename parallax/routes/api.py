from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, HTTPException

from parallax.errors import ConfigurationError
from parallax.schemas import ProgressEvent, Run, RunCreate
from parallax.services.runs import get_run_service

router = APIRouter(prefix="/api", tags=["api"])


@router.post("/runs", response_model=Run, status_code=202)
async def create_run(payload: RunCreate) -> Run:
    service = get_run_service()
    try:
        return service.create_run(payload)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/runs", response_model=List[Run])
async def list_runs() -> List[Run]:
    return get_run_service().list_runs()


@router.get("/runs/{run_id}", response_model=Run)
async def get_run(run_id: str) -> Run:
    record = get_run_service().get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.get("/runs/{run_id}/events", response_model=List[ProgressEvent])
async def list_run_events(run_id: str, since: int = 0) -> List[ProgressEvent]:
    events = get_run_service().events(run_id, since=max(0, since))
    if events is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return events


@router.get("/orchestrator/ping")
async def orchestrator_ping() -> Dict[str, str]:
    return {"status": "ok"}
