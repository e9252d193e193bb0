"""
Sync job routes.
Run, queue, monitor, cancel and resume sync jobs.
"""
from fastapi import APIRouter, HTTPException, Request, status
from typing import Any, Dict, List, Optional
import logging

from leadsync.errors import InvalidJobTransition, JobNotFound, SyncValidationError
from leadsync.schemas.sync import (
    SyncJobCreated, SyncJobResponse, SyncRequest, ValidationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sync", tags=["Sync"])


def _services(request: Request):
    return request.app.state.services


def _validation_failed(e: SyncValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"errors": e.errors},
    )


@router.post("/execute")
async def execute_sync(payload: SyncRequest, request: Request) -> Dict[str, Any]:
    """Run a sync job to completion and return its summary."""
    orchestrator = _services(request).orchestrator
    try:
        return await orchestrator.execute(payload)
    except SyncValidationError as e:
        raise _validation_failed(e)


@router.post("/jobs", response_model=SyncJobCreated, status_code=status.HTTP_202_ACCEPTED)
async def submit_sync(payload: SyncRequest, request: Request):
    """Queue a sync job; poll GET /jobs/{id} for progress."""
    orchestrator = _services(request).orchestrator
    try:
        job_id = await orchestrator.submit(payload)
    except SyncValidationError as e:
        raise _validation_failed(e)
    return SyncJobCreated(job_id=job_id, status="queued")


@router.get("/jobs", response_model=List[SyncJobResponse])
async def list_sync_jobs(request: Request, status: Optional[str] = None, limit: int = 20):
    """List sync jobs, newest first."""
    return await _services(request).tracker.list_jobs(status=status, limit=limit)


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(job_id: str, request: Request):
    try:
        return await _services(request).tracker.get_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/jobs/{job_id}/checkpoints")
async def get_sync_checkpoints(job_id: str, request: Request) -> List[Dict[str, Any]]:
    """Per (platform, namespace) progress of a job."""
    tracker = _services(request).tracker
    try:
        await tracker.get_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    return [
        {
            "platform": cp.platform,
            "namespace": cp.namespace,
            "status": cp.status,
            "sequence": cp.sequence,
            "cursor": cp.cursor,
            "users_processed": cp.users_processed,
            "events_processed": cp.events_processed,
            "errors": cp.errors,
            "last_error": cp.last_error,
            "updated_at": cp.updated_at,
        }
        for cp in await tracker.list_checkpoints(job_id)
    ]


@router.post("/jobs/{job_id}/cancel", response_model=SyncJobResponse)
async def cancel_sync_job(job_id: str, request: Request):
    try:
        await _services(request).orchestrator.cancel(job_id)
        return await _services(request).tracker.get_job(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/jobs/{job_id}/resume", response_model=SyncJobCreated, status_code=status.HTTP_202_ACCEPTED)
async def resume_sync_job(job_id: str, request: Request):
    """Start a new job that continues from this job's checkpoints."""
    try:
        new_job_id = await _services(request).orchestrator.resume(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SyncValidationError as e:
        raise _validation_failed(e)
    return SyncJobCreated(job_id=new_job_id, status="queued")


@router.post("/validate", response_model=ValidationResponse)
async def validate_sync(payload: SyncRequest, request: Request):
    """Dry run: report what a request would do, without creating a job."""
    try:
        plan = _services(request).orchestrator.validate(payload)
    except SyncValidationError as e:
        return ValidationResponse(valid=False, errors=e.errors)
    return ValidationResponse(valid=True, plan=plan.as_dict())


@router.get("/scheduler")
async def scheduler_status(request: Request) -> Dict[str, Any]:
    return _services(request).scheduler.status()


@router.post("/scheduler/run", response_model=SyncJobCreated, status_code=status.HTTP_202_ACCEPTED)
async def scheduler_run_now(request: Request):
    """Trigger the periodic incremental sync immediately."""
    job_id = await _services(request).scheduler.run_now()
    if job_id is None:
        raise HTTPException(status_code=400, detail="No platforms configured for periodic sync")
    return SyncJobCreated(job_id=job_id, status="queued")


@router.get("/rate-limits")
async def rate_limit_stats(request: Request) -> Dict[str, Any]:
    return _services(request).limiters.get_stats()
