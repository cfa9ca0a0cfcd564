"""Job management endpoints: create, poll, cancel, list active."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ... import config as _cfg
from ..deps.auth import get_owner_id, require_auth
from ..deps.providers import get_job_controller
from ..jobs.controller import JobController
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import CreateJobRequest, CreateJobResponse

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", status_code=201, dependencies=[Depends(require_auth)])
async def create_job(
    req: CreateJobRequest,
    owner_id: str = Depends(get_owner_id),
    controller: JobController = Depends(get_job_controller),
) -> ApiResponse:
    options = req.options.model_dump() if req.options is not None else None
    job, summary = await controller.create_job(owner_id, req.item_ids, options)
    body = CreateJobResponse(job_id=job.job_id, status=job.status.value, summary=summary)
    return ApiResponse.success(body.model_dump(), poll_interval_s=_cfg.POLL_INTERVAL_HINT_SECONDS)


@router.get("")
async def list_active_jobs(
    limit: int = 5,
    owner_id: str = Depends(get_owner_id),
    controller: JobController = Depends(get_job_controller),
) -> ApiResponse:
    jobs = await controller.list_active(owner_id, limit=limit)
    return ApiResponse.success(
        [j.to_status_payload() for j in jobs],
        poll_interval_s=_cfg.POLL_INTERVAL_HINT_SECONDS,
    )


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    controller: JobController = Depends(get_job_controller),
) -> ApiResponse:
    rec = await controller.get_status(job_id, owner_id)
    poll = None if rec.is_terminal else _cfg.POLL_INTERVAL_HINT_SECONDS
    return ApiResponse.success(rec.to_status_payload(), poll_interval_s=poll)


@router.post("/{job_id}/cancel", dependencies=[Depends(require_auth)])
async def cancel_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    controller: JobController = Depends(get_job_controller),
) -> ApiResponse:
    rec = await controller.cancel(job_id, owner_id)
    return ApiResponse.success(rec.to_status_payload())
