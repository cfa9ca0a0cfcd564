"""System health endpoint."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from ..deps.providers import get_job_runner, get_job_store
from ..jobs.models import ACTIVE_STATUSES
from ..jobs.runner import JobRunner
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def quick_health(
    store: JobStore = Depends(get_job_store),
    runner: JobRunner = Depends(get_job_runner),
) -> ApiResponse:
    t0 = time.monotonic()
    active = await store.count_jobs(statuses=ACTIVE_STATUSES)
    data = {
        "status": "ok",
        "runner": {"tracked_drivers": runner.pending_count},
        "jobs": {"active": active},
    }
    elapsed = (time.monotonic() - t0) * 1000
    return ApiResponse.success(data, elapsed_ms=elapsed)
