"""Request/response models for the job endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobOptionsIn(BaseModel):
    """Client-supplied job options; omitted or null fields take engine defaults."""

    force_refresh: Optional[bool] = None
    batch_size: Optional[int] = None
    timeout: Optional[int] = None


class CreateJobRequest(BaseModel):
    item_ids: List[str] = Field(default_factory=list)
    options: Optional[JobOptionsIn] = None


class CreateJobResponse(BaseModel):
    job_id: str
    status: str
    summary: Dict[str, Any]
