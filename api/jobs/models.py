"""Job data models."""
from __future__ import annotations

import enum
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ... import config as _cfg


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})
ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.running})

# Allowed forward moves.  Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.pending: frozenset({JobStatus.running, JobStatus.cancelled, JobStatus.failed}),
    JobStatus.running: frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.cancelled: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True if *current* -> *target* is a legal state-machine edge."""
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


class ItemStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class ErrorKind(str, enum.Enum):
    transient_provider_error = "transient_provider_error"
    invalid_input = "invalid_input"
    unexpected_exception = "unexpected_exception"


class JobOptions(BaseModel):
    """Per-job knobs, frozen once the job row exists."""

    force_refresh: bool = False
    batch_size: int = Field(default=_cfg.DEFAULT_BATCH_SIZE, ge=1, le=_cfg.MAX_BATCH_SIZE)
    timeout: int = Field(default=_cfg.DEFAULT_TIMEOUT_SECONDS, ge=1)

    model_config = {"frozen": True}


class JobProgress(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    current_batch: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(100 * self.processed / self.total)


class ItemError(BaseModel):
    kind: ErrorKind
    message: str
    retryable: bool


class ItemResult(BaseModel):
    """Outcome of one work item inside a job."""

    item_id: str
    status: ItemStatus = ItemStatus.pending
    strategy: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    error: Optional[ItemError] = None
    processed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ItemStatus.completed, ItemStatus.failed)


class JobRecord(BaseModel):
    """Persistent representation of a bulk job."""

    job_id: str
    owner_id: str
    item_ids: List[str]
    options: JobOptions = Field(default_factory=JobOptions)
    status: JobStatus = JobStatus.pending
    progress: JobProgress = Field(default_factory=JobProgress)
    results: Dict[str, ItemResult] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    version: int = 0

    @field_validator("item_ids")
    @classmethod
    def _dedupe(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def total_batches(self) -> int:
        return math.ceil(len(self.item_ids) / self.options.batch_size)

    def to_status_payload(self) -> Dict[str, Any]:
        """Shape returned to polling clients."""
        data = self.model_dump(mode="json")
        data["percentage"] = self.progress.percentage
        data["total_batches"] = self.total_batches
        data["is_active"] = self.is_active
        return data
