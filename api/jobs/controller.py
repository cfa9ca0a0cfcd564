"""Job controller: the public create / status / cancel surface of the job engine."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from ... import config as _cfg
from ..errors import (
    ForbiddenError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobQueueFullError,
    NoEligibleItemsError,
    ValidationError,
)
from .eligibility import EligibilityClassifier
from .models import ACTIVE_STATUSES, JobOptions, JobRecord, JobStatus
from .runner import JobRunner
from .store import JobStore

logger = logging.getLogger(__name__)


class JobController:
    """Owns the job state machine on behalf of callers.

    ``create_job`` is synchronous from the caller's point of view: it
    classifies, persists the job, hands it to the runner and returns.  The
    work itself happens in the runner's background task.
    """

    def __init__(
        self,
        store: JobStore,
        classifier: EligibilityClassifier,
        runner: JobRunner,
        *,
        max_items: int = _cfg.MAX_ITEMS_PER_JOB,
        single_active_job: bool = True,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.runner = runner
        self.max_items = max_items
        self.single_active_job = single_active_job

    async def create_job(
        self,
        owner_id: str,
        item_ids: Sequence[str],
        options: JobOptions | Dict[str, Any] | None = None,
    ) -> Tuple[JobRecord, Dict[str, int]]:
        """Create and start a job over the eligible subset of *item_ids*.

        Raises
        ------
        ValidationError
            Empty or oversized id list, or malformed options.
        JobAlreadyRunningError
            The owner already has a pending or running job.
        NoEligibleItemsError
            Nothing to process; carries the eligibility summary.
        """
        ids = self._validate_items(item_ids)
        opts = self._validate_options(options)

        if self.single_active_job:
            active = await self.store.list_jobs(owner_id, statuses=ACTIVE_STATUSES, limit=1)
            if active:
                p = active[0].progress
                raise JobAlreadyRunningError(
                    f"A job is already running ({p.processed}/{p.total} items processed). "
                    "Please wait for it to complete before starting a new one."
                )

        eligibility = await self.classifier.classify(ids, owner_id)
        summary = eligibility.summary(opts.force_refresh)
        processable = eligibility.processable(opts.force_refresh)
        if not processable:
            logger.info("No eligible items for owner %s: %s", owner_id, summary)
            raise NoEligibleItemsError("No items eligible for processing", summary)

        self.runner.ensure_capacity()
        job = await self.store.create_job(owner_id, processable, opts)
        logger.info(
            "Created job %s for owner %s: %d of %d requested items scheduled",
            job.job_id, owner_id, len(processable), summary["total_requested"],
        )
        try:
            await self.runner.submit(job.job_id)
        except JobQueueFullError:
            # Persisted as pending; the recovery sweep will dispatch it.
            logger.warning("Runner full; job %s left pending for recovery", job.job_id)
        return job, summary

    async def get_status(self, job_id: str, owner_id: str) -> JobRecord:
        return await self._owned_job(job_id, owner_id)

    async def cancel(self, job_id: str, owner_id: str) -> JobRecord:
        """Cancel a pending/running job; terminal jobs are returned unchanged."""
        job = await self._owned_job(job_id, owner_id, include_results=False)
        if job.is_terminal:
            return await self._owned_job(job_id, owner_id)
        try:
            changed = await self.store.update_status(job_id, JobStatus.cancelled)
        except InvalidTransitionError:
            # Finished between our read and the write; report where it ended.
            changed = False
        if changed:
            if not self.runner.signal_cancel(job_id):
                # No live driver here will finish the item it was on.
                await self.runner.release_interrupted(await self._owned_job(job_id, owner_id))
            logger.info("Job %s cancelled by owner %s", job_id, owner_id)
        return await self._owned_job(job_id, owner_id)

    async def list_active(
        self,
        owner_id: str,
        *,
        recent_seconds: Optional[float] = None,
        limit: int = 5,
        now: Optional[datetime] = None,
    ) -> List[JobRecord]:
        """Pending/running jobs plus terminal ones that changed in the last *recent_seconds*."""
        now = now or datetime.now(timezone.utc)
        if recent_seconds is None:
            recent_seconds = _cfg.ACTIVE_JOB_RECENT_SECONDS
        since = (now - timedelta(seconds=recent_seconds)).isoformat()
        return await self.store.list_jobs(
            owner_id, statuses=ACTIVE_STATUSES, updated_since=since, limit=limit,
        )

    # ── Helpers ───────────────────────────────────────────────────────

    async def _owned_job(self, job_id: str, owner_id: str, *, include_results: bool = True) -> JobRecord:
        job = await self.store.get_job(job_id, include_results=include_results)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        if job.owner_id != owner_id:
            raise ForbiddenError(f"Job '{job_id}' is not owned by '{owner_id}'")
        return job

    def _validate_items(self, item_ids: Sequence[str]) -> List[str]:
        if isinstance(item_ids, (str, bytes)) or not item_ids:
            raise ValidationError("item_ids is required and must be a non-empty array")
        ids = [str(i).strip() for i in item_ids]
        if any(not i for i in ids):
            raise ValidationError("item_ids must not contain empty ids")
        ids = list(dict.fromkeys(ids))
        if len(ids) > self.max_items:
            raise ValidationError(f"Cannot process more than {self.max_items} items at once")
        return ids

    @staticmethod
    def _validate_options(options: JobOptions | Dict[str, Any] | None) -> JobOptions:
        if options is None:
            return JobOptions()
        if isinstance(options, JobOptions):
            return options
        # Null fields fall back to defaults, like omitted ones.
        given = {k: v for k, v in dict(options).items() if v is not None}
        try:
            return JobOptions.model_validate(given)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid job options: {exc}") from exc
