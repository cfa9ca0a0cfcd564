"""Background dispatch of job drivers, with cooperative cancellation and stale-job recovery."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from ... import config as _cfg
from ..errors import JobQueueFullError
from .models import (
    TERMINAL_STATUSES,
    ErrorKind,
    ItemError,
    ItemResult,
    ItemStatus,
    JobRecord,
    JobStatus,
    utcnow_iso,
)
from .scheduler import BatchScheduler
from .sources import DataSourceLookup
from .store import JobStore

logger = logging.getLogger(__name__)


class JobRunner:
    """Runs one ``BatchScheduler`` driver per job as a detached asyncio task.

    ``submit`` returns as soon as the task is scheduled; callers never wait
    on job completion.  Concurrency across jobs is bounded by a semaphore,
    and at most one driver per job id exists in this process.
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: BatchScheduler,
        max_concurrent: int = _cfg.RUNNER_MAX_CONCURRENT,
        max_queued: int = _cfg.RUNNER_MAX_QUEUED,
        lookup: Optional[DataSourceLookup] = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._lookup = lookup if lookup is not None else scheduler.processor.lookup
        self._sem = asyncio.Semaphore(max_concurrent)
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._max_queued = max_queued
        self._resume_attempts: Set[str] = set()

    # ── Submit & Run ─────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        """Number of job drivers queued or running."""
        return len(self._active_tasks)

    def is_tracking(self, job_id: str) -> bool:
        task = self._active_tasks.get(job_id)
        return task is not None and not task.done()

    def ensure_capacity(self) -> None:
        """Raise ``JobQueueFullError`` if another driver cannot be accepted."""
        if len(self._active_tasks) >= self._max_queued:
            raise JobQueueFullError(
                f"Job queue full. {self._max_queued} jobs pending. Try again later."
            )

    async def submit(self, job_id: str, *, resume: bool = False) -> bool:
        """Schedule a driver for *job_id*.

        Returns False if this process already drives the job.

        Raises
        ------
        JobQueueFullError
            If the number of pending drivers has reached ``max_queued``.
        """
        if self.is_tracking(job_id):
            return False
        self.ensure_capacity()
        cancel_event = asyncio.Event()
        self._cancel_events[job_id] = cancel_event
        task = asyncio.create_task(self._run(job_id, cancel_event, resume), name=f"bulk-job-{job_id}")
        self._active_tasks[job_id] = task
        return True

    async def _run(self, job_id: str, cancel_event: asyncio.Event, resume: bool) -> Optional[JobStatus]:
        try:
            async with self._sem:
                status = await self._scheduler.run(job_id, cancel_event, resume=resume)
            if status in TERMINAL_STATUSES:
                self._resume_attempts.discard(job_id)
            return status
        except asyncio.CancelledError:
            raise
        except Exception:
            # run() already converts loop failures; this is the store itself failing
            logger.exception("Driver for job %s crashed", job_id)
            return None
        finally:
            self._active_tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)

    async def wait(self, job_id: str, timeout: float | None = None) -> Optional[JobStatus]:
        """Await the driver of *job_id* if one is running here."""
        task = self._active_tasks.get(job_id)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    # ── Cancel ───────────────────────────────────────────────────────

    def signal_cancel(self, job_id: str) -> bool:
        """Set the cooperative cancellation token of a running driver.

        The driver stops before its next item; the item in progress is
        allowed to finish and is recorded.
        """
        cancel_event = self._cancel_events.get(job_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all driver tasks; their jobs stay ``running`` for recovery."""
        tasks = list(self._active_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        self._active_tasks.clear()
        self._cancel_events.clear()

    # ── Recovery ─────────────────────────────────────────────────────

    async def release_interrupted(self, job: JobRecord) -> int:
        """Fail the items *job* left ``running`` and clear their in-flight flag.

        Only valid once no driver owns the job.  Returns the number of items
        released.
        """
        if job.status not in TERMINAL_STATUSES:
            raise ValueError(f"Job '{job.job_id}' is {job.status.value}; only terminal jobs can be released")
        stuck = [r.item_id for r in job.results.values() if r.status == ItemStatus.running]
        for item_id in stuck:
            await self._store.record_item_outcome(job.job_id, ItemResult(
                item_id=item_id,
                status=ItemStatus.failed,
                error=ItemError(
                    kind=ErrorKind.unexpected_exception,
                    message="Interrupted before completion",
                    retryable=True,
                ),
                processed_at=utcnow_iso(),
            ))
            try:
                await self._lookup.mark_failed(item_id, job.owner_id)
            except Exception:
                logger.warning("Could not clear in-flight flag of item %s", item_id, exc_info=True)
        if stuck:
            logger.info("Job %s: released %d interrupted item(s)", job.job_id, len(stuck))
        return len(stuck)

    async def recover_stale(
        self,
        *,
        now: datetime | None = None,
        stale_after: Optional[float] = None,
        fail_after: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Settle or re-drive jobs whose driver was lost (crash, restart).

        - counters already full: mark ``completed``
        - untouched longer than *fail_after* after this runner already
          tried to resume it: mark ``failed`` and release its items
        - otherwise: resubmit, resuming from the last recorded item
        """
        now = now or datetime.now(timezone.utc)
        stale_after = _cfg.STALE_AFTER_SECONDS if stale_after is None else stale_after
        fail_after = _cfg.STALE_FAIL_AFTER_SECONDS if fail_after is None else fail_after
        limit = _cfg.RECOVERY_BATCH_LIMIT if limit is None else limit
        cutoff = (now - timedelta(seconds=stale_after)).isoformat()
        fail_cutoff = (now - timedelta(seconds=fail_after)).isoformat()
        actions: List[Dict[str, Any]] = []

        for job in await self._store.find_stale_jobs(cutoff, limit=limit):
            if self.is_tracking(job.job_id):
                continue
            try:
                if job.status == JobStatus.running and job.progress.processed >= job.progress.total:
                    await self._store.update_status(job.job_id, JobStatus.completed, expected=JobStatus.running)
                    action = "marked_complete"
                elif job.updated_at < fail_cutoff and job.job_id in self._resume_attempts:
                    action = await self._fail_stuck(job, fail_after)
                else:
                    action = await self._resume(job, fail_after)
            except JobQueueFullError:
                logger.warning("Recovery deferred for job %s: runner queue full", job.job_id)
                actions.append({"job_id": job.job_id, "action": "deferred"})
                break
            logger.info("Recovery: job %s %s", job.job_id, action)
            actions.append({"job_id": job.job_id, "action": action})
        return actions

    async def _resume(self, job: JobRecord, fail_after: float) -> str:
        self._resume_attempts.add(job.job_id)
        try:
            await self.submit(job.job_id, resume=job.status == JobStatus.running)
        except JobQueueFullError:
            self._resume_attempts.discard(job.job_id)
            raise
        except Exception:
            logger.error("Resume of job %s failed", job.job_id, exc_info=True)
            return await self._fail_stuck(job, fail_after)
        return "resumed"

    async def _fail_stuck(self, job: JobRecord, fail_after: float) -> str:
        await self._store.update_status(
            job.job_id,
            JobStatus.failed,
            error=f"Job stuck for more than {int(fail_after // 60)} minutes",
            expected=job.status,
        )
        self._resume_attempts.discard(job.job_id)
        failed = await self._store.get_job(job.job_id)
        if failed is not None and failed.status in TERMINAL_STATUSES:
            await self.release_interrupted(failed)
        return "marked_failed"

    async def recovery_loop(self, interval: Optional[float] = None) -> None:
        """Run ``recover_stale`` forever, every *interval* seconds."""
        while True:
            try:
                await self.recover_stale()
            except Exception:  # noqa: BLE001
                logger.warning("Stale job recovery failed", exc_info=True)
            await asyncio.sleep(_cfg.RECOVERY_INTERVAL_SECONDS if interval is None else interval)
