"""Batch scheduler: drives one job's items, in order, through the item processor."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from ... import config as _cfg
from .models import ItemResult, ItemStatus, JobRecord, JobStatus
from .processor import ItemProcessor
from .store import JobStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split *items* into contiguous slices of *batch_size*; the last may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


class BatchScheduler:
    """Runs a pending job to a terminal state.

    Items are processed strictly sequentially.  Before every item the
    scheduler checks both the in-process cancel event and the persisted job
    status, so a cancel from any caller stops the loop at the next item
    boundary.  Item failures are recorded and skipped over; only an
    exception escaping the loop itself fails the job.

    ``item_delay`` / ``batch_delay`` default to the live values in
    ``config`` (read on every pause, so runtime patches apply).
    """

    def __init__(
        self,
        store: JobStore,
        processor: ItemProcessor,
        *,
        item_delay: Optional[float] = None,
        batch_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.processor = processor
        self._item_delay = item_delay
        self._batch_delay = batch_delay
        self._sleep = sleep

    @property
    def item_delay(self) -> float:
        return _cfg.ITEM_DELAY_SECONDS if self._item_delay is None else self._item_delay

    @property
    def batch_delay(self) -> float:
        return _cfg.BATCH_DELAY_SECONDS if self._batch_delay is None else self._batch_delay

    async def run(
        self,
        job_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        *,
        resume: bool = False,
    ) -> Optional[JobStatus]:
        """Drive *job_id* and return the status it ended in.

        A job that is not ``pending`` is left untouched (returns its current
        status), unless *resume* is set and the job is ``running``, in which
        case items that already have a terminal result are skipped.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning("Job %s not found; nothing to run", job_id)
            return None

        if job.status == JobStatus.pending:
            if not await self.store.update_status(job_id, JobStatus.running, expected=JobStatus.pending):
                logger.info("Job %s was claimed or cancelled before start", job_id)
                return await self.store.get_status(job_id)
        elif not (resume and job.status == JobStatus.running):
            logger.debug("Job %s is %s; scheduler run skipped", job_id, job.status.value)
            return job.status

        logger.info(
            "Starting job %s for %d items (batch_size=%d%s)",
            job_id, len(job.item_ids), job.options.batch_size, ", resumed" if resume else "",
        )
        try:
            return await self._drive(job, cancel_event)
        except asyncio.CancelledError:
            logger.warning("Job %s driver task cancelled; job left for recovery", job_id)
            raise
        except Exception as exc:
            logger.error("Job %s failed: %s", job_id, exc, exc_info=True)
            try:
                await self.store.update_status(
                    job_id, JobStatus.failed, error=str(exc) or type(exc).__name__,
                    expected=JobStatus.running,
                )
            except Exception:
                logger.error("Could not record failure of job %s", job_id, exc_info=True)
            return JobStatus.failed

    async def _drive(self, job: JobRecord, cancel_event: Optional[asyncio.Event]) -> JobStatus:
        job_id = job.job_id
        batches = make_batches(job.item_ids, job.options.batch_size)
        done = {item_id for item_id, r in job.results.items() if r.is_terminal}
        completed = failed = 0
        ran_a_batch = False

        for batch_no, batch in enumerate(batches, start=1):
            todo = [i for i in batch if i not in done]
            if not todo:
                continue
            if ran_a_batch and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            ran_a_batch = True

            stopped = await self._stop_status(job_id, cancel_event)
            if stopped is not None:
                return stopped
            await self.store.update_progress(job_id, current_batch=batch_no)
            logger.info("Job %s: batch %d of %d (%d items)", job_id, batch_no, len(batches), len(todo))

            for pos, item_id in enumerate(todo):
                if pos > 0 and self.item_delay > 0:
                    await self._sleep(self.item_delay)
                stopped = await self._stop_status(job_id, cancel_event)
                if stopped is not None:
                    return stopped

                await self.store.upsert_result(job_id, ItemResult(item_id=item_id, status=ItemStatus.running))
                result = await self.processor.process(item_id, job.owner_id, job.options)
                await self.store.record_item_outcome(job_id, result)
                if result.status == ItemStatus.completed:
                    completed += 1
                else:
                    failed += 1

        if not await self.store.update_status(job_id, JobStatus.completed, expected=JobStatus.running):
            final = await self.store.get_status(job_id)
            logger.info("Job %s finished its items but is %s", job_id, final.value if final else "gone")
            return final
        logger.info(
            "Job %s completed: %d successful, %d failed", job_id, completed, failed,
            extra={"metrics": {"job_id": job_id, "completed": completed, "failed": failed}},
        )
        return JobStatus.completed

    async def _stop_status(self, job_id: str, cancel_event: Optional[asyncio.Event]) -> Optional[JobStatus]:
        """Return the status to stop with, or None to keep going."""
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Job %s cancelled; stopping at item boundary", job_id)
            return JobStatus.cancelled
        status = await self.store.get_status(job_id)
        if status is None:
            raise LookupError(f"Job '{job_id}' disappeared from the job store")
        if status != JobStatus.running:
            logger.info("Job %s is %s; stopping at item boundary", job_id, status.value)
            return status
        return None
