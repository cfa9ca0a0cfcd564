"""Tests for background dispatch, cancellation signalling and stale-job recovery."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_item

from bulk_engine.api.errors import JobQueueFullError
from bulk_engine.api.jobs.models import ItemResult, ItemStatus, JobOptions, JobStatus
from bulk_engine.api.jobs.processor import ItemProcessor
from bulk_engine.api.jobs.runner import JobRunner
from bulk_engine.api.jobs.scheduler import BatchScheduler
from bulk_engine.api.jobs.sources import PRIMARY
from bulk_engine.api.jobs.strategies import CallableStrategy


async def _job(store, seed, ids, **options):
    await seed(*(make_item(i) for i in ids))
    return await store.create_job("owner-1", ids, JobOptions(**options))


@pytest.mark.asyncio
async def test_submit_runs_job_in_background(store, seed, runner):
    job = await _job(store, seed, list("abc"))
    assert await runner.submit(job.job_id) is True
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.completed
    assert (await store.get_job(job.job_id)).status == JobStatus.completed
    assert runner.pending_count == 0


@pytest.mark.asyncio
async def test_duplicate_submit_is_ignored(store, seed, lookup):
    gate = asyncio.Event()

    async def _blocked(item_id, owner_id, sources):
        await gate.wait()
        return {}

    scheduler = BatchScheduler(
        store, ItemProcessor(lookup, {PRIMARY: CallableStrategy(PRIMARY, _blocked)}),
        item_delay=0, batch_delay=0,
    )
    runner = JobRunner(store, scheduler)
    job = await _job(store, seed, ["a"])
    assert await runner.submit(job.job_id) is True
    assert await runner.submit(job.job_id) is False
    gate.set()
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.completed


@pytest.mark.asyncio
async def test_queue_full(store, seed, lookup):
    gate = asyncio.Event()

    async def _blocked(item_id, owner_id, sources):
        await gate.wait()
        return {}

    scheduler = BatchScheduler(
        store, ItemProcessor(lookup, {PRIMARY: CallableStrategy(PRIMARY, _blocked)}),
        item_delay=0, batch_delay=0,
    )
    runner = JobRunner(store, scheduler, max_concurrent=1, max_queued=1)
    first = await _job(store, seed, ["a"])
    second = await store.create_job("owner-2", ["a"])
    await runner.submit(first.job_id)
    with pytest.raises(JobQueueFullError):
        await runner.submit(second.job_id)
    await runner.shutdown()


@pytest.mark.asyncio
async def test_signal_cancel_stops_running_job(store, seed, lookup):
    started = asyncio.Event()
    gate = asyncio.Event()

    async def _blocked(item_id, owner_id, sources):
        started.set()
        await gate.wait()
        return {}

    scheduler = BatchScheduler(
        store, ItemProcessor(lookup, {PRIMARY: CallableStrategy(PRIMARY, _blocked)}),
        item_delay=0, batch_delay=0,
    )
    runner = JobRunner(store, scheduler)
    job = await _job(store, seed, list("abcd"), batch_size=2)
    await runner.submit(job.job_id)
    await asyncio.wait_for(started.wait(), timeout=5)

    await store.update_status(job.job_id, JobStatus.cancelled)
    assert runner.signal_cancel(job.job_id) is True
    gate.set()
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.cancelled

    final = await store.get_job(job.job_id)
    assert final.status == JobStatus.cancelled
    assert final.progress.processed == 1


@pytest.mark.asyncio
async def test_signal_cancel_unknown_job(runner):
    assert runner.signal_cancel("nope") is False


# ── Recovery ─────────────────────────────────────────────────────────


LATER = datetime.now(timezone.utc) + timedelta(minutes=10)
MUCH_LATER = datetime.now(timezone.utc) + timedelta(hours=2)


@pytest.mark.asyncio
async def test_recovery_resumes_orphaned_running_job(store, seed, runner, strategies):
    job = await _job(store, seed, list("abc"))
    await store.update_status(job.job_id, JobStatus.running)
    await store.record_item_outcome(job.job_id, ItemResult(item_id="a", status=ItemStatus.completed))

    actions = await runner.recover_stale(now=LATER, stale_after=300, fail_after=1800)
    assert actions == [{"job_id": job.job_id, "action": "resumed"}]
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.completed
    assert strategies[PRIMARY].calls == ["b", "c"]
    assert (await store.get_job(job.job_id)).progress.completed == 3


@pytest.mark.asyncio
async def test_recovery_dispatches_pending_job(store, seed, runner):
    job = await _job(store, seed, ["a"])
    actions = await runner.recover_stale(now=LATER, stale_after=300, fail_after=1800)
    assert actions == [{"job_id": job.job_id, "action": "resumed"}]
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.completed


@pytest.mark.asyncio
async def test_recovery_completes_job_with_full_counters(store, seed, runner, strategies):
    job = await _job(store, seed, ["a"])
    await store.update_status(job.job_id, JobStatus.running)
    await store.record_item_outcome(job.job_id, ItemResult(item_id="a", status=ItemStatus.completed))

    actions = await runner.recover_stale(now=LATER, stale_after=300, fail_after=1800)
    assert actions == [{"job_id": job.job_id, "action": "marked_complete"}]
    assert (await store.get_job(job.job_id)).status == JobStatus.completed
    assert strategies[PRIMARY].calls == []


@pytest.mark.asyncio
async def test_recovery_resumes_long_stalled_job_before_failing(store, seed, runner, strategies):
    job = await _job(store, seed, list("ab"))
    await seed(make_item("a", in_flight=True))
    await store.update_status(job.job_id, JobStatus.running)
    await store.upsert_result(job.job_id, ItemResult(item_id="a", status=ItemStatus.running))

    actions = await runner.recover_stale(now=MUCH_LATER, stale_after=300, fail_after=1800)
    assert actions == [{"job_id": job.job_id, "action": "resumed"}]
    assert await runner.wait(job.job_id, timeout=5) == JobStatus.completed
    assert strategies[PRIMARY].calls == ["a", "b"]
    assert (await store.get_job(job.job_id)).progress.completed == 2


class _CrashingScheduler:
    """Driver whose store access blows up, so a resumed job never moves."""

    async def run(self, job_id, cancel_event=None, *, resume=False):
        raise RuntimeError("job store unavailable")


@pytest.mark.asyncio
async def test_recovery_fails_job_after_resume_attempt(store, seed, lookup, controller):
    job = await _job(store, seed, list("ab"))
    await seed(make_item("a", in_flight=True))
    await store.update_status(job.job_id, JobStatus.running)
    await store.upsert_result(job.job_id, ItemResult(item_id="a", status=ItemStatus.running))
    crashing = JobRunner(store, _CrashingScheduler(), lookup=lookup)

    first = await crashing.recover_stale(now=MUCH_LATER, stale_after=300, fail_after=1800)
    assert first == [{"job_id": job.job_id, "action": "resumed"}]
    await crashing.wait(job.job_id, timeout=5)
    assert (await store.get_job(job.job_id)).status == JobStatus.running

    second = await crashing.recover_stale(now=MUCH_LATER, stale_after=300, fail_after=1800)
    assert second == [{"job_id": job.job_id, "action": "marked_failed"}]
    failed = await store.get_job(job.job_id)
    assert failed.status == JobStatus.failed
    assert "stuck" in failed.error
    assert failed.results["a"].status == ItemStatus.failed
    assert failed.results["a"].error.retryable is True
    assert failed.progress.failed == 1
    assert (await lookup.get_sources(["a"], "owner-1"))["a"].in_flight is False

    # The interrupted item can be scheduled again.
    retry, summary = await controller.create_job("owner-1", ["a"])
    assert summary["eligible"] == 1
    assert summary["already_processing"] == 0
    assert retry.item_ids == ["a"]


@pytest.mark.asyncio
async def test_release_interrupted_requires_terminal_job(store, seed, runner):
    job = await _job(store, seed, ["a"])
    with pytest.raises(ValueError):
        await runner.release_interrupted(job)


@pytest.mark.asyncio
async def test_recovery_ignores_fresh_jobs(store, seed, runner):
    await _job(store, seed, ["a"])
    assert await runner.recover_stale(stale_after=300, fail_after=1800) == []
