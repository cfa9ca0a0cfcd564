"""Shared test fixtures for the bulk_engine test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from bulk_engine.api.jobs.controller import JobController
from bulk_engine.api.jobs.eligibility import EligibilityClassifier
from bulk_engine.api.jobs.processor import ItemProcessor
from bulk_engine.api.jobs.runner import JobRunner
from bulk_engine.api.jobs.scheduler import BatchScheduler
from bulk_engine.api.jobs.sources import PRIMARY, SECONDARY, ItemSources, SqliteSourceLookup
from bulk_engine.api.jobs.store import JobStore


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    aiosqlite runs each connection on its own thread; a connection left
    open by a failing test would otherwise keep the interpreter alive.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Fakes ────────────────────────────────────────────────────────────


class RecordingStrategy:
    """Strategy double: records calls, fails for chosen ids."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.calls: List[str] = []
        self.fail_with: Dict[str, BaseException] = {}

    async def invoke(self, item_id: str, owner_id: str, sources: ItemSources) -> Dict[str, Any]:
        self.calls.append(item_id)
        exc = self.fail_with.get(item_id)
        if exc is not None:
            raise exc
        return {"item_id": item_id, "source": getattr(sources, f"{self.name}_source")}


def make_item(
    item_id: str,
    owner_id: str = "owner-1",
    *,
    primary: Optional[str] = "https://example.com",
    secondary: Optional[str] = None,
    processed_hours_ago: Optional[float] = None,
    in_flight: bool = False,
) -> ItemSources:
    last = None
    if processed_hours_ago is not None:
        last = datetime.now(timezone.utc) - timedelta(hours=processed_hours_ago)
    return ItemSources(
        item_id=item_id,
        owner_id=owner_id,
        primary_source=primary,
        secondary_source=secondary,
        last_processed_at=last,
        in_flight=in_flight,
    )


# ── Engine fixtures ──────────────────────────────────────────────────


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def lookup():
    lk = SqliteSourceLookup(":memory:")
    await lk.initialize()
    yield lk
    await lk.close()


@pytest.fixture
def strategies():
    return {PRIMARY: RecordingStrategy(PRIMARY), SECONDARY: RecordingStrategy(SECONDARY)}


@pytest.fixture
def processor(lookup, strategies):
    return ItemProcessor(lookup, strategies)


@pytest.fixture
def scheduler(store, processor):
    return BatchScheduler(store, processor, item_delay=0, batch_delay=0)


@pytest.fixture
async def runner(store, scheduler):
    r = JobRunner(store, scheduler, max_concurrent=2, max_queued=4)
    yield r
    await r.shutdown()


@pytest.fixture
def controller(store, lookup, runner):
    return JobController(store, EligibilityClassifier(lookup), runner)


@pytest.fixture
def seed(lookup):
    """``await seed(make_item(...), ...)`` registers work items."""

    async def _seed(*items: ItemSources) -> None:
        await lookup.upsert_items(items)

    return _seed


# ── App fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(store, lookup, runner, controller):
    """Create a test FastAPI app wired to the per-test engine fixtures."""
    import bulk_engine.api.deps.auth as _auth
    import bulk_engine.api.deps.providers as _prov
    from bulk_engine.api.config import ApiSettings
    from bulk_engine.api.main import create_app

    # Disable auth for tests so mutation endpoints are accessible
    _orig_auth_enabled = _auth.API_AUTH_ENABLED
    _auth.API_AUTH_ENABLED = False

    settings = ApiSettings(job_db_path=":memory:", recovery_enabled=False)

    # Inject into the provider module
    _prov._job_store = store
    _prov._source_lookup = lookup
    _prov._job_runner = runner
    _prov._job_controller = controller

    application = create_app(settings)
    yield application

    # Cleanup
    _auth.API_AUTH_ENABLED = _orig_auth_enabled
    _prov._job_store = None
    _prov._source_lookup = None
    _prov._job_runner = None
    _prov._job_controller = None
    _prov._settings_override = None
    _prov.get_settings.cache_clear()
    _prov.get_runtime_config.cache_clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
        headers={"X-Owner-Id": "owner-1"},
    ) as ac:
        yield ac
