"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from ..config import ApiSettings, RuntimeConfig


_settings_override: Optional[ApiSettings] = None


@lru_cache
def get_settings() -> ApiSettings:
    if _settings_override is not None:
        return _settings_override
    return ApiSettings()


def use_settings(settings: ApiSettings) -> None:
    """Make *settings* the value every provider sees (app factory, CLI)."""
    global _settings_override
    _settings_override = settings
    get_settings.cache_clear()


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons, initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_job_store = None
_source_lookup = None
_job_runner = None
_job_controller = None


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(get_settings().job_db_path)
    return _job_store


def get_source_lookup():
    """Return the singleton ``SqliteSourceLookup`` (shares the job database file)."""
    global _source_lookup
    if _source_lookup is None:
        from ..jobs.sources import SqliteSourceLookup

        _source_lookup = SqliteSourceLookup(get_settings().job_db_path)
    return _source_lookup


def build_strategies(settings: ApiSettings) -> Dict[str, object]:
    """HTTP strategy per source type; settings URLs override ``config.STRATEGY_ENDPOINTS``."""
    from ... import config as _cfg
    from ..jobs.sources import PRIMARY, SECONDARY
    from ..jobs.strategies import HttpStrategyInvoker, RetryPolicy

    endpoints = dict(_cfg.STRATEGY_ENDPOINTS)
    if settings.primary_strategy_url:
        endpoints[PRIMARY] = settings.primary_strategy_url
    if settings.secondary_strategy_url:
        endpoints[SECONDARY] = settings.secondary_strategy_url

    policy = RetryPolicy(
        max_retries=_cfg.STRATEGY_HTTP_RETRIES,
        backoff_seconds=_cfg.STRATEGY_HTTP_BACKOFF_SECONDS,
        max_wait_seconds=_cfg.STRATEGY_HTTP_MAX_WAIT_SECONDS,
    )
    attrs = {PRIMARY: "primary_source", SECONDARY: "secondary_source"}
    return {
        source: HttpStrategyInvoker(source, url, source_attr=attrs[source], retry_policy=policy)
        for source, url in endpoints.items()
        if url and source in attrs
    }


def get_job_runner():
    """Return the singleton ``JobRunner``."""
    global _job_runner
    if _job_runner is None:
        from ..jobs.processor import ItemProcessor
        from ..jobs.runner import JobRunner
        from ..jobs.scheduler import BatchScheduler

        store = get_job_store()
        processor = ItemProcessor(get_source_lookup(), build_strategies(get_settings()))
        _job_runner = JobRunner(store, BatchScheduler(store, processor))
    return _job_runner


def get_job_controller():
    """Return the singleton ``JobController``."""
    global _job_controller
    if _job_controller is None:
        from ..jobs.controller import JobController
        from ..jobs.eligibility import EligibilityClassifier

        _job_controller = JobController(
            get_job_store(),
            EligibilityClassifier(get_source_lookup()),
            get_job_runner(),
        )
    return _job_controller
