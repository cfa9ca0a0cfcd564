"""Dependency injection providers."""
from .auth import get_owner_id, require_auth
from .providers import (
    get_job_controller,
    get_job_runner,
    get_job_store,
    get_runtime_config,
    get_settings,
    get_source_lookup,
)

__all__ = [
    "get_job_controller",
    "get_job_runner",
    "get_job_store",
    "get_owner_id",
    "get_runtime_config",
    "get_settings",
    "get_source_lookup",
    "require_auth",
]
