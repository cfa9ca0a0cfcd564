"""Runtime-adjustable configuration for the API layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Set

from pydantic_settings import BaseSettings

from .. import config as _engine_cfg

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint.
_ADJUSTABLE_KEYS: Set[str] = {
    "ITEM_DELAY_SECONDS",
    "BATCH_DELAY_SECONDS",
    "FRESHNESS_WINDOW_HOURS",
    "ACTIVE_JOB_RECENT_SECONDS",
    "STALE_AFTER_SECONDS",
    "STALE_FAIL_AFTER_SECONDS",
}

# Semantic validators: key -> (validator_fn, human-readable description).
# Validator returns True if the value is acceptable.
CONFIG_VALIDATORS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    "ITEM_DELAY_SECONDS": (
        lambda v: 0.0 <= v <= 60.0,
        "Must be between 0.0 and 60.0",
    ),
    "BATCH_DELAY_SECONDS": (
        lambda v: 0.0 <= v <= 300.0,
        "Must be between 0.0 and 300.0",
    ),
    "FRESHNESS_WINDOW_HOURS": (
        lambda v: 0 <= v <= 24 * 30,
        "Must be between 0 and 720",
    ),
    "ACTIVE_JOB_RECENT_SECONDS": (
        lambda v: 0 <= v <= 3600,
        "Must be between 0 and 3600",
    ),
    "STALE_AFTER_SECONDS": (
        lambda v: 30 <= v <= 86400,
        "Must be between 30 and 86400",
    ),
    "STALE_FAIL_AFTER_SECONDS": (
        lambda v: 60 <= v <= 7 * 86400,
        "Must be between 60 and 604800",
    ),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    job_db_path: str = str(_engine_cfg.DEFAULT_DB_PATH)
    log_level: str = _engine_cfg.LOG_LEVEL
    recovery_enabled: bool = True
    primary_strategy_url: str = ""
    secondary_strategy_url: str = ""

    model_config = {"env_prefix": "BULK_API_"}


class RuntimeConfig:
    """Thin wrapper around engine ``config.py`` module-level variables.

    Provides get/patch semantics restricted to the adjustable whitelist.
    """

    def __init__(self) -> None:
        self._cfg = _engine_cfg

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            out[key] = getattr(self._cfg, key, None)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply validated updates and return the new state.

        Raises ``KeyError`` for unknown keys and ``ValueError`` for values
        that fail coercion or validation.  Nothing is applied unless every
        update is valid.
        """
        bad = set(updates) - _ADJUSTABLE_KEYS
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        staged: Dict[str, Any] = {}
        for key, value in updates.items():
            current = getattr(self._cfg, key)
            # Coerce to same type as current value
            target_type = type(current)
            try:
                coerced = target_type(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
            validator = CONFIG_VALIDATORS.get(key)
            if validator is not None:
                check_fn, description = validator
                if not check_fn(coerced):
                    raise ValueError(
                        f"Invalid value for {key}: {coerced!r}. {description}"
                    )
            staged[key] = coerced
        for key, coerced in staged.items():
            setattr(self._cfg, key, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()
