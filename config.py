"""
Central configuration for the bulk job engine.

Flat-constant interface read by the job modules and the API layer.  Pacing,
freshness and recovery windows may be patched at runtime through
``api.config.RuntimeConfig`` (see its whitelist); everything else is fixed
for the life of the process.

Config Status Legend
====================
  ACTIVE      : Imported and used by running code.

Search for ``# STATUS:`` to locate all annotations.
"""
from pathlib import Path
from typing import Dict, List

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent                  # STATUS: ACTIVE; base path for relative references
DEFAULT_DB_PATH = ROOT_DIR / "bulk_jobs.db"       # STATUS: ACTIVE; api/config.py default sqlite file

# ── Job options ────────────────────────────────────────────────────────
DEFAULT_BATCH_SIZE = 3                            # STATUS: ACTIVE; items per batch when the caller omits batch_size
DEFAULT_TIMEOUT_SECONDS = 30                      # STATUS: ACTIVE; per-item strategy timeout
MAX_ITEMS_PER_JOB = 100                           # STATUS: ACTIVE; upper bound on item_ids per create request
MAX_BATCH_SIZE = 50                               # STATUS: ACTIVE; upper bound on options.batch_size

# ── Pacing ─────────────────────────────────────────────────────────────
# Fixed per-item and per-batch pauses.  They smooth the progress signal for
# polling clients and keep provider request rates low; they are not a
# provider-aware rate limiter.
ITEM_DELAY_SECONDS = 1.0                          # STATUS: ACTIVE; pause between items inside a batch
BATCH_DELAY_SECONDS = 3.0                         # STATUS: ACTIVE; pause between batches

# ── Eligibility ────────────────────────────────────────────────────────
FRESHNESS_WINDOW_HOURS = 24                       # STATUS: ACTIVE; items processed more recently count as already processed

# ── Runner ─────────────────────────────────────────────────────────────
RUNNER_MAX_CONCURRENT = 4                         # STATUS: ACTIVE; concurrent job drivers per process
RUNNER_MAX_QUEUED = 20                            # STATUS: ACTIVE; drivers queued or running before submit is refused

# ── Recovery ───────────────────────────────────────────────────────────
RECOVERY_ENABLED = True                           # STATUS: ACTIVE; run the stale-job sweep at startup and periodically
RECOVERY_INTERVAL_SECONDS = 300                   # STATUS: ACTIVE; sweep period (5 minutes)
STALE_AFTER_SECONDS = 300                         # STATUS: ACTIVE; job untouched this long is considered orphaned
STALE_FAIL_AFTER_SECONDS = 1800                   # STATUS: ACTIVE; orphaned this long is given up and marked failed
RECOVERY_BATCH_LIMIT = 10                         # STATUS: ACTIVE; max stale jobs handled per sweep

# ── Status polling ─────────────────────────────────────────────────────
ACTIVE_JOB_RECENT_SECONDS = 30                    # STATUS: ACTIVE; terminal jobs listed as "recent" for this long
POLL_INTERVAL_HINT_SECONDS = 2                    # STATUS: ACTIVE; routers/jobs.py meta.poll_interval_s hint

# ── Strategies ─────────────────────────────────────────────────────────
# Source type -> HTTP endpoint of the enrichment provider.  Empty means the
# host application injects its own invokers.
STRATEGY_ENDPOINTS: Dict[str, str] = {            # STATUS: ACTIVE; api/deps/providers.py
    "primary": "",
    "secondary": "",
}
STRATEGY_HTTP_RETRIES = 2                         # STATUS: ACTIVE; strategies.py retry policy
STRATEGY_HTTP_BACKOFF_SECONDS = 0.5               # STATUS: ACTIVE; strategies.py retry policy
STRATEGY_HTTP_MAX_WAIT_SECONDS = 10.0             # STATUS: ACTIVE; strategies.py; cap on Retry-After and backoff waits

# ── Logging ────────────────────────────────────────────────────────────
LOG_LEVEL = "INFO"                                # STATUS: ACTIVE; api/main.py; "DEBUG", "INFO", "WARNING", "ERROR"
LOG_FORMAT = "structured"                         # STATUS: ACTIVE; api/main.py; "structured" or "json"


def validate_config() -> List[Dict[str, str]]:
    """Check config constants for values that would break the job engine.

    Returns a list of ``{"level": ..., "message": ...}`` dicts; empty when
    everything is consistent.
    """
    issues: List[Dict[str, str]] = []

    if DEFAULT_BATCH_SIZE < 1 or DEFAULT_BATCH_SIZE > MAX_BATCH_SIZE:
        issues.append({
            "level": "ERROR",
            "message": f"DEFAULT_BATCH_SIZE={DEFAULT_BATCH_SIZE} must be between 1 and {MAX_BATCH_SIZE}",
        })
    if DEFAULT_TIMEOUT_SECONDS < 1:
        issues.append({
            "level": "ERROR",
            "message": f"DEFAULT_TIMEOUT_SECONDS={DEFAULT_TIMEOUT_SECONDS} must be >= 1",
        })
    if ITEM_DELAY_SECONDS < 0 or BATCH_DELAY_SECONDS < 0:
        issues.append({
            "level": "ERROR",
            "message": "ITEM_DELAY_SECONDS and BATCH_DELAY_SECONDS must be non-negative",
        })
    if STALE_FAIL_AFTER_SECONDS <= STALE_AFTER_SECONDS:
        issues.append({
            "level": "WARNING",
            "message": (
                f"STALE_FAIL_AFTER_SECONDS={STALE_FAIL_AFTER_SECONDS} <= "
                f"STALE_AFTER_SECONDS={STALE_AFTER_SECONDS}; stale jobs will be "
                "failed without a resume attempt"
            ),
        })
    if FRESHNESS_WINDOW_HOURS <= 0:
        issues.append({
            "level": "WARNING",
            "message": "FRESHNESS_WINDOW_HOURS <= 0 disables the already-processed bucket",
        })
    return issues
