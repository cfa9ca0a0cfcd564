"""SQLite-backed bulk job engine: eligibility, batching, per-item processing."""
from .controller import JobController
from .eligibility import Eligibility, EligibilityClassifier
from .models import ItemResult, JobOptions, JobRecord, JobStatus
from .processor import ItemProcessor
from .runner import JobRunner
from .scheduler import BatchScheduler
from .sources import ItemSources, SqliteSourceLookup
from .store import JobStore
from .strategies import CallableStrategy, HttpStrategyInvoker, StrategyError

__all__ = [
    "BatchScheduler",
    "CallableStrategy",
    "Eligibility",
    "EligibilityClassifier",
    "HttpStrategyInvoker",
    "ItemProcessor",
    "ItemResult",
    "ItemSources",
    "JobController",
    "JobOptions",
    "JobRecord",
    "JobRunner",
    "JobStatus",
    "JobStore",
    "SqliteSourceLookup",
    "StrategyError",
]
