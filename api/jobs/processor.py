"""Single-item execution: strategy dispatch, timeout, and error classification."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

import requests

from .models import ErrorKind, ItemError, ItemResult, ItemStatus, JobOptions
from .sources import DataSourceLookup, ItemSources
from .strategies import StrategyError, StrategyInvoker

logger = logging.getLogger(__name__)


def classify_error(exc: BaseException) -> ItemError:
    """Map an exception raised while processing an item to a typed ``ItemError``.

    Provider and network failures are retryable, malformed input is not,
    anything unrecognised is ``unexpected_exception`` (retryable).
    """
    message = str(exc) or type(exc).__name__
    if isinstance(exc, StrategyError):
        return ItemError(kind=exc.kind, message=message, retryable=exc.retryable)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ItemError(kind=ErrorKind.transient_provider_error,
                         message=message if str(exc) else "Strategy timed out",
                         retryable=True)
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        code = exc.response.status_code
        if 400 <= code < 500 and code != 429:
            return ItemError(kind=ErrorKind.invalid_input, message=message, retryable=False)
        return ItemError(kind=ErrorKind.transient_provider_error, message=message, retryable=True)
    if isinstance(exc, (requests.RequestException, ConnectionError, OSError)):
        return ItemError(kind=ErrorKind.transient_provider_error, message=message, retryable=True)
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ItemError(kind=ErrorKind.invalid_input, message=message, retryable=False)
    return ItemError(kind=ErrorKind.unexpected_exception, message=message, retryable=True)


def _failed(item_id: str, error: ItemError, strategy: Optional[str] = None) -> ItemResult:
    return ItemResult(
        item_id=item_id,
        status=ItemStatus.failed,
        strategy=strategy,
        error=error,
        processed_at=datetime.now(timezone.utc).isoformat(),
    )


class ItemProcessor:
    """Runs one work item through the strategy matching its data source.

    ``process`` never raises for item-level problems; every outcome comes
    back as an ``ItemResult``.  Only task cancellation propagates.
    """

    def __init__(self, lookup: DataSourceLookup, strategies: Mapping[str, StrategyInvoker]) -> None:
        self.lookup = lookup
        self.strategies: Dict[str, StrategyInvoker] = dict(strategies)

    async def process(self, item_id: str, owner_id: str, options: JobOptions) -> ItemResult:
        try:
            found = await self.lookup.get_sources([item_id], owner_id)
        except Exception as exc:
            logger.warning("Source lookup failed for item %s: %s", item_id, exc)
            return _failed(item_id, classify_error(exc))

        sources: Optional[ItemSources] = found.get(item_id)
        if sources is None:
            return _failed(item_id, ItemError(
                kind=ErrorKind.invalid_input,
                message=f"Item {item_id} not found",
                retryable=False,
            ))

        source_type = sources.source_type()
        if source_type is None:
            return _failed(item_id, ItemError(
                kind=ErrorKind.invalid_input,
                message=f"Item {item_id} has no usable data source",
                retryable=False,
            ))

        strategy = self.strategies.get(source_type)
        if strategy is None:
            return _failed(item_id, ItemError(
                kind=ErrorKind.unexpected_exception,
                message=f"No strategy registered for source '{source_type}'",
                retryable=False,
            ), strategy=source_type)

        await self._mark(self.lookup.mark_in_flight, item_id, owner_id)
        logger.debug("Processing item %s with %s strategy", item_id, source_type)
        try:
            payload = await asyncio.wait_for(
                strategy.invoke(item_id, owner_id, sources),
                timeout=options.timeout,
            )
        except asyncio.CancelledError:
            await self._mark(self.lookup.mark_failed, item_id, owner_id)
            raise
        except Exception as exc:
            error = classify_error(exc)
            logger.info("Item %s failed (%s, retryable=%s): %s",
                        item_id, error.kind.value, error.retryable, error.message)
            await self._mark(self.lookup.mark_failed, item_id, owner_id)
            return _failed(item_id, error, strategy=source_type)

        processed_at = datetime.now(timezone.utc)
        await self._mark(self.lookup.mark_processed, item_id, owner_id, processed_at)
        return ItemResult(
            item_id=item_id,
            status=ItemStatus.completed,
            strategy=source_type,
            payload=payload if isinstance(payload, dict) else {"value": payload},
            processed_at=processed_at.isoformat(),
        )

    @staticmethod
    async def _mark(fn, *args) -> None:
        # Bookkeeping on the lookup must not turn a finished item into a failure.
        try:
            await fn(*args)
        except Exception:
            logger.warning("Source bookkeeping %s failed for %s", getattr(fn, "__name__", fn), args[0],
                           exc_info=True)
