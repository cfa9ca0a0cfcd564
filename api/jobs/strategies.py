"""
Strategy invokers: the external capability run for one work item.

A strategy takes an item (plus its source facts) and returns a JSON-able
payload, or raises.  ``StrategyError`` lets a strategy state the failure
kind itself; any other exception is classified by the item processor.

Two implementations ship here:
  - ``CallableStrategy`` wraps an async function (host-provided services,
    tests).
  - ``HttpStrategyInvoker`` POSTs the item to a provider endpoint with retry
    and 429/5xx backoff.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import requests

from .models import ErrorKind
from .sources import ItemSources

logger = logging.getLogger(__name__)


class StrategyError(Exception):
    """Failure raised by a strategy that already knows its classification."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.transient_provider_error,
                 retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.kind = ErrorKind(kind)
        if retryable is None:
            retryable = self.kind != ErrorKind.invalid_input
        self.retryable = retryable


class StrategyInvoker(Protocol):
    name: str

    async def invoke(self, item_id: str, owner_id: str, sources: ItemSources) -> Dict[str, Any]:
        ...


class CallableStrategy:
    """Adapter turning ``async fn(item_id, owner_id, sources) -> dict`` into a strategy."""

    def __init__(
        self,
        name: str,
        fn: Callable[[str, str, ItemSources], Awaitable[Dict[str, Any]]],
    ) -> None:
        self.name = name
        self._fn = fn

    async def invoke(self, item_id: str, owner_id: str, sources: ItemSources) -> Dict[str, Any]:
        return await self._fn(item_id, owner_id, sources)


@dataclass
class RetryPolicy:
    """HTTP retry settings for provider requests."""
    max_retries: int = 2
    backoff_seconds: float = 0.5
    max_wait_seconds: float = 10.0
    timeout_seconds: float = 20.0


class HttpStrategyInvoker:
    """
    Provider call over HTTP.

    Sends ``{"item_id", "owner_id", "source"}`` as JSON to *endpoint* and
    expects a JSON object back.  429 and 5xx responses are retried with
    exponential backoff; other 4xx are treated as bad input and not retried.
    The blocking ``requests`` call runs in a worker thread.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        source_attr: str = "primary_source",
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.name = name
        self.endpoint = endpoint
        self.source_attr = source_attr
        self.retry_policy = retry_policy or RetryPolicy()
        self.session = session or requests.Session()
        self.headers = dict(headers or {})

    async def invoke(self, item_id: str, owner_id: str, sources: ItemSources) -> Dict[str, Any]:
        body = {
            "item_id": item_id,
            "owner_id": owner_id,
            "source": getattr(sources, self.source_attr, None),
        }
        return await asyncio.to_thread(self._post_with_retries, body)

    def _post_with_retries(self, body: Dict[str, Any]) -> Dict[str, Any]:
        last_err: Optional[Exception] = None
        for attempt in range(self.retry_policy.max_retries + 1):
            try:
                resp = self.session.post(
                    self.endpoint,
                    json=body,
                    headers=self.headers,
                    timeout=self.retry_policy.timeout_seconds,
                )
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise requests.HTTPError(
                        f"Transient status={resp.status_code} strategy={self.name}",
                        response=resp,
                    )
                if 400 <= resp.status_code < 500:
                    raise StrategyError(
                        f"Provider rejected item {body['item_id']}: HTTP {resp.status_code}",
                        kind=ErrorKind.invalid_input,
                    )
                payload = resp.json()
                if not isinstance(payload, dict):
                    raise StrategyError(
                        f"Unexpected payload type: {type(payload).__name__}",
                        kind=ErrorKind.transient_provider_error,
                    )
                return payload
            except requests.RequestException as exc:
                last_err = exc
                if attempt >= self.retry_policy.max_retries:
                    break
                time.sleep(self._retry_delay(attempt, exc.response))

        logger.warning("Strategy %s gave up after %d attempts: %s",
                       self.name, self.retry_policy.max_retries + 1, last_err)
        raise StrategyError(
            f"Provider request failed after retries: {last_err}",
            kind=ErrorKind.transient_provider_error,
        )

    def _retry_delay(self, attempt: int, resp: Optional[requests.Response]) -> float:
        """Seconds to wait before the next attempt; ``Retry-After`` wins, both capped."""
        delay = self.retry_policy.backoff_seconds * (2 ** attempt)
        retry_after = resp.headers.get("Retry-After") if resp is not None else None
        if retry_after:
            try:
                delay = max(float(retry_after), 0.25)
            except (TypeError, ValueError):
                pass
        return min(delay, self.retry_policy.max_wait_seconds)
