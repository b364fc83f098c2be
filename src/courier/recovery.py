"""Recovery for requests that already failed.

Strategies are registered per ErrorKind and run by ``recover``. Without one,
a retryable failure is sent again after a delay and anything else is raised.

Requests that fail with a Network error are kept in a store keyed by method
and URL. When connectivity returns the store is drained: an entry is dropped
once its re-send succeeds or after ``max_retries`` failed re-sends. Only
idempotent methods are stored, so a POST is never sent twice behind the
caller's back.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Callable, Union

from .errors import ClassifiedError, ErrorKind
from .scheduler import DEFAULT_PARALLEL_LIMIT, Outcome, parallel
from .types import RequestConfig

logger = logging.getLogger("courier")

DEFAULT_RECOVERY_DELAY = 5.0
DEFAULT_MAX_RETRIES = 3
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})

Send = Callable[[RequestConfig], Awaitable[Any]]
Strategy = Callable[[ClassifiedError, Union[RequestConfig, None]], Any]


@dataclass
class FailedRequest:
    id: str
    config: RequestConfig
    error: ClassifiedError
    stored_at: float
    retry_count: int = 0


class ErrorRecoveryManager:
    def __init__(
        self,
        send: Send,
        *,
        delay: float = DEFAULT_RECOVERY_DELAY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        limit: int = DEFAULT_PARALLEL_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.send = send
        self.delay = delay
        self.max_retries = max_retries
        self.limit = limit
        self.sleep = sleep
        self._strategies: dict[ErrorKind, Strategy] = {}
        self._failed: dict[str, FailedRequest] = {}
        self._draining = False

    @property
    def failed(self) -> list[FailedRequest]:
        return list(self._failed.values())

    def register_strategy(self, kind: Union[ErrorKind, str], strategy: Strategy) -> None:
        self._strategies[ErrorKind(kind)] = strategy

    async def recover(self, error: ClassifiedError, config: Union[RequestConfig, None] = None) -> Any:
        strategy = self._strategies.get(error.kind)
        if strategy is None:
            return await self._default_recovery(error, config)
        result = strategy(error, config)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _default_recovery(self, error: ClassifiedError, config: Union[RequestConfig, None]) -> Any:
        if not error.retryable or config is None:
            raise error
        delay = error.retry_after if error.retry_after is not None else self.delay
        logger.info(f"recovery retry scheduled kind={error.kind.value} delay={delay:g}s url={config.url}")
        await self.sleep(delay)
        return await self.send(config)

    def should_store(self, config: RequestConfig) -> bool:
        return config.method in IDEMPOTENT_METHODS

    def store_failed_request(self, config: RequestConfig, error: ClassifiedError) -> FailedRequest:
        key = f"{config.method} {config.url}"
        entry = self._failed.get(key)
        if entry is not None:
            # Same request failing again keeps its retry count
            entry.error = error
            return entry
        entry = FailedRequest(id=key, config=config, error=error, stored_at=time.time())
        self._failed[key] = entry
        logger.debug(f"failed request stored id={key} stored={len(self._failed)}")
        return entry

    def discard(self, request_id: str) -> bool:
        return self._failed.pop(request_id, None) is not None

    async def retry_all_failed_requests(self) -> list[Outcome]:
        """Re-send every stored request; all are settled before returning."""
        if self._draining or not self._failed:
            return []
        self._draining = True
        entries = list(self._failed.values())
        logger.info(f"re-sending failed requests count={len(entries)}")
        try:
            outcomes = await parallel(
                [lambda entry=entry: self.send(entry.config) for entry in entries], self.limit
            )
        finally:
            self._draining = False
        for entry, outcome in zip(entries, outcomes):
            if outcome.ok:
                self._failed.pop(entry.id, None)
                continue
            entry.retry_count += 1
            if entry.retry_count >= self.max_retries:
                self._failed.pop(entry.id, None)
                logger.warning(f"failed request dropped id={entry.id} retries={entry.retry_count}")
        return outcomes
