import asyncio
import contextlib
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from typing import Any, Callable, Union

logger = logging.getLogger("courier")

DEFAULT_PARALLEL_LIMIT = 3

Operation = Union[Callable[[], Awaitable[Any]], Awaitable[Any]]


class ConcurrencyScheduler:
    """Bounded admission of concurrent calls.

    At most ``limit`` holders at once. Waiters are served FIFO: a released
    slot is handed directly to the oldest waiter, so a late arrival can never
    overtake the queue. A waiter cancelled before its turn leaves the queue
    without ever holding a slot.
    """

    def __init__(self, limit: int, name: str = "default"):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.name = name
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()
        self.peak = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def _grant(self) -> None:
        self._active += 1
        self.peak = max(self.peak, self._active)

    async def acquire(self) -> None:
        if self._active < self.limit and not self.pending:
            self._grant()
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before the cancel landed
                self.release()
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Hand the slot over; _active stays the same
                waiter.set_result(None)
                return
        self._active -= 1

    @contextlib.asynccontextmanager
    async def slot(self):
        await self.acquire()
        try:
            yield self
        finally:
            self.release()


@dataclass
class Outcome:
    index: int
    value: Any = None
    error: Union[BaseException, None] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


async def _invoke(op: Operation) -> Any:
    if inspect.isawaitable(op):
        return await op
    result = op()
    if inspect.isawaitable(result):
        return await result
    return result


async def parallel(
    operations: Iterable[Operation],
    limit: int = DEFAULT_PARALLEL_LIMIT,
    *,
    fail_fast: bool = False,
) -> list[Outcome]:
    """Run operations with at most ``limit`` in flight; results keep input order.

    A fixed pool of ``min(limit, n)`` workers pulls the next index from one
    shared cursor each time it finishes an operation, so every operation is
    admitted exactly once.

    With ``fail_fast`` the first failure stops further admissions; operations
    already running are allowed to finish, then that first error is raised.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    ops = list(operations)
    results: list[Union[Outcome, None]] = [None] * len(ops)
    cursor = iter(range(len(ops)))
    failures: list[BaseException] = []

    async def _worker():
        while not (fail_fast and failures):
            index = next(cursor, None)
            if index is None:
                return
            try:
                value = await _invoke(ops[index])
            except Exception as exc:
                results[index] = Outcome(index, error=exc)
                if fail_fast:
                    failures.append(exc)
            else:
                results[index] = Outcome(index, value=value)

    workers = [asyncio.ensure_future(_worker()) for _ in range(min(limit, len(ops)))]
    try:
        await asyncio.gather(*workers)
    except asyncio.CancelledError:
        for w in workers:
            w.cancel()
        raise
    if failures:
        logger.debug(f"parallel batch stopped early after {len(failures)} failure(s)")
        raise failures[0]
    return [r if r is not None else Outcome(i) for i, r in enumerate(results)]
