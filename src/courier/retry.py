import asyncio
import logging
from collections.abc import Awaitable
from typing import Callable, TypeVar, Union

from .errors import ClassifiedError, ErrorKind, classify_exception
from .policies import coerce_retry_predicate
from .state import RetryState
from .types import RetryPolicy

T = TypeVar("T")

logger = logging.getLogger("courier")

OnRetry = Callable[[ClassifiedError, RetryState], None]


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Backoff before the attempt following ``attempt`` (1-based)."""
    return min(
        policy.base_delay * (policy.backoff_multiplier ** (attempt - 1)),
        policy.max_delay,
    )


def next_delay(policy: RetryPolicy, error: ClassifiedError, attempt: int) -> float:
    if (
        policy.respect_retry_after
        and error.kind is ErrorKind.RATE_LIMITED
        and error.retry_after is not None
    ):
        return error.retry_after
    return compute_delay(policy, attempt)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Union[RetryPolicy, None] = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    on_retry: Union[OnRetry, None] = None,
    state: Union[RetryState, None] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: zero-arg coroutine function; called once per attempt.
        policy: RetryPolicy (defaults to RetryPolicy()).
        sleep: awaitable delay function, swappable for tests.
        on_retry: called with (error, state) before each wait.
        state: optional RetryState to observe progress from outside.

    Raises:
        ClassifiedError: the last failure, annotated with the attempt count.
        Exception: anything the classifier does not recognise, unchanged and
            without retry.
    """
    policy = policy or RetryPolicy()
    should_retry = coerce_retry_predicate(policy.retry_predicate)
    state = state if state is not None else RetryState()

    for attempt in range(1, policy.max_attempts + 1):
        state.attempt = attempt
        try:
            return await operation()
        except Exception as exc:
            error = classify_exception(exc)
            if error is None:
                raise
            state.history.append(error)
            if attempt >= policy.max_attempts or not should_retry(error, attempt):
                final = error.annotate(attempts=attempt)
                raise final from exc
            delay = next_delay(policy, error, attempt)
            state.next_delay = delay
        logger.warning(
            f"retrying after {error.kind.value} attempt={attempt}/{policy.max_attempts} "
            f"delay={delay:.2f}s"
        )
        if on_retry is not None:
            on_retry(error, state)
        # Cancelling the caller here stops the loop before the next attempt
        await sleep(delay)
    # Unreachable: the final attempt either returns or raises
    raise RuntimeError("courier: retry loop exited without a result")
