import asyncio

import pytest

from courier import ClassifiedError, ErrorKind, RetryPolicy, TransportError
from courier.retry import compute_delay, execute_with_retry
from courier.state import RetryState


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_backoff_schedule_caps_at_max_delay():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, backoff_multiplier=2.0, max_delay=30.0)
    assert [compute_delay(policy, a) for a in range(1, 9)] == [
        1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0,
    ]


def test_policy_validation():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=-1)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_multiplier=0.5)


@pytest.mark.asyncio
async def test_always_failing_operation_runs_exactly_max_attempts():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise TransportError("network", "refused")

    sleeps = _Sleeps()
    with pytest.raises(ClassifiedError) as ei:
        await execute_with_retry(op, RetryPolicy(max_attempts=4), sleep=sleeps)
    assert calls["n"] == 4
    assert ei.value.attempts == 4
    assert ei.value.kind is ErrorKind.NETWORK
    assert sleeps.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_success_after_transient_failures():
    outcomes = [TransportError("timeout"), TransportError("network"), "ok"]

    async def op():
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    state = RetryState()
    seen = []
    result = await execute_with_retry(
        op,
        RetryPolicy(max_attempts=5, base_delay=0.5),
        sleep=_Sleeps(),
        on_retry=lambda err, st: seen.append((err.kind, st.attempt)),
        state=state,
    )
    assert result == "ok"
    assert state.attempt == 3
    assert len(state.history) == 2
    assert seen == [(ErrorKind.TIMEOUT, 1), (ErrorKind.NETWORK, 2)]


@pytest.mark.asyncio
async def test_non_retryable_kind_surfaces_immediately():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise ClassifiedError(kind=ErrorKind.VALIDATION, message="bad input")

    with pytest.raises(ClassifiedError) as ei:
        await execute_with_retry(op, RetryPolicy(max_attempts=5), sleep=_Sleeps())
    assert calls["n"] == 1
    assert ei.value.kind is ErrorKind.VALIDATION
    assert ei.value.attempts == 1


@pytest.mark.asyncio
async def test_retry_after_overrides_delay_for_rate_limited():
    attempts = {"n": 0}

    async def op():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ClassifiedError(kind=ErrorKind.RATE_LIMITED, message="slow down", retry_after=42.0)
        return "done"

    sleeps = _Sleeps()
    assert await execute_with_retry(op, RetryPolicy(), sleep=sleeps) == "done"
    assert sleeps.delays == [42.0]


@pytest.mark.asyncio
async def test_retry_after_ignored_when_disabled():
    attempts = {"n": 0}

    async def op():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ClassifiedError(kind=ErrorKind.RATE_LIMITED, message="slow", retry_after=42.0)
        return "done"

    sleeps = _Sleeps()
    await execute_with_retry(op, RetryPolicy(respect_retry_after=False), sleep=sleeps)
    assert sleeps.delays == [1.0]


@pytest.mark.asyncio
async def test_custom_predicate_sees_attempt_number():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise TransportError("network")

    policy = RetryPolicy(max_attempts=10, retry_predicate=lambda err, attempt: attempt < 2)
    with pytest.raises(ClassifiedError) as ei:
        await execute_with_retry(op, policy, sleep=_Sleeps())
    assert calls["n"] == 2
    assert ei.value.attempts == 2


@pytest.mark.asyncio
async def test_unclassifiable_exception_propagates_unchanged():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await execute_with_retry(op, RetryPolicy(max_attempts=3), sleep=_Sleeps())
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_next_attempt():
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        raise TransportError("network")

    task = asyncio.ensure_future(
        execute_with_retry(op, RetryPolicy(max_attempts=5, base_delay=10.0))
    )
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls["n"] == 1
