import inspect
from collections.abc import Iterable
from typing import Callable, Union

from .errors import ClassifiedError, ErrorKind, is_retryable

# Defaults used when inspect.signature cannot determine argument counts
DEFAULT_PREDICATE_ARGC = 2  # predicate(error, attempt)

# Predicates receive the attempt number at 2+ args
PREDICATE_WITH_ATTEMPT_ARGC = 2

RetryPredicate = Callable[[ClassifiedError, int], bool]


def _count_positional_args(fn, default: int) -> int:
    """Return count of positional params for fn; fall back to default on failure."""
    try:
        sig = inspect.signature(fn)
        return len(
            [
                p
                for p in sig.parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        )
    except (TypeError, ValueError):
        return default


def default_retry_predicate(error: ClassifiedError, attempt: int) -> bool:
    """Retry Network, Timeout, ServerError and RateLimited; nothing else.

    Authentication is left to the token manager, so it is never retried here.
    """
    return is_retryable(error.kind)


def never_retry(error: ClassifiedError, attempt: int) -> bool:
    return False


def always_retry(error: ClassifiedError, attempt: int) -> bool:
    # Aborts are the caller's decision and must stop the loop
    return error.kind is not ErrorKind.ABORTED


def retry_kinds(kinds: Iterable[ErrorKind]) -> RetryPredicate:
    allowed = frozenset(ErrorKind(k) for k in kinds)

    def _predicate(error: ClassifiedError, attempt: int) -> bool:
        return error.kind in allowed

    return _predicate


def coerce_retry_predicate(predicate: Union[object, None]) -> RetryPredicate:
    """Turn None | str | iterable of kinds | callable into a (error, attempt) predicate.

    Accepted inputs:
      - None / "default" -> default_retry_predicate
      - "never"          -> never_retry
      - "always"         -> always_retry (still stops on Aborted)
      - iterable of ErrorKind (or their string values) -> retry exactly those kinds
      - callable: predicate(error) or predicate(error, attempt)
    """
    if predicate is None:
        return default_retry_predicate
    if isinstance(predicate, str):
        name = predicate.lower()
        if name == "default":
            return default_retry_predicate
        if name == "never":
            return never_retry
        if name == "always":
            return always_retry
        raise ValueError(
            "Unknown retry predicate string. Use 'default', 'never' or 'always', "
            "or pass a callable / iterable of ErrorKind."
        )
    if callable(predicate):
        argc = _count_positional_args(predicate, DEFAULT_PREDICATE_ARGC)
        if argc >= PREDICATE_WITH_ATTEMPT_ARGC:
            return predicate

        def _one_arg(error: ClassifiedError, attempt: int) -> bool:
            return bool(predicate(error))

        return _one_arg
    if isinstance(predicate, Iterable):
        return retry_kinds(predicate)
    raise TypeError(
        "retry_predicate must be None, 'default'|'never'|'always', an iterable of "
        "ErrorKind, or a callable"
    )
