"""Error taxonomy and classification of transport outcomes.

Every failure that reaches a caller is a :class:`ClassifiedError`. The mapping
from transport outcomes to kinds is deterministic:

    transport failure / connection refused -> NETWORK
    explicit cancellation                  -> ABORTED
    timeout elapsed                        -> TIMEOUT
    401 -> AUTHENTICATION      403 -> AUTHORIZATION
    400, 422 -> VALIDATION     429 -> RATE_LIMITED
    5xx -> SERVER_ERROR        other 4xx -> CLIENT_ERROR
    2xx with ``Success: false`` in the body -> BUSINESS_LOGIC
"""

import asyncio
import email.utils as eut
import enum
import json
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Union

from .types import RequestConfig, Response


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    BUSINESS_LOGIC = "business_logic"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER_ERROR, ErrorKind.RATE_LIMITED}
)

DEFAULT_USER_MESSAGES = {
    ErrorKind.NETWORK: "Unable to connect to the server. Please check your internet connection.",
    ErrorKind.AUTHENTICATION: "Your session has expired. Please log in again.",
    ErrorKind.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorKind.VALIDATION: "Please check your input and try again.",
    ErrorKind.SERVER_ERROR: "Server is temporarily unavailable. Please try again later.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait a moment and try again.",
    ErrorKind.BUSINESS_LOGIC: "Operation could not be completed due to business rules.",
    ErrorKind.CLIENT_ERROR: "Request could not be processed.",
    ErrorKind.ABORTED: "Request was cancelled.",
}

# Transport tags accepted on TransportError
_TAG_KINDS = {
    "network": ErrorKind.NETWORK,
    "timeout": ErrorKind.TIMEOUT,
    "abort": ErrorKind.ABORTED,
}

_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHORIZATION,
    400: ErrorKind.VALIDATION,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


class TransportError(Exception):
    """Raised by transports for failures that never produced an HTTP response."""

    def __init__(self, tag: str, message: str = ""):
        if tag not in _TAG_KINDS:
            raise ValueError(f"unknown transport error tag {tag!r}")
        super().__init__(message or tag)
        self.tag = tag
        self.message = message or tag


@dataclass(eq=False)
class ClassifiedError(Exception):
    """A failure mapped onto the canonical taxonomy.

    Produced once per failure and treated as immutable afterwards; use
    :meth:`annotate` to derive a copy with extra information.
    """

    kind: ErrorKind
    message: str
    user_message: str = ""
    http_status: Union[int, None] = None
    retryable: bool = False
    context: Mapping[str, Any] = field(default_factory=dict)
    field_errors: Mapping[str, str] = field(default_factory=dict)
    retry_after: Union[float, None] = None
    code: Union[str, None] = None
    payload: Any = None
    attempts: int = 1

    def __post_init__(self):
        super().__init__(self.message)
        if not self.user_message:
            self.user_message = DEFAULT_USER_MESSAGES[self.kind]

    def __str__(self) -> str:
        parts = [f"{self.kind.value}: {self.message}"]
        if self.http_status is not None:
            parts.append(f"status={self.http_status}")
        if self.attempts > 1:
            parts.append(f"attempts={self.attempts}")
        return " | ".join(parts)

    def annotate(self, **changes) -> "ClassifiedError":
        return replace(self, **changes)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def kind_for_status(status: int) -> Union[ErrorKind, None]:
    if 200 <= status < 400:  # noqa: PLR2004, http status range
        return None
    if status in _STATUS_KINDS:
        return _STATUS_KINDS[status]
    if 400 <= status < 500:  # noqa: PLR2004, http status range
        return ErrorKind.CLIENT_ERROR
    # 5xx, plus informational or out-of-range codes delivered as a final answer
    return ErrorKind.SERVER_ERROR


def is_retryable_status(status: int) -> bool:
    kind = kind_for_status(status)
    return kind is not None and is_retryable(kind)


def parse_retry_after(headers: Mapping[str, str], now: Union[float, None] = None) -> Union[float, None]:
    """Return the Retry-After delay in seconds, or None if the header is absent."""
    ra = None
    for k, v in headers.items():
        if k.lower() == "retry-after":
            ra = v
            break
    if ra is None:
        return None
    try:
        return max(0.0, float(ra))
    except ValueError:
        pass
    # HTTP-date per RFC 7231
    try:
        ts = eut.parsedate_to_datetime(ra)
    except (TypeError, ValueError):
        return None
    if ts is None:
        return None
    now = time.time() if now is None else now
    # Round up so short delays are not truncated to zero
    return max(0.0, float(math.ceil(ts.timestamp() - now)))


def _decode_body(body: Any) -> Any:
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(body, str):
        try:
            return json.loads(body)
        except ValueError:
            return None
    return body


def _first(payload: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


def extract_field_errors(payload: Any) -> dict[str, str]:
    """Collect a field -> message map from a validation error body.

    Accepts ``{"Errors": [{"Field": ..., "Message": ...}]}`` lists and
    ``{"errors": {"field": "message" | ["message", ...]}}`` mappings.
    """
    if not isinstance(payload, Mapping):
        return {}
    raw = _first(payload, "Errors", "errors")
    fields: dict[str, str] = {}
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            name = _first(item, "Field", "field")
            message = _first(item, "Message", "message")
            if name:
                fields[str(name)] = str(message or "")
    elif isinstance(raw, Mapping):
        for name, message in raw.items():
            if isinstance(message, (list, tuple)):
                message = message[0] if message else ""
            fields[str(name)] = str(message)
    return fields


def _request_context(request: Union[RequestConfig, None], extra: Mapping[str, Any]) -> dict:
    ctx: dict[str, Any] = {}
    if request is not None:
        ctx["url"] = request.url
        ctx["method"] = request.method
    ctx.update(extra)
    return ctx


def classify_response(
    response: Response, request: Union[RequestConfig, None] = None, **extra
) -> Union[ClassifiedError, None]:
    """Return a ClassifiedError for a failed response, or None for a success."""
    payload = _decode_body(response.body) if response.data is None else response.data
    server = payload if isinstance(payload, Mapping) else {}
    server_message = _first(server, "Message", "message")
    code = _first(server, "Code", "code")
    kind = kind_for_status(response.status_code)
    if kind is None:
        if server.get("Success") is False or server.get("success") is False:
            kind = ErrorKind.BUSINESS_LOGIC
        else:
            return None
    field_errors = extract_field_errors(server) if kind is ErrorKind.VALIDATION else {}
    retry_after = (
        parse_retry_after(response.headers) if kind is ErrorKind.RATE_LIMITED else None
    )
    return ClassifiedError(
        kind=kind,
        message=str(server_message or f"HTTP {response.status_code}"),
        user_message=str(server_message) if server_message else "",
        http_status=response.status_code,
        retryable=is_retryable(kind),
        context=_request_context(request, extra),
        field_errors=field_errors,
        retry_after=retry_after,
        code=str(code) if code is not None else None,
        payload=_first(server, "Data", "data"),
    )


def classify_exception(
    exc: BaseException, request: Union[RequestConfig, None] = None, **extra
) -> Union[ClassifiedError, None]:
    """Classify a raised exception; None means it is not a transport outcome."""
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, TransportError):
        kind, message = _TAG_KINDS[exc.tag], exc.message
    elif isinstance(exc, asyncio.CancelledError):
        kind, message = ErrorKind.ABORTED, "request aborted"
    # asyncio.TimeoutError is only an alias of TimeoutError from 3.11 on
    elif isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        kind, message = ErrorKind.TIMEOUT, str(exc) or "request timed out"
    elif isinstance(exc, OSError):
        kind, message = ErrorKind.NETWORK, str(exc) or "connection failed"
    else:
        return None
    return ClassifiedError(
        kind=kind,
        message=message,
        retryable=is_retryable(kind),
        context=_request_context(request, extra),
    )


def classify(outcome: Any, request: Union[RequestConfig, None] = None, **extra):
    """Classify a Response or an exception into a ClassifiedError (or None)."""
    if isinstance(outcome, Response):
        return classify_response(outcome, request, **extra)
    if isinstance(outcome, BaseException):
        return classify_exception(outcome, request, **extra)
    raise TypeError(f"cannot classify {type(outcome).__name__}")


def aborted(request_id: Union[str, None] = None, request: Union[RequestConfig, None] = None):
    extra = {"request_id": request_id} if request_id else {}
    return ClassifiedError(
        kind=ErrorKind.ABORTED,
        message="request aborted",
        context=_request_context(request, extra),
    )


def timed_out(timeout: float, request: Union[RequestConfig, None] = None, **extra):
    return ClassifiedError(
        kind=ErrorKind.TIMEOUT,
        message=f"request exceeded its {timeout:g}s budget",
        retryable=True,
        context=_request_context(request, extra),
    )
