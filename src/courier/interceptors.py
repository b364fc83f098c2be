"""Request/response interceptor chains and the built-in interceptors.

Request interceptors take a RequestConfig and return a RequestConfig.
Response interceptors take ``(result, context)`` where ``result`` is either a
Response or a ClassifiedError and return the (possibly replaced) result.

Both may be plain functions or coroutine functions. Chains run strictly in
registration order; an exception from any interceptor ends the chain and
reaches the caller.
"""

import inspect
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Union

from .errors import ClassifiedError, ErrorKind
from .events import (
    API_SERVER_ERROR,
    AUTH_FORBIDDEN,
    NETWORK_OFFLINE,
    NETWORK_ONLINE,
    EventBus,
)
from .types import RequestConfig, Response

if TYPE_CHECKING:
    from .auth import AuthTokenManager
    from .context import ApiContext
    from .notifications import NotificationQueue
    from .recovery import ErrorRecoveryManager

logger = logging.getLogger("courier")

Result = Union[Response, ClassifiedError]
RequestInterceptor = Callable[[RequestConfig], Union[RequestConfig, Awaitable[RequestConfig]]]
ResponseInterceptor = Callable[[Result, "InterceptorContext"], Union[Result, Awaitable[Result]]]


@dataclass
class InterceptorContext:
    request_id: str
    config: RequestConfig
    # Re-sends the request once with fresh credentials; never goes through
    # the response chain again
    replay: Union[Callable[[], Awaitable[Response]], None] = None
    extra: dict[str, Any] = field(default_factory=dict)


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


class InterceptorPipeline:
    def __init__(self):
        self.request: list[RequestInterceptor] = []
        self.response: list[ResponseInterceptor] = []

    def add_request(self, interceptor: RequestInterceptor) -> Callable[[], None]:
        self.request.append(interceptor)
        return lambda: self.request.remove(interceptor)

    def add_response(self, interceptor: ResponseInterceptor) -> Callable[[], None]:
        self.response.append(interceptor)
        return lambda: self.response.remove(interceptor)

    async def run_request(self, config: RequestConfig) -> RequestConfig:
        for interceptor in list(self.request):
            config = await _resolve(interceptor(config))
            if not isinstance(config, RequestConfig):
                raise TypeError(
                    f"request interceptor {getattr(interceptor, '__name__', interceptor)!r} "
                    "must return a RequestConfig"
                )
        return config

    async def run_response(self, result: Result, context: InterceptorContext) -> Result:
        for interceptor in list(self.response):
            result = await _resolve(interceptor(result, context))
        return result


# ---------- built-ins ----------


def inject_auth_header(auth: "AuthTokenManager") -> RequestInterceptor:
    def _inject_auth_header(config: RequestConfig) -> RequestConfig:
        return auth.apply(config)

    return _inject_auth_header


def detect_unauthorized(auth: "AuthTokenManager") -> ResponseInterceptor:
    """Hand Authentication failures to the token manager for refresh + replay."""

    async def _detect_unauthorized(result: Result, context: InterceptorContext) -> Result:
        if not (
            isinstance(result, ClassifiedError)
            and result.kind is ErrorKind.AUTHENTICATION
            and context.replay is not None
        ):
            return result
        try:
            return await auth.handle_unauthorized(
                context.replay,
                sent_token=auth.sent_token(context.config),
                request_id=context.request_id,
            )
        except ClassifiedError as exc:
            return exc

    return _detect_unauthorized


def log_server_errors(events: EventBus) -> ResponseInterceptor:
    def _log_server_errors(result: Result, context: InterceptorContext) -> Result:
        if isinstance(result, ClassifiedError) and result.kind is ErrorKind.SERVER_ERROR:
            logger.error(
                f"server error status={result.http_status} method={context.config.method} "
                f"url={context.config.url} id={context.request_id}: {result.message}"
            )
            events.emit(
                API_SERVER_ERROR,
                {
                    "request_id": context.request_id,
                    "status": result.http_status,
                    "error": result,
                },
            )
        return result

    return _log_server_errors


def flag_forbidden(events: EventBus) -> ResponseInterceptor:
    def _flag_forbidden(result: Result, context: InterceptorContext) -> Result:
        if isinstance(result, ClassifiedError) and result.kind is ErrorKind.AUTHORIZATION:
            events.emit(AUTH_FORBIDDEN, {"request_id": context.request_id, "error": result})
        return result

    return _flag_forbidden


def track_connectivity(
    api: "ApiContext", recovery: Union["ErrorRecoveryManager", None] = None
) -> ResponseInterceptor:
    """Emit network:offline on the first Network failure, network:online on recovery.

    With a recovery manager, idempotent requests that fail with a Network
    error are stored so they can be re-sent once the network is back.
    """

    def _track_connectivity(result: Result, context: InterceptorContext) -> Result:
        if isinstance(result, ClassifiedError):
            if (
                result.kind is ErrorKind.NETWORK
                and recovery is not None
                and recovery.should_store(context.config)
            ):
                recovery.store_failed_request(context.config, result)
            if result.kind is ErrorKind.NETWORK and api.online:
                api.online = False
                logger.info("network offline")
                api.events.emit(NETWORK_OFFLINE, {"request_id": context.request_id, "error": result})
        elif not api.online:
            api.online = True
            logger.info("network online")
            api.events.emit(NETWORK_ONLINE, {"request_id": context.request_id})
        return result

    return _track_connectivity


def notify_on_error(queue: "NotificationQueue") -> ResponseInterceptor:
    def _notify_on_error(result: Result, context: InterceptorContext) -> Result:
        if isinstance(result, ClassifiedError):
            queue.notify_error(result)
        return result

    return _notify_on_error
