"""Central request entry point.

One dispatched request runs as its own task:

    merge defaults -> request interceptors -> [dedupe] -> timeout budget
      -> retry loop -> scheduler slot -> transport -> classify
    -> response interceptors -> return / raise

The task is registered in the context's registry under the request id for as
long as it is unsettled, so ``cancel(id)`` can reach it at any stage.
"""

import asyncio
import dataclasses
import json
import logging
import os
import time
from collections.abc import Awaitable, Iterable, Mapping
from email.message import Message
from typing import TYPE_CHECKING, Any, Callable, Union
from urllib.parse import urlencode

from .errors import ClassifiedError, aborted, classify_exception, classify_response, timed_out
from .events import NETWORK_ONLINE
from .interceptors import (
    InterceptorContext,
    InterceptorPipeline,
    detect_unauthorized,
    flag_forbidden,
    inject_auth_header,
    log_server_errors,
    notify_on_error,
    track_connectivity,
)
from .recovery import ErrorRecoveryManager
from .retry import execute_with_retry
from .scheduler import DEFAULT_PARALLEL_LIMIT, Outcome, parallel
from .state import ActiveRequest, RetryState
from .types import RequestConfig, Response

if TYPE_CHECKING:
    from .context import ApiContext

logger = logging.getLogger("courier")

RequestLike = Union[RequestConfig, Mapping[str, Any]]
ProgressFn = Callable[[float, int, int], Any]

DEFAULT_UPLOAD_TIMEOUT = 120.0
DEFAULT_DOWNLOAD_NAME = "download"


def build_url(url: str, params: Union[Mapping[str, Any], None]) -> str:
    """Append params as a query string; None and "" are dropped, lists repeat."""
    if not params:
        return url
    pairs = []
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            value = [v for v in value if v not in (None, "")]
            if value:
                pairs.append((key, value))
        elif value not in (None, ""):
            pairs.append((key, value))
    if not pairs:
        return url
    query = urlencode(pairs, doseq=True)
    return f"{url}{'&' if '?' in url else '?'}{query}"


def decode_body(body: Any, response_type: str) -> Any:
    if response_type == "bytes":
        if isinstance(body, str):
            return body.encode("utf-8")
        return body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if response_type == "text" or not isinstance(body, str):
        return body
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError:
        # Not JSON after all; hand back the text rather than failing a 2xx
        return body


def attachment_filename(headers: Mapping[str, str], default: str = DEFAULT_DOWNLOAD_NAME) -> str:
    """File name from Content-Disposition, stripped of any directory part."""
    value = next((v for k, v in headers.items() if k.lower() == "content-disposition"), None)
    if not value:
        return default
    message = Message()
    message["Content-Disposition"] = value
    name = os.path.basename(message.get_filename() or "")
    return name if name not in ("", ".", "..") else default


def save_download(response: Response, destination: Any) -> Union[str, None]:
    """Write a bytes response to a directory, file path, writable or callable.

    Returns the path written for path-like destinations, else None.
    """
    data = response.data if response.data is not None else b""
    if callable(getattr(destination, "write", None)):
        destination.write(data)
        return None
    if callable(destination):
        destination(data)
        return None
    path = os.fspath(destination)
    if os.path.isdir(path):
        path = os.path.join(path, attachment_filename(response.headers))
    with open(path, "wb") as f:
        f.write(data)
    logger.debug(f"download saved path={path} bytes={len(data)}")
    return path


class RequestHandle:
    """Awaitable handle for one dispatched request."""

    def __init__(self, request_id: str, task: asyncio.Task, dispatcher: "Dispatcher"):
        self.id = request_id
        self._task = task
        self._dispatcher = dispatcher

    def cancel(self) -> bool:
        return self._dispatcher.cancel(self.id)

    def done(self) -> bool:
        return self._task.done()

    def __await__(self):
        return self._task.__await__()

    def __repr__(self):
        return f"<RequestHandle id={self.id} done={self.done()}>"


class _SharedCall:
    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


class Dispatcher:
    def __init__(self, context: "ApiContext", *, install_defaults: bool = True):
        self.context = context
        self.interceptors = InterceptorPipeline()
        self._shared: dict[str, _SharedCall] = {}
        self.recovery = ErrorRecoveryManager(self.request, limit=context.config.concurrency_limit)
        if install_defaults:
            self.interceptors.add_request(inject_auth_header(context.auth))
            # 401 handling first so a successful replay is what the rest see
            self.interceptors.add_response(detect_unauthorized(context.auth))
            self.interceptors.add_response(flag_forbidden(context.events))
            self.interceptors.add_response(log_server_errors(context.events))
            self.interceptors.add_response(track_connectivity(context, self.recovery))
            self.interceptors.add_response(notify_on_error(context.notifications))
            context.events.on(NETWORK_ONLINE, self._resend_failed)

    @property
    def active(self) -> list[str]:
        return list(self.context.registry)

    # ---------- public API ----------

    def dispatch(self, config: RequestLike) -> RequestHandle:
        config = RequestConfig.coerce(config)
        request_id = self.context.next_request_id()
        entry = ActiveRequest(id=request_id, config=config, start_time=time.monotonic())
        self.context.registry[request_id] = entry
        task = asyncio.ensure_future(self._run(entry))
        entry.transport_handle = task
        # Also drops the entry if the task is cancelled before it ever runs
        task.add_done_callback(lambda _t, rid=request_id: self.context.registry.pop(rid, None))
        return RequestHandle(request_id, task, self)

    async def request(self, config: RequestLike) -> Any:
        return await self.dispatch(config)

    async def get(self, url: str, params: Union[Mapping[str, Any], None] = None, **options):
        return await self.request(RequestConfig(url=url, method="GET", params=params or {}, **options))

    async def post(self, url: str, body: Any = None, **options):
        return await self.request(RequestConfig(url=url, method="POST", body=body, **options))

    async def put(self, url: str, body: Any = None, **options):
        return await self.request(RequestConfig(url=url, method="PUT", body=body, **options))

    async def patch(self, url: str, body: Any = None, **options):
        return await self.request(RequestConfig(url=url, method="PATCH", body=body, **options))

    async def delete(self, url: str, **options):
        return await self.request(RequestConfig(url=url, method="DELETE", **options))

    async def upload(
        self,
        url: str,
        body: Any,
        *,
        on_progress: Union[ProgressFn, None] = None,
        loading_key: Union[str, None] = None,
        timeout: Union[float, None] = DEFAULT_UPLOAD_TIMEOUT,
        **options,
    ) -> Response:
        """POST ``body`` with a long timeout, reporting how much has been sent.

        Progress goes to ``on_progress(percent, sent, total)`` and, with a
        ``loading_key``, to that loading indicator as ``loading:progress``.
        Transports report progress as they stream the encoded body.
        """
        loading = self.context.loading
        if loading_key is not None:
            loading.show(loading_key, kind="progress", text="Uploading...")

        def report(percent: float, sent: int, total: int) -> None:
            if loading_key is not None:
                loading.update_progress(loading_key, percent)
            if on_progress is not None:
                on_progress(percent, sent, total)

        config = RequestConfig(
            url=url, method="POST", body=body, timeout=timeout, on_progress=report, **options
        )
        try:
            return await self.request(config)
        except ClassifiedError as exc:
            if loading_key is not None:
                loading.error(loading_key, exc.user_message)
            raise
        finally:
            if loading_key is not None:
                loading.hide(loading_key)

    async def download(self, url: str, destination: Any = None, **options) -> Response:
        """GET ``url`` as raw bytes, delivering them to ``destination`` if given.

        ``destination`` may be a directory (named from Content-Disposition,
        else ``download``), a file path, a binary writable or a callable.
        """
        options.setdefault("response_type", "bytes")
        response = await self.request(RequestConfig(url=url, method="GET", **options))
        if destination is not None:
            save_download(response, destination)
        return response

    def cancel(self, request_id: str) -> bool:
        """Abort a tracked request; its caller sees an Aborted error."""
        entry = self.context.registry.get(request_id)
        if entry is None or entry.cancelled:
            return False
        entry.cancelled = True
        # Before its first step the task checks the flag itself
        if entry.started and entry.transport_handle is not None:
            entry.transport_handle.cancel()
        logger.debug(f"request cancelled id={request_id}")
        return True

    def cancel_all(self) -> int:
        count = sum(1 for request_id in list(self.context.registry) if self.cancel(request_id))
        if count:
            logger.info(f"cancelled {count} request(s)")
        return count

    async def parallel(
        self,
        items: Iterable[Any],
        limit: int = DEFAULT_PARALLEL_LIMIT,
        *,
        fail_fast: bool = False,
    ) -> list[Outcome]:
        """Run request configs and/or zero-arg async callables with bounded concurrency."""
        operations = []
        for item in items:
            if isinstance(item, (RequestConfig, Mapping)):
                operations.append(lambda cfg=item: self.request(cfg))
            else:
                operations.append(item)
        return await parallel(operations, limit, fail_fast=fail_fast)

    # ---------- internals ----------

    def _resend_failed(self, payload: Mapping[str, Any]) -> Union[Awaitable[list[Outcome]], None]:
        if not self.recovery.failed:
            return None
        return self.recovery.retry_all_failed_requests()

    async def _run(self, entry: ActiveRequest) -> Any:
        entry.started = True
        request_id = entry.id
        config = entry.config
        try:
            if entry.cancelled:
                raise aborted(request_id, config)
            config = config.merged_over(self.context.config)
            # One budget from dispatch to the end of the response chain
            deadline = None if config.timeout is None else entry.start_time + config.timeout
            config = await self.interceptors.run_request(config)
            config = config.replace(url=build_url(config.url, config.params), params={})
            entry.config = config
            logger.debug(f"request start id={request_id} method={config.method} url={config.url}")
            result: Union[Response, ClassifiedError]
            try:
                result = await self._perform_shared(request_id, config, deadline)
            except ClassifiedError as exc:
                result = exc
            context = InterceptorContext(
                request_id=request_id,
                config=config,
                replay=lambda: self._perform_shared(
                    request_id, self.context.auth.apply(config), deadline
                ),
            )
            result = await self._within_budget(
                self.interceptors.run_response(result, context), request_id, config, deadline
            )
        except asyncio.CancelledError:
            if entry.cancelled:
                raise aborted(request_id, config) from None
            raise
        finally:
            self.context.registry.pop(request_id, None)
            logger.debug(
                f"request end id={request_id} elapsed={time.monotonic() - entry.start_time:.3f}s"
            )
        if isinstance(result, BaseException):
            raise result
        return result

    async def _within_budget(
        self,
        chain: Awaitable[Any],
        request_id: str,
        config: RequestConfig,
        deadline: Union[float, None],
    ) -> Any:
        """Run the response chain, giving up with Timeout when the budget runs out.

        This bounds waits inside the chain, such as a request parked behind a
        token refresh that never finishes.
        """
        if deadline is None:
            return await chain
        task = asyncio.ensure_future(chain)
        try:
            done, _ = await asyncio.wait({task}, timeout=max(0.0, deadline - time.monotonic()))
        except asyncio.CancelledError:
            task.cancel()
            task.add_done_callback(_retrieve)
            raise
        if task in done:
            return task.result()
        task.cancel()
        task.add_done_callback(_retrieve)
        logger.warning(
            f"request timed out in response handling id={request_id} timeout={config.timeout:g}s"
        )
        raise timed_out(config.timeout, config, request_id=request_id)

    async def _perform_shared(
        self, request_id: str, config: RequestConfig, deadline: Union[float, None] = None
    ) -> Response:
        key = config.dedupe_key
        if key is None:
            return await self._perform(request_id, config, deadline)
        shared = self._shared.get(key)
        if shared is None:
            shared = _SharedCall(asyncio.ensure_future(self._perform(request_id, config, deadline)))
            self._shared[key] = shared
            shared.task.add_done_callback(lambda t, k=key, s=shared: self._forget_shared(k, s, t))
        else:
            logger.debug(f"request deduplicated id={request_id} key={key}")
        shared.waiters += 1
        try:
            response = await asyncio.shield(shared.task)
        except asyncio.CancelledError:
            if not shared.task.done() and shared.waiters == 1:
                # Last interested caller gone; nobody else wants this call
                self._shared.pop(key, None)
                shared.task.cancel()
            raise
        finally:
            shared.waiters -= 1
        # Each caller gets its own Response carrying its own id
        return dataclasses.replace(response, request_id=request_id)

    def _forget_shared(self, key: str, shared: _SharedCall, task: asyncio.Task) -> None:
        if self._shared.get(key) is shared:
            del self._shared[key]
        _retrieve(task)

    async def _perform(
        self, request_id: str, config: RequestConfig, deadline: Union[float, None] = None
    ) -> Response:
        """Retry loop under the request's remaining budget: admission, transport and backoff."""
        state = RetryState()
        attempt = execute_with_retry(
            lambda: self._send_once(request_id, config),
            config.retry_policy,
            state=state,
        )
        if config.timeout is None:
            return await attempt
        budget = config.timeout if deadline is None else deadline - time.monotonic()
        try:
            return await asyncio.wait_for(attempt, max(0.0, budget))
        except (asyncio.TimeoutError, TimeoutError):
            logger.warning(
                f"request timed out id={request_id} timeout={config.timeout:g}s "
                f"attempts={state.attempt}"
            )
            raise timed_out(
                config.timeout, config, request_id=request_id
            ).annotate(attempts=max(state.attempt, 1)) from None

    async def _send_once(self, request_id: str, config: RequestConfig) -> Response:
        scheduler = self.context.scheduler_for(config.concurrency_group)
        async with scheduler.slot():
            try:
                raw = await self.context.transport(config)
            except Exception as exc:
                error = classify_exception(exc, config, request_id=request_id)
                if error is None:
                    raise
                raise error from exc
        response = Response.coerce(raw)
        response.request_id = request_id
        response.data = decode_body(response.body, config.response_type or "json")
        error = classify_response(response, config, request_id=request_id)
        if error is not None:
            raise error
        return response


def _retrieve(task: asyncio.Task) -> None:
    # Mark a failure of an abandoned task as seen
    if not task.cancelled():
        task.exception()
