import asyncio
import contextlib
import inspect
import json
from collections.abc import Awaitable
from typing import Any, Callable, Union

from .errors import TransportError
from .types import RequestConfig, Response

Send = Callable[[RequestConfig], Awaitable[Any]]
ProgressFn = Callable[[float, int, int], Any]

UPLOAD_CHUNK_SIZE = 64 * 1024


def encode_body(config: RequestConfig) -> Union[bytes, None]:
    body = config.body
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(body).encode("utf-8")


def iter_upload(data: bytes, on_progress: ProgressFn, chunk_size: int = UPLOAD_CHUNK_SIZE):
    """Yield ``data`` in chunks, calling ``on_progress(percent, sent, total)`` after each."""
    total = len(data)
    if not total:
        on_progress(100.0, 0, 0)
        return
    for start in range(0, total, chunk_size):
        chunk = data[start : start + chunk_size]
        yield chunk
        sent = start + len(chunk)
        on_progress(sent * 100.0 / total, sent, total)


async def aiter_upload(data: bytes, on_progress: ProgressFn, chunk_size: int = UPLOAD_CHUNK_SIZE):
    for chunk in iter_upload(data, on_progress, chunk_size):
        yield chunk


def request_content(config: RequestConfig, *, asynchronous: bool = True) -> Any:
    """Encoded body, streamed in chunks when the request wants upload progress."""
    data = encode_body(config)
    if data is None or config.on_progress is None:
        return data
    if asynchronous:
        return aiter_upload(data, config.on_progress)
    return iter_upload(data, config.on_progress)


class _OwnedClient:
    """Shared async-context plumbing: close the client only if we created it."""

    _own = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        raise NotImplementedError

    async def __call__(self, config: RequestConfig) -> Response:
        return await self.send(config)

    async def send(self, config: RequestConfig) -> Response:
        raise NotImplementedError


# ---------- httpx (async) ----------
class HttpxTransport(_OwnedClient):
    def __init__(self, client=None):
        self.client = client

    def _client(self):
        if self.client is None:
            import httpx  # noqa: PLC0415

            self.client = httpx.AsyncClient()
            self._own = True
        return self.client

    async def send(self, config: RequestConfig) -> Response:
        import httpx  # noqa: PLC0415

        client = self._client()
        try:
            resp = await client.request(
                config.method,
                config.url,
                headers=dict(config.headers),
                content=request_content(config),
            )
        # TimeoutException is a TransportError subclass; check it first
        except httpx.TimeoutException as e:
            raise TransportError("timeout", str(e) or "httpx timeout") from e
        except httpx.TransportError as e:
            raise TransportError("network", str(e) or "httpx transport error") from e
        return Response(status_code=resp.status_code, headers=dict(resp.headers), body=resp.content)

    async def aclose(self) -> None:
        if self._own and self.client is not None:
            with contextlib.suppress(Exception):
                await self.client.aclose()
            self.client = None
            self._own = False


# ---------- aiohttp (async) ----------
class AiohttpTransport(_OwnedClient):
    def __init__(self, session=None):
        self.session = session

    def _session(self):
        if self.session is None:
            import aiohttp  # noqa: PLC0415

            self.session = aiohttp.ClientSession()
            self._own = True
        return self.session

    async def send(self, config: RequestConfig) -> Response:
        import aiohttp  # noqa: PLC0415

        session = self._session()
        try:
            async with session.request(
                config.method,
                config.url,
                headers=dict(config.headers),
                data=request_content(config),
            ) as resp:
                body = await resp.read()
                return Response(status_code=resp.status, headers=dict(resp.headers), body=body)
        except asyncio.TimeoutError as e:
            raise TransportError("timeout", str(e) or "aiohttp timeout") from e
        except aiohttp.ClientError as e:
            raise TransportError("network", str(e) or "aiohttp client error") from e

    async def aclose(self) -> None:
        if self._own and self.session is not None:
            await self.session.close()
            self.session = None
            self._own = False


# ---------- requests (sync, run in a worker thread) ----------
class RequestsTransport(_OwnedClient):
    """Blocking requests.Session driven through asyncio.to_thread.

    Cancelling the awaiting task releases the caller, but the worker thread
    still runs the HTTP call to completion.
    """

    def __init__(self, session=None):
        self.session = session

    def _session(self):
        if self.session is None:
            import requests  # noqa: PLC0415

            self.session = requests.Session()
            self._own = True
        return self.session

    def _send_sync(self, config: RequestConfig) -> Response:
        import requests  # noqa: PLC0415

        session = self._session()
        try:
            resp = session.request(
                config.method,
                config.url,
                headers=dict(config.headers),
                data=request_content(config, asynchronous=False),
                timeout=config.timeout,
            )
        except requests.Timeout as e:
            raise TransportError("timeout", str(e) or "requests timeout") from e
        except requests.RequestException as e:
            raise TransportError("network", str(e) or "requests error") from e
        return Response(status_code=resp.status_code, headers=dict(resp.headers), body=resp.content)

    async def send(self, config: RequestConfig) -> Response:
        if config.on_progress is not None:
            # Progress is reported from the worker thread; hand it back to the loop
            loop = asyncio.get_running_loop()
            report = config.on_progress
            config = config.replace(
                on_progress=lambda *args: loop.call_soon_threadsafe(report, *args)
            )
        return await asyncio.to_thread(self._send_sync, config)

    async def aclose(self) -> None:
        if self._own and self.session is not None:
            with contextlib.suppress(Exception):
                self.session.close()
            self.session = None
            self._own = False


def coerce_transport(transport: Any) -> Send:
    """Accept an object with ``send(config)`` or a callable; return an async send."""
    send = getattr(transport, "send", None)
    if send is None and callable(transport):
        send = transport
    if send is None or not callable(send):
        raise TypeError("transport must be callable or expose send(config)")

    async def _send(config: RequestConfig) -> Any:
        result = send(config)
        if inspect.isawaitable(result):
            result = await result
        return result

    return _send
