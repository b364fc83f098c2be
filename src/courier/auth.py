import asyncio
import contextlib
import json
import logging
import os
from collections import deque
from collections.abc import Awaitable
from typing import Any, Callable, Protocol, Union

from .errors import ClassifiedError, ErrorKind
from .events import AUTH_TOKEN_EXPIRED, EventBus
from .state import AuthStatus
from .types import AuthConfig, RequestConfig

logger = logging.getLogger("courier")

RefreshFn = Callable[[Union[str, None]], Awaitable[str]]
Replay = Callable[[], Awaitable[Any]]


class TokenStorage(Protocol):
    def get(self, key: str) -> Union[str, None]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryTokenStorage:
    def __init__(self, initial: Union[dict[str, str], None] = None):
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Union[str, None]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileTokenStorage:
    """Keeps values in a small JSON object on disk."""

    def __init__(self, path: Union[str, os.PathLike]):
        self.path = os.fspath(path)

    def _load(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def get(self, key: str) -> Union[str, None]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


def _auth_error(message: str, **context) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.AUTHENTICATION,
        message=message,
        http_status=401,
        context=context,
    )


class AuthTokenManager:
    """Token lifecycle and single-flight refresh on 401.

    States: AUTHENTICATED -> REFRESHING -> AUTHENTICATED | UNAUTHENTICATED.

    While REFRESHING, every request that saw a 401 is parked in a FIFO queue.
    When the refresh succeeds the queue is replayed once, in order; when it
    fails every parked request is rejected with an Authentication error and
    ``auth:tokenExpired`` is emitted.
    """

    def __init__(
        self,
        storage: Union[TokenStorage, None] = None,
        refresh: Union[RefreshFn, None] = None,
        events: Union[EventBus, None] = None,
        auth_config: Union[AuthConfig, None] = None,
    ):
        self.storage = storage if storage is not None else MemoryTokenStorage()
        self.refresh_fn = refresh
        self.events = events or EventBus()
        self.auth_config = auth_config or AuthConfig()
        self._token = self.storage.get(self.auth_config.storage_key)
        self._status = AuthStatus.AUTHENTICATED if self._token else AuthStatus.UNAUTHENTICATED
        self._pending: deque[tuple[Replay, asyncio.Future]] = deque()
        self._refresh_task: Union[asyncio.Task, None] = None
        self.refresh_count = 0

    @property
    def token(self) -> Union[str, None]:
        return self._token

    @property
    def status(self) -> AuthStatus:
        return self._status

    @property
    def pending(self) -> int:
        return len(self._pending)

    def set_token(self, token: Union[str, None]) -> None:
        if not token:
            self.clear()
            return
        self._token = token
        self.storage.set(self.auth_config.storage_key, token)
        if self._status is not AuthStatus.REFRESHING:
            self._status = AuthStatus.AUTHENTICATED

    def clear(self) -> None:
        self._token = None
        self.storage.delete(self.auth_config.storage_key)
        if self._status is not AuthStatus.REFRESHING:
            self._status = AuthStatus.UNAUTHENTICATED

    def apply(self, config: RequestConfig) -> RequestConfig:
        """Return config carrying the current token, or config unchanged."""
        if not self._token:
            return config
        return config.with_headers(
            {self.auth_config.header: self.auth_config.header_value(self._token)}
        )

    def sent_token(self, config: RequestConfig) -> Union[str, None]:
        """The token a request carried, read back from its auth header."""
        value = config.headers.get(self.auth_config.header)
        if not value:
            return None
        prefix = f"{self.auth_config.scheme} " if self.auth_config.scheme else ""
        return value[len(prefix):] if prefix and value.startswith(prefix) else value

    async def handle_unauthorized(
        self, replay: Replay, *, sent_token: Union[str, None] = None, **context
    ) -> Any:
        """Park a request that saw a 401 and resolve it with its replay's outcome.

        The first caller flips the state to REFRESHING and starts the refresh;
        later callers only queue. The check-and-set happens before any await.
        A 401 for a request sent with a token that has since been replaced is
        replayed straight away with the current token.
        """
        if self._status is AuthStatus.UNAUTHENTICATED:
            raise _auth_error("not authenticated", **context)
        if (
            self._status is AuthStatus.AUTHENTICATED
            and sent_token is not None
            and sent_token != self._token
        ):
            logger.debug("401 for a superseded token; replaying without refresh")
            return await replay()
        waiter = asyncio.get_running_loop().create_future()
        self._pending.append((replay, waiter))
        if self._status is not AuthStatus.REFRESHING:
            self._status = AuthStatus.REFRESHING
            self._refresh_task = asyncio.ensure_future(self._refresh())
        return await waiter

    async def _refresh(self) -> None:
        self.refresh_count += 1
        logger.info(f"auth refresh started queued={len(self._pending)}")
        try:
            if self.refresh_fn is None:
                raise _auth_error("no refresh function configured")
            new_token = await self.refresh_fn(self._token)
            if not new_token:
                raise _auth_error("refresh returned no token")
        except asyncio.CancelledError:
            self._fail(_auth_error("refresh cancelled"))
            raise
        except Exception as exc:
            error = exc if isinstance(exc, ClassifiedError) else _auth_error(str(exc) or "refresh failed")
            if error.kind is not ErrorKind.AUTHENTICATION:
                error = _auth_error(error.message)
            self._fail(error)
            return
        self._token = new_token
        self.storage.set(self.auth_config.storage_key, new_token)
        self._status = AuthStatus.AUTHENTICATED
        logger.info(f"auth refresh succeeded replaying={len(self._pending)}")
        self._replay_all()

    def _replay_all(self) -> None:
        # Started in submission order; each replay settles its own waiter
        while self._pending:
            replay, waiter = self._pending.popleft()
            if waiter.done():
                continue
            task = asyncio.ensure_future(replay())
            task.add_done_callback(lambda t, w=waiter: _settle(w, t))
            # Cancelling a parked caller cancels its replay too
            waiter.add_done_callback(lambda w, t=task: t.cancel() if w.cancelled() else None)

    def _fail(self, error: ClassifiedError) -> None:
        self._token = None
        self.storage.delete(self.auth_config.storage_key)
        self._status = AuthStatus.UNAUTHENTICATED
        rejected = 0
        while self._pending:
            _, waiter = self._pending.popleft()
            if not waiter.done():
                waiter.set_exception(error.annotate())
                rejected += 1
        logger.info(f"auth refresh failed; session expired rejected={rejected}")
        self.events.emit(AUTH_TOKEN_EXPIRED, {"error": error, "rejected": rejected})

    async def aclose(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task


def _settle(waiter: asyncio.Future, task: asyncio.Task) -> None:
    if waiter.done():
        return
    if task.cancelled():
        waiter.cancel()
    elif task.exception() is not None:
        waiter.set_exception(task.exception())
    else:
        waiter.set_result(task.result())
