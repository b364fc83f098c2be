import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("courier")

AUTH_TOKEN_EXPIRED = "auth:tokenExpired"
AUTH_FORBIDDEN = "auth:forbidden"
NETWORK_OFFLINE = "network:offline"
NETWORK_ONLINE = "network:online"
API_SERVER_ERROR = "api:serverError"
LOADING_START = "loading:start"
LOADING_PROGRESS = "loading:progress"
LOADING_END = "loading:end"
LOADING_TIMEOUT = "loading:timeout"
LOADING_ERROR = "loading:error"
NOTIFICATION_SHOWN = "notification:shown"
NOTIFICATION_DISMISSED = "notification:dismissed"

Handler = Callable[[dict[str, Any]], Any]


class EventBus:
    """Synchronous publish/subscribe.

    Handlers run in subscription order inside ``emit``. A handler that returns
    an awaitable has it scheduled on the running loop. A failing handler is
    logged and does not stop the rest.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._tasks: set[asyncio.Future] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        payload = {"event": event, **(payload or {})}
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception:
                logger.exception(f"event handler failed event={event}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("async event handler failed", exc_info=task.exception())


def call_later(
    delay: float, callback: Callable[..., Any], *args: Any
) -> asyncio.TimerHandle | None:
    """Schedule ``callback`` on the running loop, or return None when no loop is running.

    Timed entries created outside a loop stay until they are dismissed or cleared.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug(f"no running loop, timer not armed delay={delay:g}s")
        return None
    return loop.call_later(delay, callback, *args)
