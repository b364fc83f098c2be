import itertools
import logging
import uuid
from typing import Any, Callable, Union

from .auth import AuthTokenManager, RefreshFn, TokenStorage
from .errors import DEFAULT_USER_MESSAGES, ErrorKind
from .events import AUTH_TOKEN_EXPIRED, EventBus
from .loading import LoadingStateManager
from .notifications import NotificationQueue
from .scheduler import ConcurrencyScheduler
from .state import ActiveRequest
from .transports import coerce_transport
from .types import ClientConfig

logger = logging.getLogger("courier")


class ApiContext:
    """Everything one session shares: transport, auth, registry, schedulers, UI state.

    Build one per application (or per test) and hand it to a Dispatcher.
    """

    def __init__(
        self,
        transport: Any,
        config: Union[ClientConfig, None] = None,
        *,
        storage: Union[TokenStorage, None] = None,
        refresh: Union[RefreshFn, None] = None,
        on_session_expired: Union[Callable[[dict], Any], None] = None,
        events: Union[EventBus, None] = None,
        log_level: Union[int, str, None] = None,
    ):
        if log_level is not None:
            logger.setLevel(log_level)
        self.config = config or ClientConfig()
        self.transport_impl = transport
        self.transport = coerce_transport(transport)
        self.events = events or EventBus()
        self.auth = AuthTokenManager(
            storage=storage, refresh=refresh, events=self.events, auth_config=self.config.auth
        )
        self.loading = LoadingStateManager(self.events)
        self.notifications = NotificationQueue(self.events, max_size=self.config.max_notifications)
        self.registry: dict[str, ActiveRequest] = {}
        self.online = True
        self.on_session_expired = on_session_expired
        self._schedulers: dict[str, ConcurrencyScheduler] = {}
        self._ids = itertools.count(1)
        self.events.on(AUTH_TOKEN_EXPIRED, self._session_expired)

    def scheduler_for(self, group: str) -> ConcurrencyScheduler:
        scheduler = self._schedulers.get(group)
        if scheduler is None:
            limit = self.config.group_limits.get(group, self.config.concurrency_limit)
            scheduler = self._schedulers[group] = ConcurrencyScheduler(limit, name=group)
        return scheduler

    def next_request_id(self) -> str:
        return f"req_{next(self._ids)}_{uuid.uuid4().hex[:8]}"

    def _session_expired(self, payload: dict) -> Any:
        if self.on_session_expired is not None:
            return self.on_session_expired(payload)
        # No way back to a login screen: keep the message up until dismissed
        logger.error("session expired and no handler is registered")
        error = payload.get("error")
        message = getattr(error, "user_message", None) or DEFAULT_USER_MESSAGES[ErrorKind.AUTHENTICATION]
        self.notifications.error(message, duration=0)
        return None

    async def aclose(self) -> None:
        await self.auth.aclose()
        self.loading.hide_all()
        self.notifications.dismiss_all()
        aclose = getattr(self.transport_impl, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False
