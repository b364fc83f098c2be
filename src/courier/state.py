import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Union

from .types import RequestConfig


class AuthStatus(str, enum.Enum):
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"


@dataclass
class ActiveRequest:
    id: str
    config: RequestConfig
    transport_handle: Union[asyncio.Task, None] = None
    start_time: float = 0.0
    started: bool = False
    cancelled: bool = False   # set by Dispatcher.cancel, read by the request task


@dataclass
class RetryState:
    attempt: int = 0
    next_delay: Union[float, None] = None
    history: list = field(default_factory=list)


@dataclass
class LoadingState:
    key: str
    refcount: int = 0
    kind: str = "inline"
    text: str = "Loading..."
    started_at: float = 0.0
    timeout_handle: Union[asyncio.TimerHandle, None] = None
    clear_handle: Union[asyncio.TimerHandle, None] = None
    progress: Union[float, None] = None
    status: Union[str, None] = None
    error: Union[str, None] = None
    stuck: bool = False
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def visible(self) -> bool:
        return self.refcount > 0
