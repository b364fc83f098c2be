import asyncio
import inspect
import itertools
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from .errors import ClassifiedError, ErrorKind
from .events import NOTIFICATION_DISMISSED, NOTIFICATION_SHOWN, EventBus, call_later

logger = logging.getLogger("courier")

# Seconds; 0 means the entry stays until dismissed
DEFAULT_DURATIONS = {
    "error": 5.0,
    "warning": 4.0,
    "info": 3.0,
    "success": 3.0,
}

DEFAULT_MAX_NOTIFICATIONS = 5


@dataclass
class NotificationAction:
    label: str
    handler: Callable[[], Any]
    dismiss_on_click: bool = True


@dataclass
class Notification:
    id: int
    kind: str
    message: str
    actions: tuple[NotificationAction, ...] = ()
    duration: float = 0.0
    count: int = 1
    created_at: float = 0.0
    timer: Union[asyncio.TimerHandle, None] = field(default=None, repr=False, compare=False)

    @property
    def persistent(self) -> bool:
        return not self.duration


class NotificationQueue:
    """Bounded queue of user-facing messages.

    Each entry has its own dismiss timer. A push identical to the newest entry
    (same kind and message) bumps its count and restarts its timer instead of
    adding a duplicate. When full, the oldest entry is evicted and reported as
    dismissed with ``reason="evicted"``; nothing is dropped silently.
    """

    def __init__(self, events: Union[EventBus, None] = None, max_size: int = DEFAULT_MAX_NOTIFICATIONS):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.events = events or EventBus()
        self.max_size = max_size
        self._entries: list[Notification] = []
        self._ids = itertools.count(1)

    @property
    def active(self) -> list[Notification]:
        return list(self._entries)

    def get(self, notification_id: int) -> Union[Notification, None]:
        for entry in self._entries:
            if entry.id == notification_id:
                return entry
        return None

    def push(
        self,
        kind: str,
        message: str,
        *,
        actions: Iterable[NotificationAction] = (),
        duration: Union[float, None] = None,
    ) -> Notification:
        duration = DEFAULT_DURATIONS.get(kind, 3.0) if duration is None else duration
        newest = self._entries[-1] if self._entries else None
        if newest is not None and newest.kind == kind and newest.message == message:
            newest.count += 1
            # Once persistent, always persistent
            if newest.duration:
                newest.duration = duration
            self._arm(newest)
            self.events.emit(NOTIFICATION_SHOWN, {"notification": newest, "coalesced": True})
            return newest
        entry = Notification(
            id=next(self._ids),
            kind=kind,
            message=message,
            actions=tuple(actions),
            duration=duration,
            created_at=time.time(),
        )
        while len(self._entries) >= self.max_size:
            self._remove(self._entries[0], "evicted")
        self._entries.append(entry)
        self._arm(entry)
        self.events.emit(NOTIFICATION_SHOWN, {"notification": entry, "coalesced": False})
        return entry

    def error(self, message: str, **kwargs) -> Notification:
        return self.push("error", message, **kwargs)

    def warning(self, message: str, **kwargs) -> Notification:
        return self.push("warning", message, **kwargs)

    def info(self, message: str, **kwargs) -> Notification:
        return self.push("info", message, **kwargs)

    def success(self, message: str, **kwargs) -> Notification:
        return self.push("success", message, **kwargs)

    def notify_error(self, error: ClassifiedError, *, persistent: bool = False) -> Union[Notification, None]:
        # Aborts belong to the caller that asked for them
        if error.kind is ErrorKind.ABORTED:
            return None
        return self.push("error", error.user_message, duration=0 if persistent else None)

    def dismiss(self, notification_id: int) -> bool:
        entry = self.get(notification_id)
        if entry is None:
            return False
        self._remove(entry, "dismissed")
        return True

    def dismiss_all(self) -> int:
        count = len(self._entries)
        for entry in list(self._entries):
            self._remove(entry, "dismissed")
        return count

    def trigger(self, notification_id: int, index: int) -> Any:
        """Run an entry's action; dismisses the entry unless the action says otherwise."""
        entry = self.get(notification_id)
        if entry is None:
            raise KeyError(notification_id)
        action = entry.actions[index]
        result = action.handler()
        if action.dismiss_on_click:
            self._remove(entry, "action")
        if inspect.isawaitable(result):
            return asyncio.ensure_future(result)
        return result

    def _arm(self, entry: Notification) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        if entry.duration:
            entry.timer = call_later(entry.duration, self._expire, entry)

    def _expire(self, entry: Notification) -> None:
        entry.timer = None
        if entry in self._entries:
            self._remove(entry, "timeout")

    def _remove(self, entry: Notification, reason: str) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        self._entries.remove(entry)
        logger.debug(f"notification dismissed id={entry.id} reason={reason}")
        self.events.emit(NOTIFICATION_DISMISSED, {"notification": entry, "reason": reason})
