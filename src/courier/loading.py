import asyncio
import logging
import time
from typing import Any, Callable, Union

from .events import (
    LOADING_END,
    LOADING_ERROR,
    LOADING_PROGRESS,
    LOADING_START,
    LOADING_TIMEOUT,
    EventBus,
    call_later,
)
from .state import LoadingState

logger = logging.getLogger("courier")

DEFAULT_ERROR_GRACE = 3.0


class LoadingStateManager:
    """Reference-counted loading indicators keyed by name.

    ``show`` on an idle key emits ``loading:start``; nested shows only bump the
    count. ``hide`` emits ``loading:end`` when the count returns to zero and is
    a no-op on an idle key. The optional per-key timeout only marks the state
    stuck and emits ``loading:timeout``; it never cancels anything.
    """

    def __init__(self, events: Union[EventBus, None] = None, clock: Callable[[], float] = time.monotonic):
        self.events = events or EventBus()
        self.clock = clock
        self._states: dict[str, LoadingState] = {}

    def get(self, key: str) -> Union[LoadingState, None]:
        return self._states.get(key)

    def refcount(self, key: str) -> int:
        state = self._states.get(key)
        return state.refcount if state else 0

    def is_loading(self, key: str) -> bool:
        return self.refcount(key) > 0

    def show(
        self,
        key: str,
        *,
        kind: str = "inline",
        text: str = "Loading...",
        timeout: Union[float, None] = None,
        **options: Any,
    ) -> LoadingState:
        state = self._states.get(key)
        if state is not None and state.refcount > 0:
            state.refcount += 1
            return state
        if state is not None:
            # Showing again during an error's grace period replaces the error
            _cancel(state.clear_handle)
        state = LoadingState(
            key=key,
            refcount=1,
            kind=kind,
            text=text,
            started_at=self.clock(),
            options=dict(options),
        )
        self._states[key] = state
        if timeout is not None:
            state.timeout_handle = call_later(timeout, self._timed_out, key, timeout)
        self.events.emit(LOADING_START, {"key": key, "kind": kind, "text": text, **options})
        return state

    def hide(self, key: str) -> None:
        state = self._states.get(key)
        if state is None or state.refcount == 0:
            return
        state.refcount -= 1
        if state.refcount == 0:
            self._end(state)

    def update_progress(self, key: str, percent: float, status: Union[str, None] = None) -> None:
        state = self._states.get(key)
        if state is None or state.refcount == 0:
            return
        state.progress = max(0.0, min(100.0, float(percent)))
        if status is not None:
            state.status = status
        self.events.emit(
            LOADING_PROGRESS, {"key": key, "percent": state.progress, "status": state.status}
        )

    def error(self, key: str, message: str, grace: float = DEFAULT_ERROR_GRACE) -> None:
        """Switch the indicator to an error visual and clear it after ``grace`` seconds."""
        state = self._states.get(key)
        if state is None:
            state = LoadingState(key=key, started_at=self.clock())
            self._states[key] = state
        _cancel(state.timeout_handle)
        _cancel(state.clear_handle)
        state.timeout_handle = None
        state.refcount = 0
        state.status = "error"
        state.error = message
        self.events.emit(LOADING_ERROR, {"key": key, "message": message})
        state.clear_handle = call_later(grace, self._clear, key, state)

    def hide_all(self) -> None:
        for state in list(self._states.values()):
            if state.refcount > 0:
                state.refcount = 0
                self._end(state)
            else:
                _cancel(state.clear_handle)
                self._states.pop(state.key, None)

    def _end(self, state: LoadingState) -> None:
        _cancel(state.timeout_handle)
        self._states.pop(state.key, None)
        duration = self.clock() - state.started_at
        logger.debug(f"loading end key={state.key} duration={duration:.3f}s")
        self.events.emit(LOADING_END, {"key": state.key, "duration": duration})

    def _clear(self, key: str, state: LoadingState) -> None:
        if self._states.get(key) is state:
            del self._states[key]
            self.events.emit(
                LOADING_END,
                {"key": key, "duration": self.clock() - state.started_at, "error": state.error},
            )

    def _timed_out(self, key: str, timeout: float) -> None:
        state = self._states.get(key)
        if state is None or state.refcount == 0:
            return
        state.stuck = True
        state.timeout_handle = None
        logger.warning(f"loading stuck key={key} timeout={timeout:g}s")
        self.events.emit(LOADING_TIMEOUT, {"key": key, "timeout": timeout})


def _cancel(handle: Union[asyncio.TimerHandle, None]) -> None:
    if handle is not None:
        handle.cancel()
