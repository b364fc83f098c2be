import asyncio

import pytest

from courier import ClassifiedError, ErrorKind, EventBus, NotificationAction, NotificationQueue
from courier.events import NOTIFICATION_DISMISSED, NOTIFICATION_SHOWN


@pytest.mark.asyncio
async def test_default_durations_per_kind():
    queue = NotificationQueue()
    assert queue.error("e").duration == 5.0  # noqa: PLR2004
    assert queue.warning("w").duration == 4.0  # noqa: PLR2004
    assert queue.info("i").duration == 3.0  # noqa: PLR2004
    assert queue.success("s").duration == 3.0  # noqa: PLR2004
    queue.dismiss_all()


@pytest.mark.asyncio
async def test_entries_auto_dismiss_independently():
    events = EventBus()
    dismissed = []
    events.on(NOTIFICATION_DISMISSED, lambda p: dismissed.append((p["notification"].message, p["reason"])))
    queue = NotificationQueue(events)
    queue.info("short", duration=0.01)
    queue.info("long", duration=0.05)
    await asyncio.sleep(0.03)
    assert [n.message for n in queue.active] == ["long"]
    await asyncio.sleep(0.05)
    assert queue.active == []
    assert dismissed == [("short", "timeout"), ("long", "timeout")]


@pytest.mark.asyncio
async def test_identical_consecutive_messages_coalesce():
    events = EventBus()
    shown = []
    events.on(NOTIFICATION_SHOWN, lambda p: shown.append(p["coalesced"]))
    queue = NotificationQueue(events)
    first = queue.error("Server down", duration=0.02)
    await asyncio.sleep(0.015)
    again = queue.error("Server down", duration=0.02)
    assert again is first
    assert first.count == 2  # noqa: PLR2004
    # timer restarted: still visible past the first deadline
    await asyncio.sleep(0.01)
    assert queue.active == [first]
    assert shown == [False, True]
    queue.info("other")
    queue.error("Server down")
    assert len(queue.active) == 3  # noqa: PLR2004
    queue.dismiss_all()


@pytest.mark.asyncio
async def test_full_queue_evicts_oldest_explicitly():
    events = EventBus()
    dismissed = []
    events.on(NOTIFICATION_DISMISSED, lambda p: dismissed.append((p["notification"].message, p["reason"])))
    queue = NotificationQueue(events, max_size=2)
    queue.info("a")
    queue.info("b")
    queue.info("c")
    assert [n.message for n in queue.active] == ["b", "c"]
    assert dismissed == [("a", "evicted")]
    queue.dismiss_all()


@pytest.mark.asyncio
async def test_notify_error_uses_user_message_and_skips_aborted():
    queue = NotificationQueue()
    assert queue.notify_error(ClassifiedError(kind=ErrorKind.ABORTED, message="x")) is None
    entry = queue.notify_error(ClassifiedError(kind=ErrorKind.TIMEOUT, message="x"))
    assert entry.message == "The request timed out. Please try again."
    sticky = queue.notify_error(
        ClassifiedError(kind=ErrorKind.AUTHENTICATION, message="x"), persistent=True
    )
    assert sticky.persistent
    assert sticky.timer is None
    queue.dismiss_all()


@pytest.mark.asyncio
async def test_persistent_entries_stay_until_dismissed():
    queue = NotificationQueue()
    entry = queue.error("Session expired", duration=0)
    await asyncio.sleep(0.01)
    assert queue.active == [entry]
    assert queue.dismiss(entry.id)
    assert not queue.dismiss(entry.id)
    assert queue.active == []


@pytest.mark.asyncio
async def test_actions():
    clicks = []
    queue = NotificationQueue()
    entry = queue.warning(
        "Unsaved changes",
        actions=[
            NotificationAction("Keep", lambda: clicks.append("keep"), dismiss_on_click=False),
            NotificationAction("Discard", lambda: clicks.append("discard") or "gone"),
        ],
    )
    queue.trigger(entry.id, 0)
    assert queue.active == [entry]
    assert queue.trigger(entry.id, 1) == "gone"
    assert clicks == ["keep", "discard"]
    assert queue.active == []
    with pytest.raises(KeyError):
        queue.trigger(entry.id, 0)


def test_max_size_validation():
    with pytest.raises(ValueError):
        NotificationQueue(max_size=0)


def test_push_without_running_loop_keeps_entry_untimed():
    queue = NotificationQueue()
    entry = queue.error("Offline")
    assert entry.timer is None
    assert queue.active == [entry]
    assert queue.dismiss(entry.id)
