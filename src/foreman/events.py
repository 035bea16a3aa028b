"""Async pub/sub bus for task and process lifecycle events.

The queue and the supervisor publish events such as ``task.completed`` or
``process.timeout``; collaborators (a chat front-end, an audit log)
subscribe with a callback. Each subscriber keeps a bounded deque of recent
events, so a slow consumer loses the oldest ones instead of blocking the
publisher.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any, TypedDict

from foreman.core.logging import get_logger

_logger = get_logger("events")

_MAX_CONSECUTIVE_FAILURES = 10


class ForemanEvent(TypedDict):
    """A single lifecycle event.

    ``subject`` is the task id for ``task.*``/``schedule.*`` events and the
    handle id (as a string) for ``process.*`` events.
    """

    event: str
    subject: str
    data: dict[str, Any]
    timestamp: float


def make_event(event: str, subject: str | int, **data: Any) -> ForemanEvent:
    return ForemanEvent(event=event, subject=str(subject), data=data, timestamp=time.time())


EventFilter = Callable[[ForemanEvent], bool] | None
EventCallback = Callable[[ForemanEvent], Any]


class _Subscriber:
    __slots__ = ("callback", "event_filter", "recent", "consecutive_failures")

    def __init__(
        self,
        callback: EventCallback,
        event_filter: EventFilter,
        recent: deque[ForemanEvent],
    ) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.recent = recent
        self.consecutive_failures = 0


class EventBus:
    """Pub/sub with a background drain loop.

    Usage::

        bus = EventBus()
        await bus.start()
        bus.subscribe(handler, event_filter=lambda e: e["event"].startswith("task."))
        bus.publish_nowait(make_event("task.added", "task-1"))
        await bus.shutdown()

    A subscriber whose callback raises ten times in a row is skipped from
    then on.
    """

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, _Subscriber] = {}
        self._pending: asyncio.Queue[ForemanEvent] = asyncio.Queue()
        self._drain_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        """Start the drain loop. Idempotent."""
        if self._running:
            return
        self._running = True
        self._drain_task = asyncio.create_task(self._drain_loop(), name="foreman-event-drain")

    def publish_nowait(self, event: ForemanEvent) -> None:
        """Queue an event for delivery. Dropped silently while the bus is stopped."""
        if not self._running:
            return
        self._pending.put_nowait(event)

    async def publish(self, event: ForemanEvent) -> None:
        self.publish_nowait(event)

    def subscribe(self, callback: EventCallback, *, event_filter: EventFilter = None) -> str:
        """Register a sync or async callback. Returns the subscription id."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = _Subscriber(
            callback=callback,
            event_filter=event_filter,
            recent=deque(maxlen=self._max_queue_size),
        )
        _logger.debug("events.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        removed = self._subscribers.pop(sub_id, None) is not None
        if removed:
            _logger.debug("events.unsubscribed", sub_id=sub_id)
        return removed

    def recent_events(self, sub_id: str) -> list[ForemanEvent]:
        """Events most recently delivered to a subscriber, oldest first."""
        sub = self._subscribers.get(sub_id)
        return list(sub.recent) if sub is not None else []

    async def shutdown(self) -> None:
        """Stop the drain loop, then deliver whatever is still queued."""
        self._running = False
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None

        while not self._pending.empty():
            await self._distribute(self._pending.get_nowait())

        _logger.debug("events.shutdown", subscribers=len(self._subscribers))

    async def _drain_loop(self) -> None:
        while True:
            event = await self._pending.get()
            await self._distribute(event)

    async def _distribute(self, event: ForemanEvent) -> None:
        for sub_id, sub in list(self._subscribers.items()):
            if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(event):
                    continue
            except Exception:
                _logger.warning(
                    "events.filter_error",
                    sub_id=sub_id,
                    event_type=event["event"],
                    exc_info=True,
                )
                continue
            sub.recent.append(event)
            try:
                result = sub.callback(event)
                if asyncio.iscoroutine(result):
                    await result
                sub.consecutive_failures = 0
            except Exception:
                sub.consecutive_failures += 1
                _logger.warning(
                    "events.subscriber_error",
                    sub_id=sub_id,
                    event_type=event["event"],
                    consecutive_failures=sub.consecutive_failures,
                    exc_info=True,
                )
                if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                    _logger.error("events.subscriber_disabled", sub_id=sub_id)


__all__ = ["EventBus", "ForemanEvent", "make_event"]
