"""Tests for foreman.events module."""

from __future__ import annotations

import asyncio

import pytest

from foreman.events import EventBus, make_event


class TestMakeEvent:
    def test_subject_is_stringified(self):
        event = make_event("process.spawned", 7, pid=123)
        assert event["subject"] == "7"
        assert event["data"] == {"pid": 123}
        assert event["timestamp"] > 0


class TestEventBus:
    """Tests for EventBus delivery."""

    @pytest.mark.asyncio
    async def test_delivers_to_sync_and_async_subscribers(self):
        bus = EventBus()
        await bus.start()
        sync_seen: list[str] = []
        async_seen: list[str] = []

        async def async_cb(event):
            async_seen.append(event["event"])

        bus.subscribe(lambda e: sync_seen.append(e["event"]))
        bus.subscribe(async_cb)
        bus.publish_nowait(make_event("task.added", "t1"))
        await bus.publish(make_event("task.completed", "t1"))
        await bus.shutdown()

        assert sync_seen == ["task.added", "task.completed"]
        assert async_seen == ["task.added", "task.completed"]

    @pytest.mark.asyncio
    async def test_filter(self):
        bus = EventBus()
        await bus.start()
        sub_id = bus.subscribe(lambda e: None, event_filter=lambda e: e["event"].startswith("task."))
        bus.publish_nowait(make_event("process.spawned", 1))
        bus.publish_nowait(make_event("task.failed", "t"))
        await bus.shutdown()
        assert [e["event"] for e in bus.recent_events(sub_id)] == ["task.failed"]

    @pytest.mark.asyncio
    async def test_dropped_when_not_running(self):
        bus = EventBus()
        seen: list = []
        bus.subscribe(seen.append)
        bus.publish_nowait(make_event("task.added", "t"))
        await bus.shutdown()
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_disabled_after_repeated_errors(self):
        bus = EventBus()
        await bus.start()
        calls = 0
        good: list = []

        def bad(event):
            nonlocal calls
            calls += 1
            raise RuntimeError("nope")

        bus.subscribe(bad)
        bus.subscribe(good.append)
        for i in range(15):
            bus.publish_nowait(make_event("task.added", str(i)))
        await asyncio.sleep(0)
        await bus.shutdown()

        assert calls == 10
        assert len(good) == 15

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        sub_id = bus.subscribe(lambda e: None)
        assert bus.subscriber_count == 1
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False
        assert bus.subscriber_count == 0
