"""Tests for the publish/subscribe event bus"""

from __future__ import annotations

import asyncio
import logging

import pytest

from viberater.sync.events import ConnectivityChanged, EventBus, SyncCompleted, SyncStarted


class TestEventBus:

    def test_delivers_in_subscription_order(self):
        bus = EventBus()
        received = []
        bus.subscribe(SyncStarted, lambda e: received.append("first"))
        bus.subscribe(SyncStarted, lambda e: received.append("second"))

        bus.publish(SyncStarted())

        assert received == ["first", "second"]

    def test_only_matching_type_is_delivered(self):
        bus = EventBus()
        received = []
        bus.subscribe(SyncCompleted, received.append)

        bus.publish(SyncStarted())
        bus.publish(SyncCompleted(attempted=2, synced=1, failed=1))

        assert received == [SyncCompleted(attempted=2, synced=1, failed=1)]

    def test_raising_subscriber_is_isolated(self, caplog):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(ConnectivityChanged, broken)
        bus.subscribe(ConnectivityChanged, received.append)

        with caplog.at_level(logging.ERROR, logger="viberater.sync.events"):
            bus.publish(ConnectivityChanged(online=True))

        assert received == [ConnectivityChanged(online=True)]
        assert "listener bug" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(SyncStarted, received.append)

        unsubscribe()
        unsubscribe()
        bus.publish(SyncStarted())

        assert received == []
        assert bus.subscriber_count(SyncStarted) == 0

    @pytest.mark.asyncio
    async def test_async_subscriber_is_scheduled_not_awaited(self):
        bus = EventBus()
        started = asyncio.Event()
        release = asyncio.Event()
        finished = []

        async def slow(event):
            started.set()
            await release.wait()
            finished.append(event)

        bus.subscribe(SyncStarted, slow)
        bus.publish(SyncStarted())

        assert finished == []
        await asyncio.wait_for(started.wait(), timeout=1)
        release.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert finished == [SyncStarted()]

    def test_async_subscriber_without_loop_is_dropped(self):
        bus = EventBus()

        async def handler(event):
            raise AssertionError("should never run")

        bus.subscribe(SyncStarted, handler)

        bus.publish(SyncStarted())
