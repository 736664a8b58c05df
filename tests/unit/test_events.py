"""Unit tests for the event hub."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from signalflow.errors import EmissionError
from signalflow.events import EventHub, HubEvent, Topic


class TestTopic:
    """Tests for Topic direction."""

    def test_inbound_topics(self) -> None:
        assert Topic.GMAIL_NEW_MESSAGE.inbound
        assert Topic.SHEETS_DATA_CHANGED.inbound
        assert not Topic.ACTION_READY.inbound


class TestSubscriptions:
    """Tests for subscribe/emit/unsubscribe."""

    async def test_subscriber_receives_matching_topics_only(self) -> None:
        hub = EventHub()
        sub = hub.subscribe([Topic.ACTION_READY])

        await hub.emit(Topic.ACTION_READY, {"n": 1})
        await hub.emit(Topic.ACTION_REJECTED, {"n": 2})

        assert sub.pending() == 1
        event = await sub.get()
        assert event.payload == {"n": 1}
        assert sub.get_nowait() is None

    def test_subscribe_requires_topic(self) -> None:
        with pytest.raises(ValueError, match="topic"):
            EventHub().subscribe([])

    def test_subscribe_accepts_strings(self) -> None:
        sub = EventHub().subscribe(["action:ready"])
        assert sub.topics == frozenset({Topic.ACTION_READY})

    async def test_overflow_drops_oldest(self) -> None:
        hub = EventHub()
        sub = hub.subscribe([Topic.ACTION_READY], maxsize=2)
        for n in range(3):
            await hub.emit(Topic.ACTION_READY, {"n": n})

        assert sub.dropped == 1
        assert (await sub.get()).payload == {"n": 1}

    async def test_close_unsubscribes(self) -> None:
        hub = EventHub()
        sub = hub.subscribe([Topic.ACTION_READY])
        sub.close()

        await hub.emit(Topic.ACTION_READY, {})
        assert hub.subscriber_count == 0
        assert sub.closed
        assert sub.pending() == 0

    async def test_iteration_drains_then_stops_after_close(self) -> None:
        hub = EventHub()
        sub = hub.subscribe([Topic.ACTION_READY])
        await hub.emit(Topic.ACTION_READY, {"n": 1})
        sub.close()

        seen = [event.payload["n"] async for event in sub]
        assert seen == [1]

    async def test_emitted_counters(self) -> None:
        hub = EventHub()
        await hub.emit(Topic.ACTION_READY, {})
        await hub.emit("action:ready", {})
        assert hub.emitted(Topic.ACTION_READY) == 2
        assert hub.emitted() == {"action:ready": 2}


class TestSinks:
    """Tests for outbound sinks."""

    async def test_sink_receives_event(self) -> None:
        hub = EventHub()
        sink = AsyncMock()
        hub.add_sink(sink)

        event = await hub.emit(Topic.ACTION_READY, {"x": 1})

        sink.assert_awaited_once_with(event)
        assert isinstance(event, HubEvent)

    async def test_sink_failure_raises_emission_error(self) -> None:
        hub = EventHub()
        hub.add_sink(AsyncMock(side_effect=RuntimeError("down")))

        with pytest.raises(EmissionError, match="down"):
            await hub.emit(Topic.ACTION_READY, {})
        assert hub.emitted(Topic.ACTION_READY) == 0

    async def test_slow_sink_times_out(self) -> None:
        async def _slow(event: HubEvent) -> None:
            await asyncio.sleep(1)

        hub = EventHub(emission_timeout=0.01)
        hub.add_sink(_slow)

        with pytest.raises(EmissionError, match="timed out"):
            await hub.emit(Topic.ACTION_READY, {})

    async def test_removed_sink_not_called(self) -> None:
        hub = EventHub()
        sink = AsyncMock()
        hub.add_sink(sink)
        hub.remove_sink(sink)

        await hub.emit(Topic.ACTION_READY, {})
        sink.assert_not_awaited()

    def test_event_to_dict(self) -> None:
        event = HubEvent(topic=Topic.REVIEW_PENDING, payload={"a": 1})
        data = event.to_dict()
        assert data["topic"] == "review:pending"
        assert data["payload"] == {"a": 1}
        assert data["event_id"].startswith("evt-")
