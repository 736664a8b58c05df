"""Typed event hub for inbound source events and outbound action events.

Subscribers register for a set of topics and receive events through a
bounded queue. Outbound sinks (for example the HTTP executor sink) are
awaited on every emit; a sink failure surfaces as ``EmissionError`` so the
caller can retry.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import httpx

from signalflow.errors import EmissionError
from signalflow.logging import get_logger
from signalflow.utils import new_id, utcnow

log = get_logger("signalflow.events")

DEFAULT_SUBSCRIBER_QUEUE = 256


class Topic(StrEnum):
    """Hub topics."""

    # Inbound
    GMAIL_NEW_MESSAGE = "gmail:new_message"
    SLACK_NEW_MESSAGE = "slack:new_message"
    SHEETS_DATA_CHANGED = "sheets:data_changed"

    # Outbound
    REASONING_COMPLETE = "reasoning:complete"
    ACTION_READY = "action:ready"
    ACTION_REQUIRES_APPROVAL = "action:requires_approval"
    ACTION_REJECTED = "action:rejected"
    REVIEW_PENDING = "review:pending"

    @property
    def inbound(self) -> bool:
        return self in INBOUND_TOPICS


INBOUND_TOPICS = frozenset(
    {Topic.GMAIL_NEW_MESSAGE, Topic.SLACK_NEW_MESSAGE, Topic.SHEETS_DATA_CHANGED}
)


@dataclass(frozen=True)
class HubEvent:
    """A single event travelling through the hub."""

    topic: Topic
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: new_id("evt"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "topic": str(self.topic),
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


EventSink = Callable[[HubEvent], Awaitable[None]]


class Subscription:
    """A bounded per-subscriber channel. Iterate it or call ``get()``."""

    def __init__(self, hub: EventHub, topics: frozenset[Topic], maxsize: int) -> None:
        self._hub = hub
        self.topics = topics
        self._queue: asyncio.Queue[HubEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: HubEvent) -> None:
        if self._queue.full():
            # Slow subscriber: drop the oldest so the hub never blocks
            self._queue.get_nowait()
            self.dropped += 1
            log.warning(
                "subscriber_queue_overflow",
                topic=str(event.topic),
                dropped=self.dropped,
            )
        self._queue.put_nowait(event)

    async def get(self) -> HubEvent:
        return await self._queue.get()

    def get_nowait(self) -> HubEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Unsubscribe. Events already queued remain readable."""
        if not self._closed:
            self._closed = True
            self._hub.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[HubEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[HubEvent]:
        while not self._closed or not self._queue.empty():
            yield await self._queue.get()


class EventHub:
    """In-process pub/sub with typed topics and explicit teardown."""

    def __init__(self, *, emission_timeout: float = 5.0) -> None:
        self._subscriptions: list[Subscription] = []
        self._sinks: list[EventSink] = []
        self._emission_timeout = emission_timeout
        self._emitted: dict[str, int] = {}

    def subscribe(
        self,
        topics: Iterable[Topic | str],
        *,
        maxsize: int = DEFAULT_SUBSCRIBER_QUEUE,
    ) -> Subscription:
        wanted = frozenset(Topic(t) for t in topics)
        if not wanted:
            raise ValueError("subscribe() needs at least one topic")
        sub = Subscription(self, wanted, maxsize)
        self._subscriptions.append(sub)
        log.debug("hub_subscribed", topics=sorted(str(t) for t in wanted))
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_sink(self, sink: EventSink) -> None:
        """Register an outbound sink awaited on every emit."""
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def emitted(self, topic: Topic | str | None = None) -> int | dict[str, int]:
        """Emission counters, per topic or all of them."""
        if topic is None:
            return dict(self._emitted)
        return self._emitted.get(str(topic), 0)

    async def emit(self, topic: Topic | str, payload: dict[str, Any]) -> HubEvent:
        """Deliver an event to subscribers and sinks.

        Raises:
            EmissionError: If any sink fails or exceeds the emission timeout.
        """
        event = HubEvent(topic=Topic(topic), payload=payload)

        for sub in list(self._subscriptions):
            if event.topic in sub.topics:
                sub._offer(event)

        for sink in list(self._sinks):
            try:
                await asyncio.wait_for(sink(event), timeout=self._emission_timeout)
            except TimeoutError as exc:
                raise EmissionError(f"Sink timed out emitting {event.topic}") from exc
            except EmissionError:
                raise
            except Exception as exc:
                raise EmissionError(f"Sink failed emitting {event.topic}: {exc}") from exc

        key = str(event.topic)
        self._emitted[key] = self._emitted.get(key, 0) + 1
        return event

    def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.close()
        self._sinks.clear()


class HttpEventSink:
    """Forward outbound events to the downstream executor over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __call__(self, event: HubEvent) -> None:
        if event.topic.inbound:
            return
        try:
            resp = await self._client.post(
                f"{self._url}/events",
                json=event.to_dict(),
                headers={"Content-Type": "application/json"},
            )
        except httpx.RequestError as exc:
            log.warning("executor_send_failed", topic=str(event.topic), error=str(exc))
            raise EmissionError(str(exc)) from exc
        if resp.status_code >= 400:
            log.warning(
                "executor_rejected_event",
                topic=str(event.topic),
                status=resp.status_code,
                body=resp.text[:200],
            )
            raise EmissionError(f"Executor returned HTTP {resp.status_code}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
