"""Admission gate: bounded priority queue with a sliding-window rate limiter.

Producers call ``enqueue()`` and never block or raise; overflow is handled by
evicting a strictly lower-priority signal or dropping the newcomer. The
consumer calls ``await get()``, which releases at most
``max_signals_per_minute`` signals per rolling 60 second window.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from signalflow.constants import RATE_WINDOW_SECONDS
from signalflow.logging import get_logger
from signalflow.models import Priority, QueuedSignal, Signal

if TYPE_CHECKING:
    from signalflow.config import Settings

log = get_logger("signalflow.intake.gate")

# Dequeue order
_PRIORITY_ORDER = (Priority.HIGH, Priority.NORMAL, Priority.LOW)


class AdmissionGate:
    """Bounded, priority-ordered admission queue."""

    def __init__(
        self,
        *,
        max_queue_size: int = 100,
        max_signals_per_minute: int = 10,
        rate_limit_backoff: float = 1.0,
        poll_interval: float = 0.1,
        max_retries: int = 3,
        window: float = RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        if max_signals_per_minute <= 0:
            raise ValueError("max_signals_per_minute must be > 0")
        self._capacity = max_queue_size
        self._rate_limit = max_signals_per_minute
        self._backoff = rate_limit_backoff
        self._poll_interval = poll_interval
        self._max_retries = max_retries
        self._window = window
        self._clock = clock

        self._queues: dict[Priority, deque[QueuedSignal]] = {p: deque() for p in _PRIORITY_ORDER}
        self._releases: deque[float] = deque()
        self._sequence = 0

        self._enqueued = 0
        self._dequeued = 0
        self._dropped = 0
        self._evicted = 0
        self._requeued = 0
        self._retries_exhausted = 0
        self._rate_limit_hits = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> AdmissionGate:
        return cls(
            max_queue_size=settings.max_queue_size,
            max_signals_per_minute=settings.max_signals_per_minute,
            rate_limit_backoff=settings.rate_limit_backoff,
            poll_interval=settings.queue_poll_interval,
            max_retries=settings.max_signal_retries,
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return sum(len(q) for q in self._queues.values())

    @property
    def capacity(self) -> int:
        return self._capacity

    def enqueue(self, signal: Signal, priority: Priority | str = Priority.NORMAL) -> bool:
        """Admit a signal.

        Returns True if the signal was admitted (possibly by evicting a
        lower-priority one), False if it was dropped.
        """
        priority = Priority(priority)
        if not self._make_room(priority, signal.id):
            return False

        self._sequence += 1
        self._queues[priority].append(
            QueuedSignal(signal=signal, priority=priority, sequence=self._sequence)
        )
        self._enqueued += 1
        log.debug(
            "signal_enqueued",
            signal_id=signal.id,
            priority=str(priority),
            queue_size=self.size,
        )
        return True

    def requeue(self, queued: QueuedSignal) -> bool:
        """Put a failed signal back for another attempt.

        Returns False once ``max_retries`` attempts have been used or the
        queue has no room.
        """
        if queued.retry_count >= self._max_retries:
            self._retries_exhausted += 1
            log.error(
                "signal_retries_exhausted",
                signal_id=queued.signal.id,
                max_retries=self._max_retries,
            )
            return False
        if not self._make_room(queued.priority, queued.signal.id):
            return False

        queued.retry_count += 1
        self._queues[queued.priority].append(queued)
        self._requeued += 1
        log.info(
            "signal_requeued",
            signal_id=queued.signal.id,
            retry_count=queued.retry_count,
        )
        return True

    def _make_room(self, priority: Priority, signal_id: str) -> bool:
        if self.size < self._capacity:
            return True

        # Look for the oldest item of the lowest priority below the incoming one
        for candidate in reversed(_PRIORITY_ORDER):
            if candidate.rank >= priority.rank:
                break
            bucket = self._queues[candidate]
            if bucket:
                victim = bucket.popleft()
                self._dropped += 1
                self._evicted += 1
                log.warning(
                    "signal_evicted_on_overflow",
                    evicted_id=victim.signal.id,
                    evicted_priority=str(victim.priority),
                    incoming_id=signal_id,
                    incoming_priority=str(priority),
                    dropped_total=self._dropped,
                )
                return True

        self._dropped += 1
        log.warning(
            "signal_dropped_queue_full",
            signal_id=signal_id,
            priority=str(priority),
            queue_size=self.size,
            dropped_total=self._dropped,
        )
        return False

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self) -> QueuedSignal | None:
        """Pop the next signal in priority order without rate accounting."""
        for priority in _PRIORITY_ORDER:
            bucket = self._queues[priority]
            if bucket:
                self._dequeued += 1
                return bucket.popleft()
        return None

    def _prune_window(self, now: float) -> None:
        cutoff = now - self._window
        while self._releases and self._releases[0] <= cutoff:
            self._releases.popleft()

    def seconds_until_slot(self) -> float:
        """Seconds until the rate window admits another release (0 if free)."""
        now = self._clock()
        self._prune_window(now)
        if len(self._releases) < self._rate_limit:
            return 0.0
        return max(0.0, self._releases[0] + self._window - now)

    async def get(self) -> QueuedSignal:
        """Wait for the next signal the rate budget allows."""
        while True:
            if self.size == 0:
                await asyncio.sleep(self._poll_interval)
                continue

            wait = self.seconds_until_slot()
            if wait > 0:
                self._rate_limit_hits += 1
                log.debug(
                    "rate_limit_wait",
                    wait_seconds=round(wait, 3),
                    in_window=len(self._releases),
                )
                await asyncio.sleep(max(wait, self._backoff))
                continue

            queued = self.dequeue()
            if queued is None:
                continue
            self._releases.append(self._clock())
            return queued

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def clear(self) -> int:
        """Drop everything queued. Returns the number of signals removed."""
        removed = self.size
        for bucket in self._queues.values():
            bucket.clear()
        log.info("admission_queue_cleared", removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        self._prune_window(self._clock())
        return {
            "size": self.size,
            "capacity": self._capacity,
            "by_priority": {str(p): len(q) for p, q in self._queues.items()},
            "enqueued": self._enqueued,
            "dequeued": self._dequeued,
            "signals_dropped": self._dropped,
            "evicted": self._evicted,
            "requeued": self._requeued,
            "retries_exhausted": self._retries_exhausted,
            "rate_limit_hits": self._rate_limit_hits,
            "released_in_window": len(self._releases),
            "max_signals_per_minute": self._rate_limit,
        }
