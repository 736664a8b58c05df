"""Batch coordinator: decides when to flush and drives groups through reasoning.

A new signal flushes immediately when the pending list was empty, when its
text carries an urgency keyword, or when the pending list is full. Otherwise
a single wait timer is armed; when it fires the pending list (up to
``max_batch_size``) is grouped and dispatched. Each group costs one oracle
call. Results are seeded into the classification cache and every signal is
handed to the downstream sink.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from signalflow.batching.similarity import SignalGroup, SimilarityGrouper, has_urgency_keyword
from signalflow.constants import (
    BATCH_HISTORY_LIMIT,
    MS_PER_INDIVIDUAL_CALL,
    TOKENS_BATCH_OVERHEAD,
    TOKENS_PER_BATCHED_SIGNAL,
    TOKENS_PER_INDIVIDUAL_CALL,
)
from signalflow.logging import get_logger
from signalflow.models import Classification, Signal
from signalflow.utils import new_id, utcnow

if TYPE_CHECKING:
    from signalflow.cache.classification import ClassificationCache
    from signalflow.config import Settings

log = get_logger("signalflow.batching.coordinator")

GroupClassifier = Callable[[SignalGroup], Awaitable[dict[str, Classification]]]
SignalSink = Callable[[Signal, Classification | None], Awaitable[None]]


def estimate_tokens_saved(signal_count: int) -> int:
    """Tokens saved versus one call per signal, floored at zero."""
    individual = signal_count * TOKENS_PER_INDIVIDUAL_CALL
    batched = TOKENS_BATCH_OVERHEAD + signal_count * TOKENS_PER_BATCHED_SIGNAL
    return max(0, individual - batched)


def estimate_time_saved_ms(signal_count: int, processing_time_ms: float) -> float:
    return max(0.0, signal_count * MS_PER_INDIVIDUAL_CALL - processing_time_ms)


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one dispatched batch."""

    batch_id: str
    results: dict[str, Classification]
    llm_calls_made: int
    tokens_saved: int
    time_saved_ms: float
    processing_time_ms: float
    signals_processed: int
    group_count: int
    errors: tuple[dict[str, str], ...] = ()
    completed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "results": {k: v.model_dump() for k, v in self.results.items()},
            "llm_calls_made": self.llm_calls_made,
            "tokens_saved": self.tokens_saved,
            "time_saved_ms": self.time_saved_ms,
            "processing_time_ms": self.processing_time_ms,
            "signals_processed": self.signals_processed,
            "group_count": self.group_count,
            "errors": list(self.errors),
            "completed_at": self.completed_at.isoformat(),
        }


class BatchCoordinator:
    """Adaptive batching in front of the reasoning oracle."""

    def __init__(
        self,
        classifier: GroupClassifier,
        *,
        grouper: SimilarityGrouper | None = None,
        cache: ClassificationCache | None = None,
        sink: SignalSink | None = None,
        max_batch_size: int = 10,
        batch_wait_time: float = 30.0,
        max_concurrent_batches: int = 3,
    ) -> None:
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be > 0")
        self._classifier = classifier
        self._grouper = grouper or SimilarityGrouper()
        self._cache = cache
        self._sink = sink
        self._max_batch_size = max_batch_size
        self._wait_time = batch_wait_time
        self._semaphore = asyncio.Semaphore(max_concurrent_batches)
        self._lock = asyncio.Lock()

        self._pending: list[Signal] = []
        self._timer: asyncio.Task[None] | None = None
        self._in_flight = 0
        self._history: deque[BatchResult] = deque(maxlen=BATCH_HISTORY_LIMIT)

        self._total_batches = 0
        self._total_signals = 0
        self._total_llm_calls = 0
        self._total_tokens_saved = 0
        self._total_time_saved_ms = 0.0
        self._total_processing_ms = 0.0
        self._immediate_flushes = 0
        self._timer_flushes = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        classifier: GroupClassifier,
        **kwargs: Any,
    ) -> BatchCoordinator:
        return cls(
            classifier,
            grouper=kwargs.pop("grouper", None)
            or SimilarityGrouper(settings.similarity_threshold),
            max_batch_size=settings.max_batch_size,
            batch_wait_time=settings.batch_wait_time,
            max_concurrent_batches=settings.max_concurrent_batches,
            **kwargs,
        )

    def set_sink(self, sink: SignalSink | None) -> None:
        self._sink = sink

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _immediate_reason(self, signal: Signal, was_empty: bool) -> str | None:
        if was_empty:
            return "queue_empty"
        if has_urgency_keyword(signal):
            return "urgent_signal"
        if len(self._pending) >= self._max_batch_size:
            return "batch_full"
        return None

    async def add_signal(self, signal: Signal) -> BatchResult | None:
        """Queue a signal; returns the BatchResult if this triggered a flush."""
        async with self._lock:
            was_empty = not self._pending
            self._pending.append(signal)
            reason = self._immediate_reason(signal, was_empty)

        log.debug("batch_signal_added", signal_id=signal.id, pending=len(self._pending))

        if reason is not None:
            self._immediate_flushes += 1
            log.info("batch_immediate_flush", signal_id=signal.id, reason=reason)
            return await self.flush()

        self._arm_timer()
        return None

    def _arm_timer(self) -> None:
        if self.timer_armed:
            return
        self._timer = asyncio.create_task(self._timer_expired(), name="batch-wait-timer")
        log.debug("batch_timer_armed", wait_seconds=self._wait_time, pending=len(self._pending))

    async def _timer_expired(self) -> None:
        await asyncio.sleep(self._wait_time)
        # Detach first so flush() does not cancel the running timer
        self._timer = None
        self._timer_flushes += 1
        try:
            await self.flush()
        except Exception as exc:
            log.error("batch_timer_flush_failed", error=str(exc))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def flush(self) -> BatchResult | None:
        """Dispatch up to ``max_batch_size`` pending signals now."""
        async with self._lock:
            self._cancel_timer()
            if not self._pending:
                return None
            signals = self._pending[: self._max_batch_size]
            del self._pending[: self._max_batch_size]
            remaining = len(self._pending)

        if remaining:
            self._arm_timer()
        log.info("batch_flush", signals=len(signals), remaining=remaining)
        return await self._dispatch(signals)

    async def process_batch(self, signals: list[Signal]) -> list[BatchResult]:
        """Dispatch an explicit list, chunked by ``max_batch_size``.

        Chunks run concurrently up to the in-flight batch limit.
        """
        chunks = [
            signals[i : i + self._max_batch_size]
            for i in range(0, len(signals), self._max_batch_size)
        ]
        results = await asyncio.gather(*(self._dispatch(chunk) for chunk in chunks))
        log.info(
            "batch_processing_complete",
            batches=len(results),
            signals=len(signals),
            tokens_saved=sum(r.tokens_saved for r in results),
        )
        return list(results)

    async def _dispatch(self, signals: list[Signal]) -> BatchResult:
        async with self._semaphore:
            self._in_flight += 1
            try:
                result = await self._classify(signals)
            finally:
                self._in_flight -= 1

        self._record(result)
        self._seed_cache(signals, result)
        await self._deliver(signals, result)
        return result

    async def _classify(self, signals: list[Signal]) -> BatchResult:
        batch_id = new_id("batch")
        start = time.perf_counter()
        try:
            groups = self._grouper.group(signals)
        except Exception as exc:
            # One group per signal; every dequeued signal still gets classified
            log.error("batch_grouping_failed", batch_id=batch_id, error=str(exc))
            groups = [SignalGroup(signals=[s], common_sender=s.sender) for s in signals]

        results: dict[str, Classification] = {}
        errors: list[dict[str, str]] = []
        llm_calls = 0

        for group in groups:
            try:
                group_results = await self._classifier(group)
                llm_calls += 1
            except Exception as exc:
                log.error("batch_group_failed", group_id=group.group_id, error=str(exc))
                errors.extend({"signal_id": s.id, "error": str(exc)} for s in group.signals)
                continue

            for signal in group.signals:
                classification = group_results.get(signal.id)
                if classification is None:
                    errors.append({"signal_id": signal.id, "error": "missing from group result"})
                else:
                    results[signal.id] = classification

        processing_ms = round((time.perf_counter() - start) * 1000, 2)
        result = BatchResult(
            batch_id=batch_id,
            results=results,
            llm_calls_made=llm_calls,
            tokens_saved=estimate_tokens_saved(len(signals)),
            time_saved_ms=estimate_time_saved_ms(len(signals), processing_ms),
            processing_time_ms=processing_ms,
            signals_processed=len(signals),
            group_count=len(groups),
            errors=tuple(errors),
        )
        log.info(
            "batch_complete",
            batch_id=batch_id,
            signals=len(signals),
            groups=len(groups),
            llm_calls=llm_calls,
            tokens_saved=result.tokens_saved,
            processing_time_ms=processing_ms,
            errors=len(errors),
        )
        return result

    def _record(self, result: BatchResult) -> None:
        self._total_batches += 1
        self._total_signals += result.signals_processed
        self._total_llm_calls += result.llm_calls_made
        self._total_tokens_saved += result.tokens_saved
        self._total_time_saved_ms += result.time_saved_ms
        self._total_processing_ms += result.processing_time_ms
        self._history.append(result)

    def _seed_cache(self, signals: list[Signal], result: BatchResult) -> None:
        if self._cache is None:
            return
        for signal in signals:
            classification = result.results.get(signal.id)
            if classification is not None:
                self._cache.set(self._cache.key_for(signal), classification)

    async def _deliver(self, signals: list[Signal], result: BatchResult) -> None:
        if self._sink is None:
            return
        for signal in signals:
            try:
                await self._sink(signal, result.results.get(signal.id))
            except Exception as exc:
                log.error("batch_sink_failed", signal_id=signal.id, error=str(exc))

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        batches = self._total_batches
        signals = self._total_signals
        return {
            "total_batches": batches,
            "total_signals_processed": signals,
            "total_llm_calls": self._total_llm_calls,
            "avg_signals_per_batch": signals / batches if batches else 0.0,
            "avg_llm_calls_per_batch": self._total_llm_calls / batches if batches else 0.0,
            "total_tokens_saved": self._total_tokens_saved,
            "total_time_saved_ms": self._total_time_saved_ms,
            "avg_processing_time_ms": self._total_processing_ms / batches if batches else 0.0,
            "efficiency_rate": signals / self._total_llm_calls if self._total_llm_calls else 0.0,
            "immediate_flushes": self._immediate_flushes,
            "timer_flushes": self._timer_flushes,
            "pending": len(self._pending),
            "in_flight": self._in_flight,
            "timer_armed": self.timer_armed,
        }

    def history(self, limit: int = 10) -> list[BatchResult]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def clear(self) -> int:
        """Drop pending signals without dispatching them."""
        count = len(self._pending)
        self._pending.clear()
        self._cancel_timer()
        log.info("batch_queue_cleared", removed=count)
        return count

    async def shutdown(self) -> None:
        """Stop the timer and dispatch everything still pending."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        while self._pending:
            await self.flush()
        log.info("batch_coordinator_shutdown", **self.stats())
