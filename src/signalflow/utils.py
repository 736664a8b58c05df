"""Shared utilities for SignalFlow."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import inspect
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog

from signalflow.logging import get_logger

log = get_logger("signalflow.utils")


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("classify", log=log) as timing:
            await do_something()
        print(timing["elapsed_ms"])

    Args:
        name: A label for the operation (used in log messages).
        log: Optional structlog logger; if provided, a debug-level message
             is emitted on exit.
        **extra: Additional key-value pairs forwarded to the log call.

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.debug(name, duration_ms=result["elapsed_ms"], **extra)


def stable_hash(*parts: object) -> str:
    """Return a SHA-256 hex digest over ``parts`` joined with ``|``."""
    data = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``pub-3f2a9c...``."""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware values pass through."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class PeriodicTask:
    """Run a callback every ``interval`` seconds on the running event loop.

    Failures are logged and the loop keeps going; only ``stop()`` ends it.
    The callback may be a plain function or a coroutine function.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any] | Any],
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._name = name
        self._interval = interval
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop. Calling start twice is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self._name)
        log.debug("periodic_task_started", task=self._name, interval=self._interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        log.debug("periodic_task_stopped", task=self._name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                result = self._callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.error("periodic_task_failed", task=self._name, error=str(exc))
