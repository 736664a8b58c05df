"""Unit tests for the utils module.

Tests the timed_operation async context manager, the hashing and id
helpers, and the PeriodicTask background loop.
"""

import asyncio
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from signalflow.utils import (
    PeriodicTask,
    ensure_utc,
    new_id,
    stable_hash,
    timed_operation,
    utcnow,
)


class TestTimedOperation:
    """Tests for the timed_operation async context manager."""

    async def test_yields_dict_with_elapsed_ms(self) -> None:
        """timed_operation should yield a dict that gets populated with elapsed_ms."""
        async with timed_operation("test_op") as timing:
            await asyncio.sleep(0.01)

        assert "elapsed_ms" in timing
        assert isinstance(timing["elapsed_ms"], float)
        assert timing["elapsed_ms"] > 0

    async def test_dict_is_empty_inside_context(self) -> None:
        """The yielded dict should be empty while inside the context block."""
        async with timed_operation("test_op") as timing:
            assert "elapsed_ms" not in timing

    async def test_log_debug_called_when_log_provided(self) -> None:
        """When a log is provided, log.debug should be called with timing data."""
        mock_log = MagicMock()

        async with timed_operation("stage_classify", log=mock_log, signal_id="s-1") as timing:
            await asyncio.sleep(0.01)

        mock_log.debug.assert_called_once()
        call_args = mock_log.debug.call_args
        assert call_args[0][0] == "stage_classify"
        assert call_args[1]["duration_ms"] == timing["elapsed_ms"]
        assert call_args[1]["signal_id"] == "s-1"

    async def test_elapsed_recorded_when_block_raises(self) -> None:
        """elapsed_ms should be set even if the block raises."""
        timing: dict = {}
        with pytest.raises(RuntimeError):
            async with timed_operation("failing") as timing:
                raise RuntimeError("boom")

        assert "elapsed_ms" in timing


class TestHelpers:
    """Tests for stable_hash, new_id and utcnow."""

    def test_stable_hash_is_deterministic(self) -> None:
        assert stable_hash("a", "b") == stable_hash("a", "b")
        assert len(stable_hash("a")) == 64

    def test_stable_hash_separates_parts(self) -> None:
        """Joining with a separator keeps ('ab', 'c') distinct from ('a', 'bc')."""
        assert stable_hash("ab", "c") != stable_hash("a", "bc")

    def test_stable_hash_treats_none_as_empty(self) -> None:
        assert stable_hash(None, "x") == stable_hash("", "x")

    def test_new_id_has_prefix_and_is_unique(self) -> None:
        first = new_id("pub")
        second = new_id("pub")
        assert first.startswith("pub-")
        assert first != second

    def test_utcnow_is_aware(self) -> None:
        assert utcnow().tzinfo is UTC

    def test_ensure_utc_marks_naive_values(self) -> None:
        assert ensure_utc(datetime(2026, 3, 2, 9)) == datetime(2026, 3, 2, 9, tzinfo=UTC)

    def test_ensure_utc_keeps_aware_offset(self) -> None:
        plus_two = datetime(2026, 3, 2, 9, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(plus_two) is plus_two


class TestPeriodicTask:
    """Tests for the PeriodicTask background loop."""

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError, match="interval"):
            PeriodicTask("bad", 0, lambda: None)

    async def test_runs_callback_repeatedly(self) -> None:
        calls: list[int] = []
        task = PeriodicTask("counter", 0.01, lambda: calls.append(1))
        task.start()
        assert task.running
        await asyncio.sleep(0.06)
        await task.stop()

        assert len(calls) >= 2
        assert not task.running

    async def test_awaits_coroutine_callbacks(self) -> None:
        calls: list[int] = []

        async def _tick() -> None:
            calls.append(1)

        task = PeriodicTask("async-counter", 0.01, _tick)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert calls

    async def test_failures_do_not_stop_the_loop(self) -> None:
        calls: list[int] = []

        def _flaky() -> None:
            calls.append(1)
            raise RuntimeError("transient")

        task = PeriodicTask("flaky", 0.01, _flaky)
        task.start()
        await asyncio.sleep(0.06)
        await task.stop()

        assert len(calls) >= 2

    async def test_stop_without_start_is_noop(self) -> None:
        task = PeriodicTask("idle", 1.0, lambda: None)
        await task.stop()
        assert not task.running
