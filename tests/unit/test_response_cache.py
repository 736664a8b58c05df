"""Unit tests for the response cache."""

from __future__ import annotations

from pathlib import Path

import pytest

from signalflow.cache.response import (
    COST_PER_1K_TOKENS,
    EntryType,
    Feedback,
    ResponseCache,
    ResponseKey,
    WarmingPattern,
    estimate_tokens,
)

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------


class _FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_cache(tmp_path: Path | None = None, **kwargs) -> tuple[ResponseCache, _FakeClock]:
    clock = _FakeClock()
    cache = ResponseCache(persist_dir=tmp_path, clock=clock, **kwargs)
    return cache, clock


_KEY = ResponseKey(prompt="classify: invoice overdue", model="m1", temperature=0.2)


# -------------------------------------------------------------------
# Tests
# -------------------------------------------------------------------


class TestResponseKey:
    """Tests for payload hashing."""

    def test_temperature_changes_digest(self) -> None:
        other = ResponseKey(prompt=_KEY.prompt, model="m1", temperature=0.7)
        assert other.digest() != _KEY.digest()

    def test_context_changes_digest(self) -> None:
        other = ResponseKey(prompt=_KEY.prompt, model="m1", temperature=0.2, context="x")
        assert other.digest() != _KEY.digest()

    def test_estimate_tokens_rounds_up(self) -> None:
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0


class TestGetPut:
    """Tests for tiered TTLs and hit accounting."""

    def test_put_then_get(self) -> None:
        cache, _ = _make_cache()
        digest = cache.put(_KEY, "response text", entry_type="decision")
        assert digest == _KEY.digest()
        assert cache.get(_KEY) == "response text"

    def test_tiered_ttl(self) -> None:
        cache, clock = _make_cache(classification_ttl=100, decision_ttl=10)
        decision_key = ResponseKey("decide", "m1", 0.2)
        cache.put(_KEY, "c", entry_type=EntryType.CLASSIFICATION)
        cache.put(decision_key, "d", entry_type=EntryType.DECISION)

        clock.now += 50
        assert cache.get(_KEY) == "c"
        assert cache.get(decision_key) is None

    def test_explicit_ttl_wins(self) -> None:
        cache, clock = _make_cache()
        cache.put(_KEY, "x", ttl=1)
        clock.now += 2
        assert cache.get(_KEY) is None

    def test_savings_accounting(self) -> None:
        cache, _ = _make_cache()
        cache.put(_KEY, "a" * 400)
        cache.get(_KEY)
        cache.get(_KEY)
        cache.get(ResponseKey("unknown", "m1", 0.2))

        stats = cache.stats()
        assert stats["total_hits"] == 2
        assert stats["total_misses"] == 1
        assert stats["total_tokens_saved"] == 200
        assert stats["estimated_cost_saved"] == pytest.approx(200 / 1000 * COST_PER_1K_TOKENS)

        efficiency = cache.efficiency()
        assert efficiency["api_calls_avoided"] == 2
        assert efficiency["time_saved_ms"] == 4000.0
        assert 0 <= efficiency["efficiency_score"] <= 100

    def test_max_size_evicts_least_used(self) -> None:
        cache, _ = _make_cache(max_entries=2)
        hot = ResponseKey("hot", "m1", 0.2)
        cache.put(hot, "h")
        cache.get(hot)
        cache.put(ResponseKey("cold", "m1", 0.2), "c")
        cache.put(ResponseKey("new", "m1", 0.2), "n")

        assert len(cache) == 2
        assert cache.get(hot) == "h"
        assert cache.get(ResponseKey("cold", "m1", 0.2)) is None

    def test_put_survives_when_all_entries_are_hot(self) -> None:
        cache, clock = _make_cache(max_entries=2)
        first = ResponseKey("first", "m1", 0.2)
        second = ResponseKey("second", "m1", 0.2)
        cache.put(first, "1")
        cache.put(second, "2")
        clock.now += 1
        cache.get(first)
        clock.now += 1
        cache.get(second)

        digest = cache.put(_KEY, "fresh")

        assert len(cache) == 2
        assert digest == _KEY.digest()
        assert cache.get(_KEY) == "fresh"
        assert cache.get(first) is None
        assert cache.get(second) == "2"

    def test_clear_expired(self) -> None:
        cache, clock = _make_cache()
        cache.put(_KEY, "x", ttl=1)
        cache.put(ResponseKey("other", "m1", 0.2), "y", ttl=100)
        clock.now += 5
        assert cache.clear_expired() == 1
        assert cache.stats()["expired_entries"] == 0


class TestInvalidation:
    """Tests for explicit and feedback-driven invalidation."""

    def test_invalidate_by_signal_and_source(self) -> None:
        cache, _ = _make_cache()
        cache.put(ResponseKey("a", "m", 0.0), "1", signal_id="s1", source="email")
        cache.put(ResponseKey("b", "m", 0.0), "2", signal_id="s1", source="slack")
        cache.put(ResponseKey("c", "m", 0.0), "3", signal_id="s2", source="email")

        assert cache.invalidate_by_signal("s1") == 2
        assert cache.invalidate_by_source("email") == 1
        assert len(cache) == 0

    def test_correct_feedback_keeps_entry(self) -> None:
        cache, _ = _make_cache()
        cache.put(_KEY, "x")
        assert not cache.mark_feedback(_KEY, Feedback.CORRECT)
        assert cache.get(_KEY) == "x"

    def test_incorrect_feedback_removes_entry_and_file(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=2)
        cache.put(_KEY, "wrong answer")
        cache.get(_KEY)
        cache.get(_KEY)
        assert cache.is_persisted(_KEY)

        assert cache.mark_feedback(_KEY, "incorrect")

        assert cache.get(_KEY) is None
        assert not cache.is_persisted(_KEY)

    def test_feedback_on_unknown_key(self) -> None:
        cache, _ = _make_cache()
        assert not cache.mark_feedback(_KEY, "incorrect")


class TestPersistence:
    """Tests for hot-entry persistence and loading."""

    def test_hot_entry_persisted_once_threshold_reached(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=3)
        cache.put(_KEY, "x")
        cache.get(_KEY)
        cache.get(_KEY)
        assert not cache.is_persisted(_KEY)
        cache.get(_KEY)
        assert cache.is_persisted(_KEY)

    def test_load_restores_live_entries(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=1)
        cache.put(_KEY, "persisted", signal_id="s1", entry_type="classification")
        cache.get(_KEY)

        restored, _ = _make_cache(tmp_path)
        assert restored.load() == 1
        assert restored.get(_KEY) == "persisted"

    def test_load_skips_expired(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=1)
        cache.put(_KEY, "stale", ttl=10)
        cache.get(_KEY)

        restored, clock = _make_cache(tmp_path)
        clock.now += 60
        assert restored.load() == 0

    def test_load_skips_corrupt_files(self, tmp_path: Path) -> None:
        (tmp_path / "broken.json").write_text("{")
        cache, _ = _make_cache(tmp_path)
        assert cache.load() == 0

    def test_persistence_disabled(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=1, persistence=False)
        cache.put(_KEY, "x")
        cache.get(_KEY)
        assert not cache.is_persisted(_KEY)
        assert cache.save_hot() == 0

    async def test_shutdown_saves_hot_entries(self, tmp_path: Path) -> None:
        cache, _ = _make_cache(tmp_path, hot_threshold=2)
        cache.start(60)
        cache.put(_KEY, "x")
        cache.get(_KEY)
        cache.get(_KEY)
        (tmp_path / f"{_KEY.digest()}.json").unlink()

        await cache.shutdown()

        assert cache.is_persisted(_KEY)


class TestWarming:
    """Tests for cache warming."""

    def test_warm_seeds_precomputed_patterns(self) -> None:
        cache, _ = _make_cache()
        cache.add_warming_pattern(
            WarmingPattern(
                id="p1",
                prompt_template=_KEY.prompt,
                model="m1",
                temperature=0.2,
                precomputed_response='{"category": "finance"}',
            )
        )
        cache.add_warming_pattern(
            WarmingPattern(id="p2", prompt_template="x", model="m1", temperature=0.2)
        )

        assert cache.warm() == 1
        assert cache.get(_KEY) == '{"category": "finance"}'

    def test_warming_disabled(self) -> None:
        cache, _ = _make_cache(warming=False)
        cache.add_warming_pattern(
            WarmingPattern(
                id="p1", prompt_template="x", model="m", temperature=0.0, precomputed_response="y"
            )
        )
        assert cache.warm() == 0
