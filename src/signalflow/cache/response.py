"""Response cache for raw oracle responses.

Keys are SHA-256 digests over ``prompt|model|temperature|context``. TTLs are
tiered by entry type. Entries that reach the hot threshold are persisted as
one JSON file per key so that restarts keep proven responses. Incorrect
feedback invalidates an entry immediately, including its file on disk.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from signalflow.cache.lru import CacheEntry
from signalflow.logging import get_logger
from signalflow.utils import PeriodicTask, stable_hash

if TYPE_CHECKING:
    from signalflow.config import Settings

log = get_logger("signalflow.cache.response")

CHARS_PER_TOKEN = 4
COST_PER_1K_TOKENS = 0.002
AVG_ORACLE_RESPONSE_MS = 2000.0
EXPIRED_SWEEP_INTERVAL = 300.0


class EntryType(StrEnum):
    CLASSIFICATION = "classification"
    DECISION = "decision"
    OTHER = "other"


class Feedback(StrEnum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    MODIFIED = "modified"


@dataclass(frozen=True)
class ResponseKey:
    """The instructive payload a response was produced for."""

    prompt: str
    model: str
    temperature: float
    context: str | None = None

    def digest(self) -> str:
        return stable_hash(self.prompt, self.model, self.temperature, self.context or "")


@dataclass
class WarmingPattern:
    """A known high-frequency prompt with a precomputed response."""

    id: str
    prompt_template: str
    model: str
    temperature: float
    priority: int = 5
    type: str = "common_signal"
    precomputed_response: str | None = None


def estimate_tokens(text: str) -> int:
    return -(-len(text) // CHARS_PER_TOKEN)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


def _ts(raw: str) -> float:
    return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()


class ResponseCache:
    """Hash-keyed cache of oracle responses with hot-entry persistence."""

    def __init__(
        self,
        *,
        persist_dir: str | Path | None = None,
        classification_ttl: float = 3600.0,
        decision_ttl: float = 1800.0,
        default_ttl: float = 3600.0,
        max_entries: int = 10000,
        hot_threshold: int = 5,
        persistence: bool = True,
        warming: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dir = Path(persist_dir) if persist_dir else None
        self._ttls = {
            EntryType.CLASSIFICATION: classification_ttl,
            EntryType.DECISION: decision_ttl,
            EntryType.OTHER: default_ttl,
        }
        self._max_entries = max_entries
        self._hot_threshold = hot_threshold
        self._persistence = persistence and self._dir is not None
        self._warming = warming
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._patterns: list[WarmingPattern] = []
        self._sweeper: PeriodicTask | None = None

        self._hits = 0
        self._misses = 0
        self._tokens_saved = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> ResponseCache:
        return cls(
            persist_dir=settings.response_cache_dir,
            classification_ttl=settings.response_cache_classification_ttl,
            decision_ttl=settings.response_cache_decision_ttl,
            default_ttl=settings.response_cache_default_ttl,
            max_entries=settings.response_cache_max_entries,
            hot_threshold=settings.response_cache_hot_threshold,
            persistence=settings.response_cache_persistence,
            warming=settings.response_cache_warming,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def ttl_for(self, entry_type: EntryType | str) -> float:
        return self._ttls[EntryType(entry_type)]

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def put(
        self,
        key: ResponseKey,
        response: str,
        *,
        entry_type: EntryType | str = EntryType.OTHER,
        ttl: float | None = None,
        signal_id: str | None = None,
        source: str | None = None,
    ) -> str:
        """Cache a response. Returns the digest key.

        When the cache is full the new entry stays and the least used older
        entry is evicted, even if every older entry has been read.
        """
        digest = key.digest()
        entry_type = EntryType(entry_type)
        now = self._clock()
        entry = CacheEntry(
            key=digest,
            value=response,
            created_at=now,
            ttl=ttl if ttl is not None else self.ttl_for(entry_type),
            last_accessed_at=now,
            extras={
                "entry_type": entry_type,
                "estimated_tokens": estimate_tokens(response),
                "signal_id": signal_id,
                "source": source,
                "feedback": None,
            },
        )
        with self._lock:
            self._entries[digest] = entry
            self._enforce_max_size(keep=digest)
        log.debug(
            "response_cached",
            key=digest[:16],
            entry_type=str(entry_type),
            ttl=entry.ttl,
            tokens=entry.extras["estimated_tokens"],
        )
        return digest

    def get(self, key: ResponseKey) -> str | None:
        digest = key.digest()
        now = self._clock()
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[digest]
                self._misses += 1
                log.debug("response_cache_expired", key=digest[:16])
                return None
            entry.touch(now)
            self._hits += 1
            self._tokens_saved += entry.extras["estimated_tokens"]
            became_hot = entry.hit_count == self._hot_threshold

        if became_hot and self._persistence:
            self._persist(entry)
        return entry.value

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, key: ResponseKey) -> bool:
        return self._invalidate_digest(key.digest())

    def _invalidate_digest(self, digest: str) -> bool:
        with self._lock:
            removed = self._entries.pop(digest, None) is not None
        self._unlink(digest)
        if removed:
            log.info("response_cache_invalidated", key=digest[:16])
        return removed

    def _invalidate_where(self, field_name: str, value: str) -> int:
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.extras.get(field_name) == value]
            for digest in doomed:
                del self._entries[digest]
        for digest in doomed:
            self._unlink(digest)
        return len(doomed)

    def invalidate_by_signal(self, signal_id: str) -> int:
        count = self._invalidate_where("signal_id", signal_id)
        if count:
            log.info("response_cache_invalidated_by_signal", signal_id=signal_id, count=count)
        return count

    def invalidate_by_source(self, source: str) -> int:
        count = self._invalidate_where("source", source)
        if count:
            log.info("response_cache_invalidated_by_source", source=source, count=count)
        return count

    def mark_feedback(self, key: ResponseKey, status: Feedback | str) -> bool:
        """Record feedback. Returns True if the entry was invalidated."""
        status = Feedback(status)
        digest = key.digest()
        with self._lock:
            entry = self._entries.get(digest)
            if entry is None:
                return False
            entry.extras["feedback"] = status
        if status is Feedback.INCORRECT:
            log.info("response_cache_incorrect_feedback", key=digest[:16])
            return self._invalidate_digest(digest)
        return False

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.info("response_cache_cleared", removed=count)
        return count

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for digest in expired:
                del self._entries[digest]
        if expired:
            log.info("response_cache_expired_cleared", count=len(expired))
        return len(expired)

    def _enforce_max_size(self, keep: str | None = None) -> None:
        # Caller holds the lock; ``keep`` is never evicted
        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        victims = sorted(
            (e for e in self._entries.values() if e.key != keep),
            key=lambda e: (e.hit_count, e.last_accessed_at),
        )[:overflow]
        for entry in victims:
            del self._entries[entry.key]
        self._evictions += len(victims)
        log.info("response_cache_size_enforced", removed=len(victims), size=len(self._entries))

    # ------------------------------------------------------------------
    # Warming
    # ------------------------------------------------------------------

    def add_warming_pattern(self, pattern: WarmingPattern) -> None:
        self._patterns.append(pattern)
        self._patterns.sort(key=lambda p: p.priority, reverse=True)
        log.debug("warming_pattern_added", pattern_id=pattern.id, priority=pattern.priority)

    def warm(self) -> int:
        """Seed precomputed responses, highest priority first."""
        if not self._warming:
            log.info("response_cache_warming_disabled")
            return 0
        warmed = 0
        for pattern in self._patterns:
            if pattern.precomputed_response is None:
                continue
            self.put(
                ResponseKey(pattern.prompt_template, pattern.model, pattern.temperature),
                pattern.precomputed_response,
                entry_type=EntryType.CLASSIFICATION,
            )
            warmed += 1
        log.info("response_cache_warmed", entries=warmed, patterns=len(self._patterns))
        return warmed

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _file_for(self, digest: str) -> Path | None:
        if self._dir is None:
            return None
        return self._dir / f"{digest}.json"

    def _serialize(self, entry: CacheEntry) -> dict[str, Any]:
        extras = entry.extras
        return {
            "key": entry.key,
            "response": entry.value,
            "cachedAt": _iso(entry.created_at),
            "expiresAt": _iso(entry.expires_at),
            "hitCount": entry.hit_count,
            "lastAccessedAt": _iso(entry.last_accessed_at),
            "estimatedTokens": extras["estimated_tokens"],
            "type": str(extras["entry_type"]),
            "signalId": extras.get("signal_id"),
            "source": extras.get("source"),
            "feedbackStatus": extras.get("feedback"),
        }

    def _deserialize(self, raw: dict[str, Any]) -> CacheEntry:
        created = _ts(raw["cachedAt"])
        feedback = raw.get("feedbackStatus")
        return CacheEntry(
            key=raw["key"],
            value=raw["response"],
            created_at=created,
            ttl=_ts(raw["expiresAt"]) - created,
            last_accessed_at=_ts(raw.get("lastAccessedAt") or raw["cachedAt"]),
            hit_count=int(raw.get("hitCount", 0)),
            extras={
                "entry_type": EntryType(raw.get("type", EntryType.OTHER)),
                "estimated_tokens": int(
                    raw.get("estimatedTokens") or estimate_tokens(raw["response"])
                ),
                "signal_id": raw.get("signalId"),
                "source": raw.get("source"),
                "feedback": Feedback(feedback) if feedback else None,
            },
        )

    def _persist(self, entry: CacheEntry) -> bool:
        path = self._file_for(entry.key)
        if path is None:
            return False
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self._serialize(entry), indent=2), encoding="utf-8")
        except OSError as exc:
            log.error("response_cache_persist_failed", key=entry.key[:16], error=str(exc))
            return False
        log.debug("response_cache_entry_persisted", key=entry.key[:16], hit_count=entry.hit_count)
        return True

    def _unlink(self, digest: str) -> None:
        path = self._file_for(digest)
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            log.warning("response_cache_unlink_failed", key=digest[:16], error=str(exc))

    def is_persisted(self, key: ResponseKey) -> bool:
        path = self._file_for(key.digest())
        return path is not None and path.exists()

    def load(self) -> int:
        """Load persisted hot entries that have not expired."""
        if not self._persistence or self._dir is None:
            return 0
        if not self._dir.is_dir():
            return 0

        now = self._clock()
        loaded = 0
        for path in sorted(self._dir.glob("*.json")):
            try:
                entry = self._deserialize(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log.warning("response_cache_entry_load_failed", file=path.name, error=str(exc))
                continue
            if entry.is_expired(now):
                continue
            with self._lock:
                self._entries[entry.key] = entry
            loaded += 1

        with self._lock:
            self._enforce_max_size()
        log.info("response_cache_loaded", entries=loaded)
        return loaded

    def save_hot(self) -> int:
        """Persist every live entry at or above the hot threshold."""
        if not self._persistence:
            return 0
        now = self._clock()
        with self._lock:
            hot = [
                e
                for e in self._entries.values()
                if e.hit_count >= self._hot_threshold and not e.is_expired(now)
            ]
        saved = sum(1 for entry in hot if self._persist(entry))
        log.info("response_cache_hot_saved", entries=saved)
        return saved

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _size_bytes(self) -> int:
        return sum(len(json.dumps(self._serialize(e))) for e in self._entries.values())

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            active = [e for e in self._entries.values() if not e.is_expired(now)]
            total_requests = self._hits + self._misses
            return {
                "total_hits": self._hits,
                "total_misses": self._misses,
                "hit_rate": self._hits / total_requests if total_requests else 0.0,
                "total_entries": len(self._entries),
                "active_entries": len(active),
                "expired_entries": len(self._entries) - len(active),
                "total_tokens_saved": self._tokens_saved,
                "estimated_cost_saved": self._tokens_saved / 1000 * COST_PER_1K_TOKENS,
                "cache_size_bytes": self._size_bytes(),
                "hot_entries": sum(
                    1 for e in self._entries.values() if e.hit_count >= self._hot_threshold
                ),
                "avg_hit_count": (
                    sum(e.hit_count for e in self._entries.values()) / len(active)
                    if active
                    else 0.0
                ),
                "evictions": self._evictions,
            }

    def efficiency(self) -> dict[str, Any]:
        """Hit rate, savings and a 0-100 efficiency score."""
        stats = self.stats()
        memory_mb = stats["cache_size_bytes"] / (1024 * 1024)
        score = (
            stats["hit_rate"] * 50
            + min(stats["estimated_cost_saved"] / 10, 1.0) * 30
            + max(0.0, min(1 - memory_mb / 100, 1.0)) * 20
        )
        return {
            "hit_rate": stats["hit_rate"],
            "tokens_saved": stats["total_tokens_saved"],
            "cost_saved": stats["estimated_cost_saved"],
            "api_calls_avoided": self._hits,
            "time_saved_ms": self._hits * AVG_ORACLE_RESPONSE_MS,
            "memory_usage_mb": memory_mb,
            "efficiency_score": min(100.0, score),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval: float = EXPIRED_SWEEP_INTERVAL) -> None:
        if self._sweeper is None:
            self._sweeper = PeriodicTask("response-cache-sweep", interval, self.clear_expired)
        self._sweeper.start()

    async def stop(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()

    async def shutdown(self) -> None:
        await self.stop()
        self.save_hot()
