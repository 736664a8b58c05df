"""Classification cache: content-hash keyed LRU with TTL and a JSON snapshot.

Keys are SHA-256 digests over ``subject|body|sender``. Entries expire lazily
on read and proactively via ``sweep()``. The snapshot is a single JSON
document ``{version, savedAt, entries, stats}``; it is written only when the
cache changed since the last save, and ``shutdown()`` always attempts one.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from signalflow.cache.lru import CacheEntry, LRUIndex
from signalflow.constants import CLASSIFICATION_SNAPSHOT_VERSION
from signalflow.logging import get_logger
from signalflow.models import Classification, Signal
from signalflow.utils import PeriodicTask, stable_hash

if TYPE_CHECKING:
    from signalflow.config import Settings

log = get_logger("signalflow.cache.classification")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


class ClassificationCache:
    """LRU + TTL cache of classifications keyed by signal content."""

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        ttl: float = 3600.0,
        snapshot_path: str | Path | None = None,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._max_entries = max_entries
        self._default_ttl = ttl
        self._path = Path(snapshot_path) if snapshot_path else None
        self._sweep_interval = sweep_interval
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: LRUIndex[CacheEntry] = LRUIndex()
        self._dirty = False
        self._sweeper: PeriodicTask | None = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._last_sweep = clock()

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassificationCache:
        return cls(
            max_entries=settings.classification_cache_max_entries,
            ttl=settings.classification_cache_ttl,
            snapshot_path=settings.classification_cache_path,
            sweep_interval=settings.cache_sweep_interval,
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def make_key(subject: str | None, body: str, sender: str | None) -> str:
        return stable_hash(subject or "", body, sender or "")

    def key_for(self, signal: Signal) -> str:
        return self.make_key(signal.subject, signal.body, signal.sender)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def get(self, key: str) -> Classification | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                log.debug("classification_cache_miss", key=key[:8])
                return None

            if entry.is_expired(now):
                self._entries.remove(key)
                self._expirations += 1
                self._misses += 1
                self._dirty = True
                log.debug(
                    "classification_cache_expired",
                    key=key[:8],
                    age_seconds=round(now - entry.created_at, 3),
                )
                return None

            entry.touch(now)
            self._entries.promote(key)
            self._hits += 1
            self._dirty = True
            log.debug("classification_cache_hit", key=key[:8], hit_count=entry.hit_count)
            return entry.value

    def set(self, key: str, value: Classification, ttl: float | None = None) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                evicted = self._entries.pop_lru()
                if evicted is not None:
                    self._evictions += 1
                    log.debug("classification_cache_evicted", key=evicted[0][:8])
            self._entries.put(
                key,
                CacheEntry(
                    key=key,
                    value=value,
                    created_at=now,
                    ttl=self._default_ttl if ttl is None else ttl,
                    last_accessed_at=now,
                ),
            )
            self._dirty = True

    def has(self, key: str) -> bool:
        """Membership test that does not count as an access."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(now):
                self._entries.remove(key)
                self._expirations += 1
                self._dirty = True
                return False
            return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.remove(key) is not None
            if removed:
                self._dirty = True
                log.info("classification_cache_invalidated", key=key[:8])
            return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._dirty = True
        log.info("classification_cache_cleared", removed=count)
        return count

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._entries.remove(key)
            self._expirations += len(expired)
            self._last_sweep = now
            if expired:
                self._dirty = True
        if expired:
            log.info("classification_cache_swept", removed=len(expired), remaining=len(self))
        return len(expired)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = self._hits + self._misses
            ages = [now - e.created_at for e in self._entries.values()]
            return {
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
                "entry_count": len(self._entries),
                "max_entries": self._max_entries,
                "total_operations": total,
                "avg_entry_age": sum(ages) / len(ages) if ages else 0.0,
                "eviction_count": self._evictions,
                "expiration_count": self._expirations,
                "last_sweep": _iso(self._last_sweep),
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._expirations = 0
        log.info("classification_cache_stats_reset")

    # ------------------------------------------------------------------
    # Snapshot persistence
    # ------------------------------------------------------------------

    def _snapshot(self) -> dict[str, Any]:
        entries = [
            {
                "key": e.key,
                "value": e.value.model_dump(mode="json"),
                "createdAt": int(e.created_at * 1000),
                "lastAccessedAt": int(e.last_accessed_at * 1000),
                "ttl": int(e.ttl * 1000),
                "hitCount": e.hit_count,
            }
            for e in self._entries.values()
        ]
        return {
            "version": CLASSIFICATION_SNAPSHOT_VERSION,
            "savedAt": _iso(self._clock()),
            "entries": entries,
            "stats": {
                "hitCount": self._hits,
                "missCount": self._misses,
                "evictionCount": self._evictions,
                "expirationCount": self._expirations,
                "lastCleanup": _iso(self._last_sweep),
            },
        }

    def save_snapshot(self, *, force: bool = False) -> bool:
        """Write the snapshot if anything changed. Returns True if written."""
        if self._path is None:
            return False
        with self._lock:
            if not self._dirty and not force:
                log.debug("classification_snapshot_unchanged")
                return False
            data = self._snapshot()
            self._dirty = False

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as exc:
            with self._lock:
                self._dirty = True
            log.error("classification_snapshot_save_failed", path=str(self._path), error=str(exc))
            return False

        log.info(
            "classification_snapshot_saved", entries=len(data["entries"]), path=str(self._path)
        )
        return True

    def load_snapshot(self) -> int:
        """Load the snapshot, discarding expired entries. Returns entries loaded."""
        if self._path is None or not self._path.exists():
            log.info("classification_snapshot_missing", path=str(self._path))
            return 0

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.error("classification_snapshot_load_failed", path=str(self._path), error=str(exc))
            return 0

        now = self._clock()
        loaded = 0
        expired = 0
        with self._lock:
            for raw in data.get("entries", []):
                try:
                    entry = CacheEntry(
                        key=raw["key"],
                        value=Classification.model_validate(raw["value"]),
                        created_at=raw["createdAt"] / 1000,
                        ttl=raw["ttl"] / 1000,
                        last_accessed_at=raw.get("lastAccessedAt", raw["createdAt"]) / 1000,
                        hit_count=raw.get("hitCount", 0),
                    )
                except (KeyError, TypeError, ValidationError) as exc:
                    log.warning("classification_snapshot_entry_invalid", error=str(exc))
                    continue
                if entry.is_expired(now):
                    expired += 1
                    continue
                if len(self._entries) >= self._max_entries and entry.key not in self._entries:
                    self._entries.pop_lru()
                    self._evictions += 1
                self._entries.put(entry.key, entry)
                loaded += 1

            stats = data.get("stats") or {}
            self._hits = stats.get("hitCount", self._hits)
            self._misses = stats.get("missCount", self._misses)
            self._evictions = stats.get("evictionCount", self._evictions)
            self._expirations = stats.get("expirationCount", self._expirations)

        log.info(
            "classification_snapshot_loaded",
            loaded=loaded,
            expired=expired,
            path=str(self._path),
        )
        return loaded

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _periodic(self) -> None:
        self.sweep()
        await asyncio.to_thread(self.save_snapshot)

    def start(self) -> None:
        """Start the background sweep (which also persists changes)."""
        if self._sweeper is None:
            self._sweeper = PeriodicTask(
                "classification-cache-sweep", self._sweep_interval, self._periodic
            )
        self._sweeper.start()

    async def stop(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()

    async def shutdown(self) -> None:
        """Stop sweeping and write a final snapshot."""
        await self.stop()
        self.save_snapshot()
        log.info("classification_cache_shutdown", entries=len(self))
