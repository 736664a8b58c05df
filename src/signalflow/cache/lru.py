"""Hash index plus intrusive doubly linked list for O(1) LRU bookkeeping.

The list runs from least recently used (head) to most recently used
(tail). ``LRUIndex`` is not thread-safe; callers hold their own lock.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry:
    """A cached value plus its bookkeeping. Times are clock seconds."""

    key: str
    value: Any
    created_at: float
    ttl: float
    last_accessed_at: float
    hit_count: int = 0
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl

    def touch(self, now: float) -> None:
        self.hit_count += 1
        self.last_accessed_at = now


class _Node(Generic[V]):
    __slots__ = ("key", "value", "prev", "next")

    def __init__(self, key: str, value: V) -> None:
        self.key = key
        self.value = value
        self.prev: _Node[V] | None = None
        self.next: _Node[V] | None = None


class LRUIndex(Generic[V]):
    """Ordered mapping with explicit promote and evict operations."""

    def __init__(self) -> None:
        self._index: dict[str, _Node[V]] = {}
        self._head: _Node[V] | None = None
        self._tail: _Node[V] | None = None

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def get(self, key: str) -> V | None:
        node = self._index.get(key)
        return node.value if node is not None else None

    def put(self, key: str, value: V) -> None:
        """Insert or replace ``key`` at the most recently used end."""
        node = self._index.get(key)
        if node is not None:
            node.value = value
            self._unlink(node)
        else:
            node = _Node(key, value)
            self._index[key] = node
        self._append(node)

    def promote(self, key: str) -> bool:
        node = self._index.get(key)
        if node is None:
            return False
        if node is not self._tail:
            self._unlink(node)
            self._append(node)
        return True

    def remove(self, key: str) -> V | None:
        node = self._index.pop(key, None)
        if node is None:
            return None
        self._unlink(node)
        return node.value

    def pop_lru(self) -> tuple[str, V] | None:
        node = self._head
        if node is None:
            return None
        del self._index[node.key]
        self._unlink(node)
        return node.key, node.value

    def peek_lru(self) -> str | None:
        return self._head.key if self._head is not None else None

    def clear(self) -> None:
        self._index.clear()
        self._head = None
        self._tail = None

    def keys(self) -> list[str]:
        return [key for key, _ in self.items()]

    def values(self) -> list[V]:
        return [value for _, value in self.items()]

    def items(self) -> Iterator[tuple[str, V]]:
        """Iterate from least to most recently used."""
        node = self._head
        while node is not None:
            nxt = node.next
            yield node.key, node.value
            node = nxt

    # ------------------------------------------------------------------
    # Linked list plumbing
    # ------------------------------------------------------------------

    def _append(self, node: _Node[V]) -> None:
        node.prev = self._tail
        node.next = None
        if self._tail is not None:
            self._tail.next = node
        self._tail = node
        if self._head is None:
            self._head = node

    def _unlink(self, node: _Node[V]) -> None:
        if node.prev is not None:
            node.prev.next = node.next
        else:
            self._head = node.next
        if node.next is not None:
            node.next.prev = node.prev
        else:
            self._tail = node.prev
        node.prev = None
        node.next = None
