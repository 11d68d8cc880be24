"""
Fixed-capacity ring buffers, one per feed category.

Insertion order is kept oldest-first internally; reads come back newest-first.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar

from whalefeed.models import Category

T = TypeVar("T")

DEFAULT_CAPACITY = 200


class RingBuffer(Generic[T]):
    """Insertion-ordered store that drops the oldest entry on overflow."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._items: deque[T] = deque()

    def push(self, item: T) -> None:
        self._items.append(item)
        while len(self._items) > self.capacity:
            self._items.popleft()

    def recent(self, n: int) -> List[T]:
        """Last ``n`` pushed items, most recent first."""
        if n <= 0:
            return []
        n = min(n, len(self._items))
        return [self._items[-i] for i in range(1, n + 1)]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))


class RingBufferStore:
    """Per-category ring buffers sharing one capacity setting."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        categories: Optional[Iterable[Category]] = None,
    ):
        self.capacity = capacity
        self._buffers: Dict[Category, RingBuffer[Any]] = {
            category: RingBuffer(capacity) for category in (categories or Category)
        }

    def buffer(self, category: Category) -> RingBuffer[Any]:
        return self._buffers[category]

    def push(self, category: Category, item: Any) -> None:
        self._buffers[category].push(item)

    def recent(self, category: Category, n: int) -> List[Any]:
        return self._buffers[category].recent(n)

    def size(self, category: Category) -> int:
        return len(self._buffers[category])

    def sizes(self) -> Dict[str, int]:
        return {category.value: len(buf) for category, buf in self._buffers.items()}
