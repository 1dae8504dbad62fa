"""PriorityHeap — array-backed min-heap of HeapItems keyed by next_run_at.

Remove / update locate their target with a linear scan. The heap holds one
entry per active schedulable template, not one per instance, so n stays in the
hundreds to low thousands. An id → index map kept in step with every swap would
make those O(log n) if that ever stops being true.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable
from dataclasses import replace

from scheduler.models import HeapItem


class PriorityHeap:
    """Min-heap ordered by ``(next_run_at, seq)``.

    ``seq`` is a monotonic counter stamped on every insert and update, so items
    with equal due times come out in the order they were (re)scheduled.
    At most one entry per ``task_uuid`` is live: inserting a uuid that is
    already present replaces the old entry.
    """

    def __init__(self) -> None:
        self._items: list[HeapItem] = []
        self._seq = itertools.count(1)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    # ── Core operations ──────────────────────────────────────────────────────

    def insert(self, item: HeapItem) -> None:
        """Add *item*, replacing any live entry for the same task. O(log n)."""
        idx = self._index_of(item.task_uuid)
        if idx is not None:
            self._remove_at(idx)
        item.seq = next(self._seq)
        self._items.append(item)
        self._sift_up(len(self._items) - 1)

    def peek(self) -> HeapItem | None:
        """Return the earliest item without removing it. O(1)."""
        return self._items[0] if self._items else None

    def extract_min(self) -> HeapItem | None:
        """Remove and return the earliest item. O(log n)."""
        if not self._items:
            return None
        return self._remove_at(0)

    def remove(self, task_uuid: str) -> bool:
        """Drop the entry for *task_uuid*. False when there is none (not an error)."""
        idx = self._index_of(task_uuid)
        if idx is None:
            return False
        self._remove_at(idx)
        return True

    def update(self, task_uuid: str, next_run_at: int) -> bool:
        """Move *task_uuid* to a new due time in place. False when absent."""
        idx = self._index_of(task_uuid)
        if idx is None:
            return False
        item = self._items[idx]
        item.next_run_at = next_run_at
        item.seq = next(self._seq)
        self._fix(idx)
        return True

    def has(self, task_uuid: str) -> bool:
        return self._index_of(task_uuid) is not None

    def find(self, task_uuid: str) -> HeapItem | None:
        idx = self._index_of(task_uuid)
        return replace(self._items[idx]) if idx is not None else None

    def pop_due(self, now: int) -> list[HeapItem]:
        """Pop every item with ``next_run_at <= now``, earliest first."""
        due: list[HeapItem] = []
        while self._items and self._items[0].next_run_at <= now:
            due.append(self._remove_at(0))
        return due

    def clear(self) -> None:
        self._items.clear()

    # ── Bulk helpers ─────────────────────────────────────────────────────────

    @classmethod
    def from_array(cls, items: Iterable[HeapItem]) -> PriorityHeap:
        """Build a heap from *items* in O(n) (Floyd's bottom-up heapify).

        Later duplicates of a task_uuid win, keeping one entry per task.
        """
        heap = cls()
        latest: dict[str, HeapItem] = {}
        for item in items:
            latest.pop(item.task_uuid, None)
            latest[item.task_uuid] = item
        for item in latest.values():
            item.seq = next(heap._seq)
        heap._items = list(latest.values())
        for idx in range(len(heap._items) // 2 - 1, -1, -1):
            heap._sift_down(idx)
        return heap

    def to_array(self) -> list[HeapItem]:
        """Defensive copies of every entry, in heap (not sorted) order."""
        return [replace(item) for item in self._items]

    def is_valid(self) -> bool:
        """Check the heap property for every parent/child pair."""
        items = self._items
        for idx in range(1, len(items)):
            if items[(idx - 1) // 2].sort_key > items[idx].sort_key:
                return False
        return True

    # ── Internal ─────────────────────────────────────────────────────────────

    def _index_of(self, task_uuid: str) -> int | None:
        for idx, item in enumerate(self._items):
            if item.task_uuid == task_uuid:
                return idx
        return None

    def _remove_at(self, idx: int) -> HeapItem:
        items = self._items
        last = items.pop()
        if idx == len(items):
            return last
        removed = items[idx]
        items[idx] = last
        # The moved element may belong above or below its new slot
        self._fix(idx)
        return removed

    def _fix(self, idx: int) -> None:
        if idx > 0 and self._items[idx].sort_key < self._items[(idx - 1) // 2].sort_key:
            self._sift_up(idx)
        else:
            self._sift_down(idx)

    def _sift_up(self, idx: int) -> None:
        items = self._items
        while idx > 0:
            parent = (idx - 1) // 2
            if items[idx].sort_key >= items[parent].sort_key:
                break
            items[idx], items[parent] = items[parent], items[idx]
            idx = parent

    def _sift_down(self, idx: int) -> None:
        items = self._items
        n = len(items)
        while True:
            left = 2 * idx + 1
            right = left + 1
            smallest = idx
            if left < n and items[left].sort_key < items[smallest].sort_key:
                smallest = left
            if right < n and items[right].sort_key < items[smallest].sort_key:
                smallest = right
            if smallest == idx:
                return
            items[idx], items[smallest] = items[smallest], items[idx]
            idx = smallest
