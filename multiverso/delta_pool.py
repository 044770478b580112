"""A producer/consumer pool of parameter deltas handed over in batches."""

from __future__ import annotations

import enum
import threading
from collections import deque
from collections.abc import Iterator
from typing import Any, NamedTuple

__all__ = [
    "DeltaType",
    "Delta",
    "DeltaPool",
    "DELTA_ARRAY_SIZE",
    "DELTA_POOL_CAPACITY",
]

DELTA_ARRAY_SIZE = 4096
"""Number of deltas held by one batch."""

DELTA_POOL_CAPACITY = 256
"""Number of batches owned by one pool."""


class DeltaType(enum.IntEnum):
    """Control signals carried in the row field of a delta."""

    FLUSH = -1
    CLOCK = -2


class Delta(NamedTuple):
    table: int
    row: int
    col: int
    value: Any = None


def _needs_flush(row) -> bool:
    return row in (DeltaType.FLUSH, DeltaType.CLOCK)


class _BlockingQueue:
    """A FIFO whose pop blocks until an item arrives or the queue is exited."""

    def __init__(self):
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._exited = False

    def push(self, item) -> None:
        with self._cond:
            self._items.append(item)
            self._cond.notify()

    def pop(self):
        """Return the next item, or None once exited and drained."""
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._exited)
            return self._items.popleft() if self._items else None

    def exit(self) -> None:
        with self._cond:
            self._exited = True
            self._cond.notify_all()


class _Batch:
    """A fixed-size FIFO of deltas, filled once and then read once."""

    def __init__(self, size):
        self._size = size
        self._entries: list[Delta] = []
        self._head = 0

    def push(self, delta: Delta) -> bool:
        if len(self._entries) >= self._size:
            return False
        self._entries.append(delta)
        return True

    def pop(self) -> Delta | None:
        if self._head >= len(self._entries):
            return None
        delta = self._entries[self._head]
        self._head += 1
        return delta

    def clear(self) -> None:
        self._entries = []
        self._head = 0


class DeltaPool:
    """Collects deltas from several producers for a single consumer.

    Each producer fills its own batch; a batch reaches the consumer when it
    is full or when a flush or clock signal is pushed into it.
    """

    def __init__(
        self,
        num_producer,
        capacity=DELTA_POOL_CAPACITY,
        array_size=DELTA_ARRAY_SIZE,
    ):
        if array_size <= 0:
            raise ValueError(f"Invalid batch size {array_size}")
        self._producers: list[_Batch | None] = [None] * num_producer
        self._consumer: _Batch | None = None
        self._empty = _BlockingQueue()
        self._full = _BlockingQueue()
        for _ in range(capacity):
            self._empty.push(_Batch(array_size))

    def push(self, trainer, table, row, col, delta=None) -> None:
        """Add a delta from producer ``trainer``; dropped once the pool exits."""
        entry = Delta(table, row, col, delta)
        batch = self._producers[trainer]
        if batch is None:
            batch = self._empty.pop()
            if batch is None:
                return
        while not batch.push(entry):
            self._full.push(batch)
            batch = self._empty.pop()
            if batch is None:
                self._producers[trainer] = None
                return
        if _needs_flush(row):
            self._full.push(batch)
            batch = None
        self._producers[trainer] = batch

    def pop(self) -> Delta | None:
        """Return the next delta, blocking; None once the pool has exited."""
        if self._consumer is None:
            self._consumer = self._full.pop()
            if self._consumer is None:
                return None
        while (entry := self._consumer.pop()) is None:
            self._consumer.clear()
            self._empty.push(self._consumer)
            self._consumer = self._full.pop()
            if self._consumer is None:
                return None
        return entry

    def exit(self) -> None:
        """Wake every blocked caller; pending full batches can still be read."""
        self._full.exit()
        self._empty.exit()

    def __iter__(self) -> Iterator[Delta]:
        while (entry := self.pop()) is not None:
            yield entry