"""A fixed pool of mutexes selected by id modulo pool size."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = ["LockManager"]


class LockManager:
    """Maps any integer id onto one of ``num_lock`` shared locks."""

    def __init__(self, num_lock):
        if num_lock <= 0:
            raise ValueError(f"Invalid number of locks {num_lock}")
        self._locks = [threading.Lock() for _ in range(num_lock)]

    def _get(self, id) -> threading.Lock:
        return self._locks[id % len(self._locks)]

    def lock(self, id) -> None:
        self._get(id).acquire()

    def unlock(self, id) -> None:
        self._get(id).release()

    @contextmanager
    def locked(self, id) -> Iterator[None]:
        """Hold the lock for ``id`` for the duration of the block."""
        lock = self._get(id)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)