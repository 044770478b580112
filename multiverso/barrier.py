"""A reusable thread barrier that tells the last arriving thread apart."""

from __future__ import annotations

import threading

__all__ = ["Barrier"]


class Barrier:
    """Blocks callers of :meth:`wait` until ``num_threads`` have arrived."""

    def __init__(self, num_threads):
        self._cond = threading.Condition()
        self._waiting = 0
        self._generation = 0
        self._size = 0
        self.reset_num_threads(num_threads)

    @property
    def size(self) -> int:
        return self._size

    def reset_num_threads(self, num_threads) -> None:
        """Change the number of threads; should be called while nobody waits."""
        if num_threads <= 0:
            raise ValueError(f"Invalid barrier size {num_threads}")
        with self._cond:
            self._size = num_threads

    def wait(self) -> bool:
        """Wait for the others; return True only in the last thread to arrive."""
        with self._cond:
            self._waiting += 1
            if self._waiting >= self._size:
                self._waiting = 0
                self._generation += 1
                self._cond.notify_all()
                return True
            generation = self._generation
            while generation == self._generation:
                self._cond.wait()
            return False