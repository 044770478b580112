"""A resumable stopwatch."""

from __future__ import annotations

import time

__all__ = ["StopWatch"]


class StopWatch:
    """Measures accumulated running time; starts running on creation."""

    def __init__(self):
        self._elapsed = 0.0
        self._start: float | None = None
        self.restart()

    def restart(self) -> None:
        """Reset the accumulated time and start running."""
        self._elapsed = 0.0
        self._start = None
        self.start()

    def start(self) -> None:
        """Resume timing; has no effect if already running."""
        if self._start is None:
            self._start = time.perf_counter()

    def stop(self) -> None:
        """Pause timing; has no effect if already stopped."""
        if self._start is not None:
            self._elapsed += time.perf_counter() - self._start
            self._start = None

    def is_running(self) -> bool:
        return self._start is not None

    def elapsed_seconds(self) -> float:
        """Total running time in seconds, including the current run."""
        extra = time.perf_counter() - self._start if self._start is not None else 0.0
        return self._elapsed + extra