"""Vector clock that advances once every participant has ticked."""

from __future__ import annotations

__all__ = ["VectorClock"]


class VectorClock:
    """Per-participant counters with a global clock equal to their minimum."""

    def __init__(self, n):
        self._vectors = [0] * n
        self._clock = 0

    @property
    def clock(self) -> int:
        return self._clock

    def update(self, i) -> bool:
        """Tick participant ``i``; return True if the global clock advanced."""
        if not 0 <= i < len(self._vectors):
            raise IndexError(f"participant {i} out of range")
        self._vectors[i] += 1
        if min(self._vectors) > self._clock:
            self._clock += 1
            return True
        return False