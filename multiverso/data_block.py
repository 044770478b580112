"""Base type of the data blocks passed to trainers and parameter loaders."""

from __future__ import annotations

import enum
import threading

__all__ = ["DataBlockType", "DataBlockBase"]


class DataBlockType(enum.IntEnum):
    TRAIN = 0
    TEST = 1
    BEGIN_CLOCK = 2
    END_CLOCK = 3


class DataBlockBase:
    """A data block with a type and a thread-safe in-flight counter."""

    def __init__(self, type=DataBlockType.TRAIN):
        self._type = DataBlockType(type)
        self._count = 0
        self._lock = threading.Lock()

    @property
    def type(self) -> DataBlockType:
        return self._type

    @property
    def count(self) -> int:
        return self._count

    def increase_count(self, delta) -> int:
        """Add ``delta`` to the counter and return the new value."""
        with self._lock:
            self._count += delta
            return self._count