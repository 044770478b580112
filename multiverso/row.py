"""Dense and sparse parameter rows with a compact binary form."""

from __future__ import annotations

import enum
import struct
from collections.abc import Iterator, Sequence

__all__ = ["Format", "ElementType", "Row", "EPS", "INTEGER"]

INTEGER = struct.Struct("<i")
"""Binary layout of the integers used for ids, keys and counts."""

EPS = 1e-9
"""Values whose magnitude is below this are treated as zero."""

_EMPTY_KEY = 0
_DELETED_KEY = -1


class Format(enum.IntEnum):
    """Storage layout of a row."""

    DENSE = 0
    SPARSE = 1


class ElementType(enum.IntEnum):
    """Numeric type of the values held by a row."""

    INT = 0
    LONG_LONG = 1
    FLOAT = 2
    DOUBLE = 3

    @property
    def code(self) -> str:
        """The struct format character of this type."""
        return _CODES[self]

    @property
    def size(self) -> int:
        """Size in bytes of one value."""
        return struct.calcsize("<" + _CODES[self])

    @property
    def is_integral(self) -> bool:
        return self in (ElementType.INT, ElementType.LONG_LONG)

    def coerce(self, value):
        """Convert ``value`` to what a value of this type can hold."""
        if self.is_integral:
            return int(value)
        if self is ElementType.FLOAT:
            return struct.unpack("<f", struct.pack("<f", value))[0]
        return float(value)


_CODES = {
    ElementType.INT: "i",
    ElementType.LONG_LONG: "q",
    ElementType.FLOAT: "f",
    ElementType.DOUBLE: "d",
}


def _is_zero(value) -> bool:
    return abs(value) < EPS


class Row:
    """A row of a parameter table, stored densely or as an open-address hash."""

    def __init__(self, row_id, format, capacity, element_type=ElementType.INT):
        self._row_id = row_id
        self._format = Format(format)
        self._type = ElementType(element_type)
        if capacity < 0:
            raise ValueError(f"Invalid row capacity {capacity}")
        if self._format is Format.SPARSE and capacity == 0:
            raise ValueError("A sparse row needs a positive capacity")
        self._capacity = capacity
        self._zero = self._type.coerce(0)
        self._nonzero = 0
        self._deleted = 0
        self._values = [self._zero] * capacity
        self._keys = [_EMPTY_KEY] * capacity if self._format is Format.SPARSE else []

    @property
    def row_id(self) -> int:
        return self._row_id

    @property
    def format(self) -> Format:
        return self._format

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def element_type(self) -> ElementType:
        return self._type

    @property
    def nonzero_size(self) -> int:
        return self._nonzero

    def add(self, key, delta) -> None:
        """Add ``delta`` to the value at ``key``."""
        delta = self._type.coerce(delta)
        if self._format is Format.DENSE:
            if not 0 <= key < self._capacity:
                raise IndexError(f"key {key} out of range for row {self._row_id}")
            if _is_zero(self._values[key]):
                self._nonzero += 1
            self._values[key] = self._type.coerce(self._values[key] + delta)
            if _is_zero(self._values[key]):
                self._nonzero -= 1
            return

        if key < 0:
            raise IndexError(f"negative key {key} for row {self._row_id}")
        internal_key = key + 1
        found, bucket = self._find(internal_key)
        if found:
            value = self._type.coerce(self._values[bucket] + delta)
            self._values[bucket] = value
            if _is_zero(value):
                self._keys[bucket] = _DELETED_KEY
                self._nonzero -= 1
                self._deleted += 1
                if self._deleted * 10 > self._capacity:
                    self._rehash_in_place()
        else:
            self._keys[bucket] = internal_key
            self._values[bucket] = delta
            self._nonzero += 1
            if self._nonzero * 2 > self._capacity:
                self._grow()

    def add_all(self, deltas: Sequence) -> None:
        """Add one delta to every value of a dense row."""
        if self._format is not Format.DENSE:
            raise ValueError("Batch add of a whole row needs a dense row")
        if len(deltas) != self._capacity:
            raise ValueError(
                f"Expected {self._capacity} deltas, got {len(deltas)}"
            )
        coerce = self._type.coerce
        self._values = [
            coerce(value + coerce(delta))
            for value, delta in zip(self._values, deltas)
        ]
        self._nonzero = sum(1 for value in self._values if abs(value) > EPS)

    def at(self, key):
        """Return the value at ``key``; absent sparse keys read as zero."""
        if self._format is Format.DENSE:
            if not 0 <= key < self._capacity:
                raise IndexError(f"key {key} out of range for row {self._row_id}")
            return self._values[key]
        if key < 0:
            raise IndexError(f"negative key {key} for row {self._row_id}")
        found, bucket = self._find(key + 1)
        return self._values[bucket] if found else self._zero

    def clear(self) -> None:
        """Reset every value to zero, keeping the current capacity."""
        self._nonzero = 0
        self._deleted = 0
        self._values = [self._zero] * self._capacity
        if self._format is Format.SPARSE:
            self._keys = [_EMPTY_KEY] * self._capacity

    def items(self) -> Iterator[tuple[int, object]]:
        """Yield the stored (key, value) pairs in storage order."""
        if self._format is Format.DENSE:
            for key, value in enumerate(self._values):
                if not _is_zero(value):
                    yield key, value
        else:
            for key, value in zip(self._keys, self._values):
                if key > 0:
                    yield key - 1, value

    def serialize(self) -> bytes:
        """Encode as: count, the keys, then the values."""
        pairs = list(self.items())
        keys = [key for key, _ in pairs]
        values = [value for _, value in pairs]
        n = len(pairs)
        return struct.pack(f"<i{n}i{n}{self._type.code}", n, *keys, *values)

    def batch_add(self, data) -> int:
        """Add deltas encoded as by :meth:`serialize`; return the bytes read."""
        view = memoryview(data)
        (n,) = INTEGER.unpack_from(view, 0)
        if n < 0:
            raise ValueError(f"Invalid element count {n}")
        offset = INTEGER.size
        keys = struct.unpack_from(f"<{n}i", view, offset)
        offset += n * INTEGER.size
        values = struct.unpack_from(f"<{n}{self._type.code}", view, offset)
        offset += n * self._type.size
        for key, value in zip(keys, values):
            self.add(key, value)
        return offset

    def __str__(self) -> str:
        if self._nonzero == 0:
            return ""
        parts = [str(self._row_id)]
        parts.extend(f"{key}:{_format_value(value)}" for key, value in self.items())
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"Row(row_id={self._row_id}, format={self._format.name}, "
            f"capacity={self._capacity}, nonzero={self._nonzero})"
        )

    def _find(self, internal_key) -> tuple[bool, int]:
        """Locate ``internal_key``: (True, slot) or (False, slot to insert at)."""
        capacity = self._capacity
        keys = self._keys
        bucket = -1
        index = internal_key % capacity
        for _ in range(capacity):
            current = keys[index]
            if current == internal_key:
                return True, index
            if current == _EMPTY_KEY:
                return False, index if bucket == -1 else bucket
            if current == _DELETED_KEY and bucket == -1:
                bucket = index
            index = (index + 1) % capacity
        if bucket == -1:
            raise RuntimeError(f"hash table of row {self._row_id} is full")
        return False, bucket

    def _grow(self) -> None:
        bigger = Row(self._row_id, Format.SPARSE, self._capacity * 2, self._type)
        for key, value in zip(self._keys, self._values):
            if key > 0:
                bigger.add(key - 1, value)
        self._capacity = bigger._capacity
        self._keys = bigger._keys
        self._values = bigger._values
        self._deleted = 0

    def _rehash_in_place(self) -> None:
        keys = self._keys
        values = self._values
        capacity = self._capacity
        i = 0
        while i < capacity:
            key = keys[i]
            if key > 0:
                index = key % capacity
                while keys[index] < -1:
                    index = (index + 1) % capacity
                keys[i] = -key - 1
                keys[index], keys[i] = keys[i], keys[index]
                values[index], values[i] = values[i], values[index]
            else:
                i += 1
        keys[:] = [_restore_key(key) for key in keys]
        self._deleted = 0


def _restore_key(key: int) -> int:
    if key < -1:
        return -key - 1
    if key == _DELETED_KEY:
        return _EMPTY_KEY
    return key


def _format_value(value) -> str:
    return f"{value:f}" if isinstance(value, float) else str(value)