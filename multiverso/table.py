"""A table of lazily created rows."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass

from . import log
from .row import ElementType, Format, Row

__all__ = ["RowInfo", "Table"]


@dataclass
class RowInfo:
    """Configuration of a row and the row itself once it is created."""

    format: Format
    capacity: int
    row: Row | None = None


class Table:
    """A fixed number of rows, each created on first access."""

    def __init__(
        self,
        table_id,
        rows,
        cols,
        element_type=ElementType.INT,
        default_format=Format.DENSE,
    ):
        if rows < 0:
            raise ValueError(f"Invalid number of rows {rows}")
        self._table_id = table_id
        self._type = ElementType(element_type)
        default_format = Format(default_format)
        capacity = cols if default_format is Format.DENSE else 2
        self._row_info = [RowInfo(default_format, capacity) for _ in range(rows)]
        self._rows: list[Row] = []
        self._lock = threading.Lock()

    @property
    def table_id(self) -> int:
        return self._table_id

    @property
    def element_type(self) -> ElementType:
        return self._type

    @property
    def element_size(self) -> int:
        return self._type.size

    @property
    def num_rows(self) -> int:
        return len(self._row_info)

    def _check(self, row_id) -> None:
        if not 0 <= row_id < len(self._row_info):
            raise IndexError(f"invalid row id {row_id} in table {self._table_id}")

    def set_row(self, row_id, format, capacity) -> None:
        """Configure a row; applies when the row is next created."""
        self._check(row_id)
        info = self._row_info[row_id]
        info.format = Format(format)
        info.capacity = capacity

    def get_row(self, row_id) -> Row:
        """Return the row, creating it from its configuration if needed."""
        self._check(row_id)
        info = self._row_info[row_id]
        if info.row is None:
            with self._lock:
                if info.row is None:
                    row = Row(row_id, info.format, info.capacity, self._type)
                    self._rows.append(row)
                    info.row = row
        return info.row

    def get_row_info(self, row_id) -> RowInfo:
        if not 0 <= row_id < len(self._row_info):
            log.error("Table::GetRowInfo: invalid row id: %d\n", row_id)
        self._check(row_id)
        return self._row_info[row_id]

    def clear(self) -> None:
        """Drop every created row."""
        with self._lock:
            for row in self._rows:
                self._row_info[row.row_id].row = None
            self._rows.clear()

    def __iter__(self) -> Iterator[Row]:
        """Iterate over the created rows in creation order."""
        return iter(list(self._rows))