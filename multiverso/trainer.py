"""Base class of the threads that train on data blocks."""

from __future__ import annotations

import abc
import threading
import weakref

from . import log
from .barrier import Barrier
from .data_block import DataBlockType
from .delta_pool import DeltaType
from .multiverso import LockOption
from .parameter_loader import _DataQueue
from .row import Format

__all__ = ["TrainerBase"]


class _TrainerGroup:
    """The trainers of one environment: id counter and a shared barrier."""

    def __init__(self):
        self.lock = threading.Lock()
        self.count = 0
        self.barrier = Barrier(1)


_groups: "weakref.WeakKeyDictionary[object, _TrainerGroup]" = weakref.WeakKeyDictionary()
_groups_lock = threading.Lock()


def _group_of(multiverso) -> _TrainerGroup:
    with _groups_lock:
        group = _groups.get(multiverso)
        if group is None:
            group = _groups[multiverso] = _TrainerGroup()
        return group


class TrainerBase(abc.ABC):
    """A trainer thread that consumes data blocks and updates parameters.

    Trainers of the same environment get consecutive ids from 0 in order
    of creation. Subclasses implement :meth:`train_iteration`.
    """

    def __init__(self, multiverso):
        self._multiverso = multiverso
        self._group = _group_of(multiverso)
        with self._group.lock:
            self._trainer_id = self._group.count
            self._group.count += 1
            self._group.barrier.reset_num_threads(self._group.count)
        self._queue = _DataQueue()
        self._thread: threading.Thread | None = None

    @property
    def trainer_id(self) -> int:
        return self._trainer_id

    def get_table(self, table_id):
        """Return the cached table ``table_id`` of the worker buffer."""
        tables = self._multiverso.double_buffer.worker_buffer
        if 0 <= table_id < len(tables):
            return tables[table_id]
        log.error(
            "Rank=%d Trainer=%d: TrainerBase::GetTable: Invalid table id: %d\n",
            self._multiverso.process_rank, self._trainer_id, table_id,
        )
        raise IndexError(f"Invalid table id {table_id}")

    def get_row(self, table_id, row_id):
        """Return the cached row ``row_id`` of table ``table_id``."""
        table = self.get_table(table_id)
        try:
            row = table.get_row(row_id)
        except IndexError:
            row = None
        if row is None:
            raise IndexError(f"Invalid table or row ids: {table_id} {row_id}")
        return row

    def _locked_update(self, lock_id, update) -> None:
        mv = self._multiverso
        if mv.lock_option == LockOption.LOCK_FREE:
            update()
        elif mv.lock_option == LockOption.LOCKED:
            with mv.lock_manager.locked(lock_id):
                update()

    def add_element(self, table_id, row_id, col_id, delta) -> None:
        """Send a delta to the aggregator and apply it to the local cache."""
        self._multiverso.aggregator.add(
            self._trainer_id, table_id, row_id, col_id, delta
        )
        self._locked_update(
            table_id + row_id,
            lambda: self.get_row(table_id, row_id).add(col_id, delta),
        )

    def add_row(self, table_id, row_id, deltas) -> None:
        """Add one delta per column of a dense row."""
        table = self.get_table(table_id)
        try:
            info = table.get_row_info(row_id)
        except IndexError:
            info = None
        if info is None:
            raise IndexError(f"Invalid row id {row_id}")
        if info.format != Format.DENSE:
            raise ValueError(
                f"Batch add is not supported for sparse row: "
                f"Table={table_id} Row={row_id}"
            )
        if len(deltas) != info.capacity:
            raise ValueError(f"Expected {info.capacity} deltas, got {len(deltas)}")
        aggregator = self._multiverso.aggregator
        for col_id, delta in enumerate(deltas):
            aggregator.add(self._trainer_id, table_id, row_id, col_id, delta)
        self._locked_update(row_id, lambda: table.get_row(row_id).add_all(deltas))

    def clock(self) -> None:
        """Signal the end of a clock and wait until the servers allow more."""
        aggregator = self._multiverso.aggregator
        aggregator.add(self._trainer_id, 0, DeltaType.CLOCK, 0)
        aggregator.wait()

    def begin_iteration(self) -> None:
        self._multiverso.double_buffer.start(self._trainer_id + 1)

    def end_iteration(self) -> None:
        self._multiverso.aggregator.add(self._trainer_id, 0, DeltaType.FLUSH, 0)
        self._multiverso.double_buffer.end(self._trainer_id + 1)

    @abc.abstractmethod
    def train_iteration(self, data_block) -> None:
        """Train on one data block."""

    def begin_clock(self) -> None:
        """Hook called at the start of a clock; does nothing by default."""

    def end_clock(self) -> None:
        """Hook called after a clock completes; does nothing by default."""

    def push_data_block(self, data_block) -> None:
        mv = self._multiverso
        self._queue.push(data_block)
        if data_block.type not in (DataBlockType.BEGIN_CLOCK, DataBlockType.END_CLOCK):
            with mv.data_cond:
                mv.data_tag[self._trainer_id] = False

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"trainer-{self._trainer_id}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Let the thread finish the queued blocks, then wait for it."""
        self._queue.exit()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _pipeline_wait(self) -> None:
        if not self._multiverso.is_pipeline:
            self._multiverso.pipeline_barrier.wait()

    def _run(self) -> None:
        mv = self._multiverso
        self._pipeline_wait()
        while (data_block := self._queue.pop()) is not None:
            self._pipeline_wait()
            kind = data_block.type
            if kind == DataBlockType.BEGIN_CLOCK:
                self.begin_clock()
            elif kind == DataBlockType.END_CLOCK:
                self.clock()
                self.end_clock()
            elif kind in (DataBlockType.TEST, DataBlockType.TRAIN):
                self.begin_iteration()
                self.train_iteration(data_block)
                self.end_iteration()
            if self._group.barrier.wait():
                data_block.increase_count(-1)
            if self._queue.empty():
                with mv.data_cond:
                    mv.data_tag[self._trainer_id] = self._queue.empty()
                    mv.data_cond.notify_all()
            self._pipeline_wait()