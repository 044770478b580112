"""Background threads that merge local deltas and push them to servers."""

from __future__ import annotations

import threading
from collections.abc import Callable

from . import log
from .barrier import Barrier
from .delta_pool import DELTA_POOL_CAPACITY, DeltaPool, DeltaType
from .msg_pack import MAX_MSG_SIZE, MsgArrow, MsgPack, MsgType
from .row import INTEGER, ElementType, Format
from .table import Table
from .vector_clock import VectorClock
from .zmq_util import create_socket

__all__ = ["Aggregator"]


class Aggregator:
    """Accumulates trainer deltas in local tables and sends them on flush.

    Deltas for row ``r`` are handled by thread ``r % num_threads``. A flush
    sends the accumulated rows once every trainer has flushed; a clock sends
    one clock message to server 0 once every trainer has clocked and wakes
    the callers of :meth:`wait` when the server replies.
    """

    def __init__(
        self,
        num_threads,
        num_trainers,
        process_rank,
        num_servers,
        socket_factory: Callable = create_socket,
    ):
        if num_threads <= 0:
            raise ValueError(f"Invalid number of aggregator threads {num_threads}")
        if num_trainers <= 0:
            raise ValueError(f"Invalid number of trainers {num_trainers}")
        if num_servers <= 0:
            raise ValueError(f"Invalid number of servers {num_servers}")
        self._num_threads = num_threads
        self._num_trainers = num_trainers
        self._process_rank = process_rank
        self._num_servers = num_servers
        self._socket_factory = socket_factory
        self._tables: list[Table | None] = []
        self._barrier = Barrier(num_threads)
        self._pools = [
            DeltaPool(num_trainers, DELTA_POOL_CAPACITY) for _ in range(num_threads)
        ]
        self._cond = threading.Condition()
        self._generation = 0
        self._clock_requests = [0] * num_trainers
        self._local = threading.local()
        self._closed = False
        self._threads = [
            threading.Thread(
                target=self._run, args=(i,), name=f"aggregator-{i}", daemon=True
            )
            for i in range(num_threads)
        ]
        for thread in self._threads:
            thread.start()

    @property
    def tables(self) -> tuple[Table | None, ...]:
        return tuple(self._tables)

    def create_table(
        self,
        table_id,
        rows,
        cols,
        element_type=ElementType.INT,
        default_format=Format.DENSE,
    ) -> None:
        if table_id >= len(self._tables):
            self._tables.extend([None] * (table_id + 1 - len(self._tables)))
        self._tables[table_id] = Table(
            table_id, rows, cols, element_type, default_format
        )

    def set_aggregator_row(self, table_id, row_id, format, capacity) -> None:
        self._tables[table_id].set_row(row_id, format, capacity)

    def add(self, trainer, table, row, col, delta=None) -> None:
        """Queue a delta, or a flush/clock signal when ``row`` is negative."""
        if row >= 0:
            self._pools[row % self._num_threads].push(trainer, table, row, col, delta)
            return
        if row == DeltaType.CLOCK:
            with self._cond:
                self._clock_requests[trainer] += 1
                self._local.target = self._clock_requests[trainer]
        for pool in self._pools:
            # the column carries the id of the signalling trainer
            pool.push(trainer, table, row, trainer, None)

    def wait(self) -> None:
        """Block until the clock last requested by this thread has completed."""
        with self._cond:
            target = getattr(self._local, "target", None)
            if target is None:
                target = self._generation + 1
            self._local.target = None
            self._cond.wait_for(lambda: self._generation >= target)

    def close(self) -> None:
        """Stop the threads after they have processed every handed-over delta."""
        if self._closed:
            return
        self._closed = True
        for pool in self._pools:
            pool.exit()
        for thread in self._threads:
            thread.join()

    def __enter__(self) -> "Aggregator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(self, thread_id) -> None:
        flush_clock = VectorClock(self._num_trainers)
        step_clock = VectorClock(self._num_trainers)
        pool = self._pools[thread_id]
        self._barrier.wait()
        socket = self._socket_factory()
        try:
            for delta in pool:
                if delta.row == DeltaType.FLUSH:
                    if flush_clock.update(delta.col):
                        self._send(thread_id, socket)
                        if self._barrier.wait():
                            for table in self._tables:
                                if table is not None:
                                    table.clear()
                        self._barrier.wait()
                elif delta.row == DeltaType.CLOCK:
                    if step_clock.update(delta.col):
                        if self._barrier.wait():
                            self._clock(socket)
                        self._barrier.wait()
                elif delta.row < 0:
                    log.error("Aggregator: unknown delta type %d\n", delta.row)
                else:
                    self._apply(delta)
        finally:
            socket.close()

    def _apply(self, delta) -> None:
        try:
            table = self._tables[delta.table]
            table.get_row(delta.row).add(delta.col, delta.value)
        except (IndexError, AttributeError, TypeError) as exc:
            log.error(
                "Aggregator: cannot add to table %d row %d col %d: %s\n",
                delta.table, delta.row, delta.col, exc,
            )

    def _send(self, thread_id, socket) -> None:
        packs: dict[int, MsgPack] = {}
        sizes: dict[int, int] = {}
        for table_id, table in enumerate(self._tables):
            if table is None:
                continue
            for row in table:
                if row.row_id % self._num_threads != thread_id:
                    continue
                dst = (table_id + row.row_id) % self._num_servers
                frame = INTEGER.pack(table_id) + INTEGER.pack(row.row_id) + row.serialize()
                if len(frame) > MAX_MSG_SIZE:
                    log.error("Row size exceed the max size of message\n")
                pack = packs.get(dst)
                if pack is None or sizes[dst] + len(frame) > MAX_MSG_SIZE:
                    if pack is not None:
                        pack.send(socket)
                    pack = packs[dst] = MsgPack.create(
                        MsgType.ADD, MsgArrow.WORKER_TO_SERVER, self._process_rank, dst
                    )
                    sizes[dst] = 0
                pack.push(frame)
                sizes[dst] += len(frame)
        for dst in sorted(packs):
            packs[dst].send(socket)

    def _clock(self, socket) -> None:
        MsgPack.create(
            MsgType.CLOCK, MsgArrow.WORKER_TO_SERVER, self._process_rank, 0
        ).send(socket)
        MsgPack.recv(socket)
        with self._cond:
            self._generation += 1
            self._cond.notify_all()