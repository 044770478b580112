"""Parameter server holding the global tables and serving workers."""

from __future__ import annotations

import queue
import struct
import threading
from collections.abc import Iterator
from pathlib import Path

import zmq

from . import log
from .lock import LockManager
from .msg_pack import MAX_MSG_SIZE, MsgPack, MsgType
from .row import INTEGER, ElementType, Format
from .table import Table
from .zmq_util import get_context, poll

__all__ = ["Server"]

_REGISTER_REQUEST = struct.Struct("<3i")
_REGISTER_REPLY = struct.Struct("<4i")
_CREATE_TABLE = struct.Struct("<5i")
_SET_ROW = struct.Struct("<4i")
_ELEMENT_REQUEST = struct.Struct("<3i")
_ROW_HEAD = struct.Struct("<2i")

_END_TRAIN_CLOCK = 1 << 30
_LOCK_POOL_SIZE = 41


def _payload(pack: MsgPack) -> Iterator[bytes]:
    """Yield the data frames that follow the header."""
    return (pack.get_msg(i) for i in range(1, len(pack)))


class Server:
    """Serves table creation, row configuration, gets, adds and clocks.

    The server binds a ROUTER socket at ``endpoint`` and runs until every
    worker process has sent a close message or :meth:`close` is called.
    When it stops it writes its tables to model files in the working
    directory.
    """

    def __init__(self, server_id, num_worker_process, endpoint):
        if num_worker_process <= 0:
            raise ValueError(f"Invalid number of worker processes {num_worker_process}")
        self._server_id = server_id
        self._worker_count = num_worker_process
        self._endpoint = endpoint
        self._max_delay = -1
        self._clocks = [0] * num_worker_process
        self._clock_msgs: list[MsgPack | None] = [None] * num_worker_process
        self._lock_pool = LockManager(_LOCK_POOL_SIZE)
        self._tables: list[Table] = []
        self._waiting: list[MsgPack] = []
        self._inited = False
        self._updates: queue.Queue[MsgPack | None] = queue.Queue()
        self._stop = threading.Event()
        self._closed = False

        self._router = get_context().socket(zmq.ROUTER)
        try:
            self._router.bind(endpoint)
        except zmq.ZMQError:
            self._router.close(linger=0)
            raise

        self._handlers = {
            MsgType.REGISTER: self._process_register,
            MsgType.CLOSE: self._process_close,
            MsgType.BARRIER: self._process_barrier_message,
            MsgType.CREATE_TABLE: self._process_create_table,
            MsgType.SET_ROW: self._process_set_row,
            MsgType.CLOCK: self._process_clock,
            MsgType.END_TRAIN: self._process_end_train,
            MsgType.GET: self._process_get,
            MsgType.ADD: self._dispatch_add,
        }
        self._update_thread = threading.Thread(
            target=self._run_updates, name=f"server-{server_id}-update", daemon=True
        )
        self._thread = threading.Thread(
            target=self._run, name=f"server-{server_id}", daemon=True
        )
        self._update_thread.start()
        self._thread.start()
        log.info(
            "Server %d starts: num_workers=%d endpoint=%s\n",
            server_id, num_worker_process, endpoint,
        )

    @property
    def server_id(self) -> int:
        return self._server_id

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def max_delay(self) -> int:
        return self._max_delay

    @property
    def tables(self) -> tuple[Table, ...]:
        return tuple(self._tables)

    @property
    def is_working(self) -> bool:
        return self._thread.is_alive()

    def wait_to_complete(self) -> None:
        """Block until the server thread has finished."""
        if self._thread is not threading.current_thread():
            self._thread.join()

    def close(self) -> None:
        """Stop the server and wait for it to finish."""
        self._stop.set()
        self.wait_to_complete()
        if not self._closed:
            self._closed = True
            log.info("Server %d closed.\n", self._server_id)

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def dump_model(self) -> list[Path]:
        """Write each table to server_<id>_table_<n>.model; return the paths."""
        log.info("Server %d: Dump model...\n", self._server_id)
        paths = []
        for table_id, table in enumerate(self._tables):
            path = Path(f"server_{self._server_id}_table_{table_id}.model")
            with path.open("w", encoding="utf-8") as out:
                out.writelines(f"{row}\n" for row in table)
            paths.append(path)
        return paths

    # -- threads ---------------------------------------------------------- #

    def _run(self) -> None:
        poller = zmq.Poller()
        poller.register(self._router, zmq.POLLIN)
        try:
            while not self._stop.is_set():
                for pack in poll(poller, [self._router]):
                    self._dispatch(pack)
        finally:
            self._shutdown()

    def _run_updates(self) -> None:
        while (pack := self._updates.get()) is not None:
            self._guarded(self._process_add, pack)

    def _shutdown(self) -> None:
        self._updates.put(None)
        self._update_thread.join()
        self._router.close(linger=1000)
        self.dump_model()

    def _dispatch(self, pack: MsgPack) -> None:
        try:
            msg_type = pack.header().type
        except ValueError as exc:
            log.error("Server %d: dropping malformed message: %s\n", self._server_id, exc)
            return
        handler = self._handlers.get(msg_type)
        if handler is not None:
            self._guarded(handler, pack)

    def _guarded(self, handler, pack: MsgPack) -> None:
        try:
            handler(pack)
        except (ValueError, IndexError, KeyError, TypeError, struct.error) as exc:
            log.error(
                "Server %d: failed to process %s message: %s\n",
                self._server_id, pack.header().type.name, exc,
            )

    def _reply(self, pack: MsgPack) -> None:
        pack.create_reply().send(self._router)

    # -- message processing ----------------------------------------------- #

    def _process_register(self, pack: MsgPack) -> None:
        self._waiting.append(pack)
        if len(self._waiting) < self._worker_count:
            return
        total_trainers = 0
        server_count = 0
        for msg in self._waiting:
            trainers, servers, max_delay = _REGISTER_REQUEST.unpack_from(msg.get_msg(1))
            total_trainers += trainers
            if server_count == 0:
                server_count = servers
            elif server_count != servers:
                server_count = -1
            self._max_delay = max(self._max_delay, max_delay)
        for rank, msg in enumerate(self._waiting):
            reply = msg.create_reply()
            reply.push(
                _REGISTER_REPLY.pack(rank, self._worker_count, server_count, total_trainers)
            )
            reply.send(self._router)
        self._waiting.clear()
        log.info(
            "Server %d: Worker registratrion completed: workers=%d trainers=%d servers=%d\n",
            self._server_id, self._worker_count, total_trainers, server_count,
        )

    def _process_close(self, pack: MsgPack) -> None:
        log.info(
            "Server %d: Received close message from worker %d.\n",
            self._server_id, pack.header().src,
        )
        if self._process_barrier(pack):
            self._stop.set()

    def _process_barrier_message(self, pack: MsgPack) -> None:
        self._inited = self._process_barrier(pack)

    def _process_barrier(self, pack: MsgPack) -> bool:
        """Hold the message; release everyone once the last worker arrives."""
        self._waiting.append(pack)
        if len(self._waiting) < self._worker_count:
            return False
        for msg in self._waiting:
            self._reply(msg)
        self._waiting.clear()
        return True

    def _process_create_table(self, pack: MsgPack) -> None:
        table_id, rows, cols, element_type, default_format = _CREATE_TABLE.unpack_from(
            pack.get_msg(1)
        )
        # tables are created in order from 0; repeats from other workers are ignored
        if table_id == len(self._tables):
            self._tables.append(
                Table(table_id, rows, cols, ElementType(element_type), Format(default_format))
            )

    def _process_set_row(self, pack: MsgPack) -> None:
        for frame in _payload(pack):
            table_id, row_id, capacity, row_format = _SET_ROW.unpack_from(frame)
            self._tables[table_id].set_row(row_id, Format(row_format), capacity)

    def _process_clock(self, pack: MsgPack) -> None:
        if self._max_delay < 0:
            self._reply(pack)
            return
        src = pack.header().src
        self._clock_msgs[src] = pack
        self._clocks[src] += 1
        self._release_clocks()

    def _process_end_train(self, pack: MsgPack) -> None:
        self._clocks[pack.header().src] = _END_TRAIN_CLOCK
        self._release_clocks()

    def _release_clocks(self) -> None:
        upper_bound = min(self._clocks) + self._max_delay
        for worker, (clock, msg) in enumerate(zip(self._clocks, self._clock_msgs)):
            if clock <= upper_bound and msg is not None:
                self._reply(msg)
                self._clock_msgs[worker] = None

    def _process_get(self, pack: MsgPack) -> None:
        reply = pack.create_reply()
        size = 0
        for frame in _payload(pack):
            table_id, row_id, col = _ELEMENT_REQUEST.unpack_from(frame)
            table = self._tables[table_id]
            row_ids = [row.row_id for row in table] if row_id == -1 else [row_id]
            for request_row in row_ids:
                with self._lock_pool.locked(request_row):
                    reply, size = self._get_row(
                        table, request_row, col, pack, reply, size
                    )
        reply.push(INTEGER.pack(1))
        reply.send(self._router)

    def _get_row(self, table: Table, row_id, col, pack, reply, size):
        row = table.get_row(row_id)
        count = 1 if col >= 0 else row.nonzero_size
        msg_size = 3 * INTEGER.size + count * (INTEGER.size + table.element_size)
        if size + msg_size > MAX_MSG_SIZE:
            reply.push(INTEGER.pack(0))
            reply.send(self._router)
            reply = pack.create_reply()
            size = 0
        head = _ROW_HEAD.pack(table.table_id, row_id)
        if col >= 0:
            body = struct.pack(f"<2i{table.element_type.code}", 1, col, row.at(col))
        else:
            body = row.serialize()
        reply.push(head + body)
        return reply, size + msg_size

    def _dispatch_add(self, pack: MsgPack) -> None:
        if self._inited:
            self._updates.put(pack)
        else:
            self._process_add(pack)

    def _process_add(self, pack: MsgPack) -> None:
        for frame in _payload(pack):
            table_id, row_id = _ROW_HEAD.unpack_from(frame)
            with self._lock_pool.locked(row_id):
                self._tables[table_id].get_row(row_id).batch_add(
                    memoryview(frame)[_ROW_HEAD.size:]
                )