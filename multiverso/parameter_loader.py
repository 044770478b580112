"""Background loader that fetches the parameters a data block needs."""

from __future__ import annotations

import abc
import struct
import threading
from collections import deque
from typing import NamedTuple

from .data_block import DataBlockType
from .msg_pack import MAX_MSG_SIZE, MsgArrow, MsgPack, MsgType
from .row import INTEGER
from .zmq_util import create_socket

__all__ = ["Request", "ParameterLoaderBase"]

_REQUEST = struct.Struct("<3i")
_ROW_HEAD = struct.Struct("<2i")
_CLOCK_TYPES = (DataBlockType.BEGIN_CLOCK, DataBlockType.END_CLOCK)


class Request(NamedTuple):
    """A parameter request; -1 in ``row`` or ``col`` means all of them."""

    table: int
    row: int = -1
    col: int = -1


class _DataQueue:
    """A FIFO of data blocks whose pop blocks until an item or exit."""

    def __init__(self):
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._exited = False

    def push(self, item) -> None:
        with self._cond:
            self._items.append(item)
            self._cond.notify()

    def pop(self):
        """Return the next item, or None once exited and drained."""
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._exited)
            return self._items.popleft() if self._items else None

    def empty(self) -> bool:
        with self._cond:
            return not self._items

    def exit(self) -> None:
        with self._cond:
            self._exited = True
            self._cond.notify_all()


class ParameterLoaderBase(abc.ABC):
    """Reads data blocks, asks the servers for their parameters and fills
    the IO buffer of the double buffer.

    Subclasses implement :meth:`parse_and_request`, calling the
    ``request_*`` methods for every parameter the block uses.
    """

    def __init__(self, multiverso):
        self._multiverso = multiverso
        self._queue = _DataQueue()
        self._requests: set[Request] = set()
        self._thread: threading.Thread | None = None

    @property
    def requests(self) -> tuple[Request, ...]:
        """The pending requests in sorted order."""
        return tuple(sorted(self._requests))

    def push_data_block(self, data_block) -> None:
        self._queue.push(data_block)

    def request_table(self, table) -> None:
        self._requests.add(Request(table, -1, -1))

    def request_row(self, table, row) -> None:
        if Request(table, -1, -1) not in self._requests:
            self._requests.add(Request(table, row, -1))

    def request_element(self, table, row, col) -> None:
        if (
            Request(table, -1, -1) not in self._requests
            and Request(table, row, -1) not in self._requests
        ):
            self._requests.add(Request(table, row, col))

    @abc.abstractmethod
    def parse_and_request(self, data_block) -> None:
        """Parse ``data_block`` and request the parameters it needs."""

    def start(self) -> None:
        """Start the loader thread."""
        self._thread = threading.Thread(
            target=self._run, name="parameter-loader", daemon=True
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
        while (data_block := self._queue.pop()) is not None:
            self._pipeline_wait()
            if data_block.type not in _CLOCK_TYPES:
                self.begin_iteration()
                self._requests.clear()
                self.parse_and_request(data_block)
                self.process_request()
                self.end_iteration()
            self._pipeline_wait()
        self._pipeline_wait()

    def process_request(self) -> None:
        """Send the pending requests and add the replies to the IO buffer."""
        mv = self._multiverso
        cache = mv.double_buffer.io_buffer
        for table in cache:
            table.clear()
        src = mv.process_rank
        num_server = mv.server_count
        socket = create_socket()
        try:
            packs: dict[int, MsgPack] = {}
            sizes: dict[int, int] = {}
            sent = 0
            for request in sorted(self._requests):
                table, row, col = request
                if (row >= 0 and Request(table, -1, -1) in self._requests) or (
                    col >= 0 and Request(table, row, -1) in self._requests
                ):
                    continue
                dsts = range(num_server) if row == -1 else [(table + row) % num_server]
                for dst in dsts:
                    pack = packs.get(dst)
                    if pack is not None and sizes[dst] + _REQUEST.size > MAX_MSG_SIZE:
                        pack.send(socket)
                        sent += 1
                        pack = None
                    if pack is None:
                        pack = packs[dst] = MsgPack.create(
                            MsgType.GET, MsgArrow.WORKER_TO_SERVER, src, dst
                        )
                        sizes[dst] = 0
                    pack.push(_REQUEST.pack(table, row, col))
                    sizes[dst] += _REQUEST.size
            for dst in sorted(packs):
                if sizes[dst] > 0:
                    packs[dst].send(socket)
                    sent += 1

            # every reply ends with a tag frame; 1 marks the last reply of a request
            while sent > 0:
                reply = MsgPack.recv(socket)
                for i in range(1, len(reply) - 1):
                    frame = reply.get_msg(i)
                    table, row = _ROW_HEAD.unpack_from(frame)
                    cache[table].get_row(row).batch_add(
                        memoryview(frame)[_ROW_HEAD.size:]
                    )
                (over,) = INTEGER.unpack_from(reply.get_msg(len(reply) - 1))
                if over == 1:
                    sent -= 1
        finally:
            socket.close(linger=0)

    def begin_iteration(self) -> None:
        self._multiverso.double_buffer.start(0)

    def end_iteration(self) -> None:
        self._multiverso.double_buffer.end(0)