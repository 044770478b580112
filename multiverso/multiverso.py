"""The worker-side environment: tables, aggregator, trainers and servers."""

from __future__ import annotations

import enum
import struct
import threading
from dataclasses import dataclass

from . import log
from .aggregator import Aggregator
from .barrier import Barrier
from .communicator import Communicator, RegisterInfo
from .data_block import DataBlockBase, DataBlockType
from .delta_pool import DeltaType
from .lock import LockManager
from .msg_pack import MAX_MSG_SIZE, MsgArrow, MsgPack, MsgType
from .row import ElementType, Format
from .table import Table
from .zmq_util import COMM_ENDPOINT

__all__ = ["LockOption", "Config", "Multiverso"]

_CREATE_TABLE = struct.Struct("<5i")
_SET_ROW = struct.Struct("<4i")


class LockOption(enum.IntEnum):
    """How trainers update their local cache."""

    IMMUTABLE = 0
    LOCK_FREE = 1
    LOCKED = 2


@dataclass
class Config:
    """Settings of a worker process."""

    num_trainers: int = 1
    num_aggregator: int = 1
    max_delay: int = 0
    is_pipeline: bool = True
    lock_option: LockOption = LockOption.IMMUTABLE
    num_lock: int = 100
    server_endpoint_file: str = ""
    comm_endpoint: str = COMM_ENDPOINT


class _DoubleBuffer:
    """Two buffers shared by a loader (id 0) and trainers (ids 1..n).

    The loader fills the IO buffer while the trainers read the worker
    buffer; once every participant has ended its iteration the buffers
    swap and everyone may start again.
    """

    def __init__(self, num_trainers, first, second):
        self._num_threads = num_trainers + 1
        self._io = first
        self._worker = second
        self._ready = [True] + [False] * num_trainers
        self._ended = num_trainers
        self._cond = threading.Condition()

    @property
    def io_buffer(self):
        return self._io

    @property
    def worker_buffer(self):
        return self._worker

    def start(self, thread_id) -> None:
        """Block until participant ``thread_id`` may use its buffer."""
        with self._cond:
            self._cond.wait_for(lambda: self._ready[thread_id])
            self._ready[thread_id] = False

    def end(self, thread_id) -> None:
        """Mark the iteration of ``thread_id`` done; swap when all are done."""
        with self._cond:
            self._ended += 1
            if self._ended >= self._num_threads:
                self._ended = 0
                self._io, self._worker = self._worker, self._io
                self._ready = [True] * self._num_threads
                self._cond.notify_all()


class Multiverso:
    """Connects a worker process to the servers and drives its trainers."""

    def __init__(self):
        self._reg_info = RegisterInfo()
        self._num_trainers = 0
        self._communicator: Communicator | None = None
        self._socket = None
        self.aggregator: Aggregator | None = None
        self.lock_option = LockOption.IMMUTABLE
        self.lock_manager: LockManager | None = None
        self.is_pipeline = True
        self.pipeline_barrier: Barrier | None = None
        self.trainers: list = []
        self.param_loader = None
        self._tables0: list[Table] = []
        self._tables1: list[Table] = []
        self.double_buffer: _DoubleBuffer | None = None
        self.data_cond = threading.Condition()
        self.data_tag: list[bool] = []
        self._row_config: dict[int, MsgPack] = {}
        self._row_config_size: dict[int, int] = {}
        self._begin_clock_block = DataBlockBase(DataBlockType.BEGIN_CLOCK)
        self._end_clock_block = DataBlockBase(DataBlockType.END_CLOCK)

    @property
    def process_rank(self) -> int:
        return self._reg_info.proc_rank

    @property
    def process_count(self) -> int:
        return self._reg_info.proc_count

    @property
    def server_count(self) -> int:
        return self._reg_info.server_count

    @property
    def total_trainer_count(self) -> int:
        return self._reg_info.total_trainer_count

    @property
    def num_trainers(self) -> int:
        return self._num_trainers

    @property
    def cache_tables(self) -> tuple[Table, ...]:
        return tuple(self._tables0)

    def _require_init(self) -> None:
        if self._communicator is None:
            raise RuntimeError("Multiverso is not initialized")

    def _require_loader(self) -> None:
        self._require_init()
        if self.param_loader is None:
            raise RuntimeError("Multiverso has no parameter loader")

    def _rank_text(self) -> tuple[int, int]:
        return self._reg_info.proc_rank, self._reg_info.proc_count

    def init(self, config, trainers=None, param_loader=None) -> None:
        """Start the communicator and aggregator and register with the servers.

        Without ``trainers`` the number of trainers comes from the config.
        """
        if self._communicator is not None:
            raise RuntimeError("Multiverso is already initialized")
        trainer_list = list(trainers) if trainers is not None else []
        num_trainers = len(trainer_list) if trainers is not None else config.num_trainers

        communicator = Communicator(config)
        socket = None
        try:
            socket = communicator.create_socket()
            reg_info = communicator.register(socket, config, num_trainers)
            aggregator = Aggregator(
                config.num_aggregator,
                num_trainers,
                reg_info.proc_rank,
                reg_info.server_count,
                communicator.create_socket,
            )
        except BaseException:
            if socket is not None:
                socket.close(linger=0)
            communicator.close()
            raise

        self._communicator = communicator
        self._socket = socket
        self._reg_info = reg_info
        self._num_trainers = num_trainers
        self.aggregator = aggregator
        self._row_config.clear()
        self._row_config_size.clear()

        self.is_pipeline = config.is_pipeline
        self.pipeline_barrier = None if self.is_pipeline else Barrier(num_trainers + 1)
        with self.data_cond:
            self.data_tag = [False] * len(trainer_list)
        self.trainers = trainer_list
        self.param_loader = param_loader
        self.double_buffer = _DoubleBuffer(num_trainers, self._tables0, self._tables1)
        self.lock_option = LockOption(config.lock_option)
        if self.lock_option is LockOption.LOCKED:
            self.lock_manager = LockManager(max(config.num_lock, 1))

        log.info("Rank %d/%d: Multiverso initialized successfully.\n", *self._rank_text())

    def close(self) -> None:
        """Close every server connection and stop the background threads."""
        if self._communicator is None:
            return
        for server in range(self.server_count):
            MsgPack.create(
                MsgType.CLOSE, MsgArrow.WORKER_TO_SERVER, self.process_rank, server
            ).send(self._socket)
        for _ in range(self.server_count):
            MsgPack.recv(self._socket)
        self._socket.close(linger=0)
        self._socket = None

        self.aggregator.close()
        self._communicator.close()
        self._communicator = None

        self.double_buffer = None
        self._tables0.clear()
        self._tables1.clear()
        self.lock_manager = None
        log.info("Rank %d/%d: Multiverso closed successfully.\n", *self._rank_text())

    def __enter__(self) -> "Multiverso":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def begin_config(self) -> None:
        log.info(
            "Rank %d/%d: Begin of configuration and initialization.\n",
            *self._rank_text(),
        )

    def end_config(self) -> None:
        """Push pending configuration and updates, then wait on every server."""
        self._require_init()
        self._flush_set_server_row()
        for trainer in range(self._num_trainers):
            self.aggregator.add(trainer, 0, DeltaType.FLUSH, 0)
            self.aggregator.add(trainer, 0, DeltaType.CLOCK, 0)
        self.aggregator.wait()

        for server in range(self.server_count):
            MsgPack.create(
                MsgType.BARRIER, MsgArrow.WORKER_TO_SERVER, self.process_rank, server
            ).send(self._socket)
        for _ in range(self.server_count):
            MsgPack.recv(self._socket)
        log.info(
            "Rank %d/%d: End of configration and initialization.\n", *self._rank_text()
        )

    def add_table(
        self,
        table,
        rows,
        cols,
        element_type=ElementType.INT,
        default_format=Format.DENSE,
    ) -> None:
        """Create a table on the servers, in the cache and in the aggregator.

        Tables must be added in order of their ids, starting from 0.
        """
        self._require_init()
        if table != len(self._tables0):
            raise ValueError(
                f"Table {table} added out of order; expected {len(self._tables0)}"
            )
        element_type = ElementType(element_type)
        default_format = Format(default_format)
        for server in range(self.server_count):
            pack = MsgPack.create(
                MsgType.CREATE_TABLE, MsgArrow.WORKER_TO_SERVER, self.process_rank, server
            )
            pack.push(
                _CREATE_TABLE.pack(table, rows, cols, int(element_type), int(default_format))
            )
            pack.send(self._socket)
        self._tables0.append(Table(table, rows, cols, element_type, default_format))
        self._tables1.append(Table(table, rows, cols, element_type, default_format))
        self.aggregator.create_table(table, rows, cols, element_type, default_format)

    def set_row(self, table, row, format, capacity) -> None:
        """Configure a row on the servers, in the cache and in the aggregator."""
        self._require_init()
        format = Format(format)
        self._tables0[table].set_row(row, format, capacity)
        self._tables1[table].set_row(row, format, capacity)
        self._set_server_row(table, row, format, capacity)
        self.aggregator.set_aggregator_row(table, row, format, capacity)

    def _set_server_row(self, table, row, format, capacity) -> None:
        server = (table + row) % self.server_count
        pack = self._row_config.get(server)
        if pack is None:
            pack = self._row_config[server] = MsgPack.create(
                MsgType.SET_ROW, MsgArrow.WORKER_TO_SERVER, self.process_rank, server
            )
            self._row_config_size[server] = 0
        frame = _SET_ROW.pack(table, row, capacity, int(format))
        pack.push(frame)
        self._row_config_size[server] += len(frame)
        if self._row_config_size[server] >= MAX_MSG_SIZE:
            self._row_config.pop(server).send(self._socket)
            del self._row_config_size[server]

    def _flush_set_server_row(self) -> None:
        for server in sorted(self._row_config):
            self._row_config[server].send(self._socket)
        self._row_config.clear()
        self._row_config_size.clear()

    def add_to_server(self, table, row, col, delta) -> None:
        """Queue a delta to the servers on behalf of trainer 0."""
        self._require_init()
        if self._row_config:
            self._flush_set_server_row()
        self.aggregator.add(0, table, row, col, delta)

    def flush(self) -> None:
        """Ask the aggregator to send what every trainer has added."""
        self._require_init()
        for trainer in range(len(self.trainers)):
            self.aggregator.add(trainer, 0, DeltaType.FLUSH, 0)

    def begin_train(self) -> None:
        self._require_loader()
        log.info("Rank %d/%d: Begin of training.\n", *self._rank_text())
        self.param_loader.start()
        for trainer in self.trainers:
            trainer.start()

    def end_train(self) -> None:
        """Stop the loader, then the trainers, and tell server 0."""
        self._require_loader()
        self.param_loader.stop()
        for trainer in self.trainers:
            trainer.stop()
        MsgPack.create(
            MsgType.END_TRAIN, MsgArrow.WORKER_TO_SERVER, self.process_rank, 0
        ).send(self._socket)
        log.info("Rank %d/%d: End of training.\n", *self._rank_text())

    def begin_clock(self) -> None:
        self.push_data_block(self._begin_clock_block)

    def end_clock(self) -> None:
        self.push_data_block(self._end_clock_block)

    def push_data_block(self, data_block) -> None:
        """Hand a data block to the loader and to every trainer."""
        self._require_loader()
        data_block.increase_count(1)
        self.param_loader.push_data_block(data_block)
        for trainer in self.trainers:
            trainer.push_data_block(data_block)

    def wait(self) -> None:
        """Block until every trainer has emptied its data queue."""
        with self.data_cond:
            self.data_cond.wait_for(lambda: all(self.data_tag))