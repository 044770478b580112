import socket as pysocket
import threading
import time
import uuid

import pytest

from multiverso.data_block import DataBlockBase, DataBlockType
from multiverso.lock import LockManager
from multiverso.multiverso import Config, LockOption, Multiverso
from multiverso.row import ElementType, Format
from multiverso.server import Server


def _free_port():
    with pysocket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _Recorder:
    def __init__(self):
        self.blocks = []
        self.started = False
        self.stopped = False

    def push_data_block(self, block):
        self.blocks.append(block)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


@pytest.fixture
def cluster(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    port = _free_port()
    server = Server(0, 1, f"tcp://127.0.0.1:{port}")
    endpoint_file = tmp_path / "servers.txt"
    endpoint_file.write_text(f"0 127.0.0.1:{port}\n")
    config = Config(
        server_endpoint_file=str(endpoint_file),
        comm_endpoint=f"inproc://mv-test-{uuid.uuid4().hex}",
    )
    yield server, config
    server.close()


def test_requires_init():
    with pytest.raises(RuntimeError):
        Multiverso().add_table(0, 2, 2)


def test_init_registers_with_server(cluster):
    server, config = cluster
    mv = Multiverso()
    mv.init(config)
    assert (mv.process_rank, mv.process_count, mv.server_count) == (0, 1, 1)
    assert mv.total_trainer_count == config.num_trainers
    assert mv.num_trainers == config.num_trainers
    mv.close()
    server.wait_to_complete()
    assert not server.is_working


def test_locked_option_creates_lock_manager(cluster):
    _, config = cluster
    config.lock_option = LockOption.LOCKED
    config.num_lock = 0
    mv = Multiverso()
    mv.init(config)
    try:
        assert isinstance(mv.lock_manager, LockManager)
        assert len(mv.lock_manager) == 1
    finally:
        mv.close()
    assert mv.lock_manager is None


def test_add_table_out_of_order(cluster):
    _, config = cluster
    mv = Multiverso()
    mv.init(config)
    try:
        with pytest.raises(ValueError):
            mv.add_table(1, 4, 3)
        assert mv.cache_tables == ()
    finally:
        mv.close()


def test_set_row_configures_every_table(cluster):
    server, config = cluster
    mv = Multiverso()
    mv.init(config)
    mv.add_table(0, 4, 3, ElementType.INT, Format.DENSE)
    mv.set_row(0, 2, Format.SPARSE, 8)
    assert mv.cache_tables[0].get_row_info(2).format is Format.SPARSE
    assert mv.cache_tables[0].get_row_info(2).capacity == 8
    assert mv.aggregator.tables[0].get_row_info(2).capacity == 8
    mv.end_config()
    mv.close()
    server.wait_to_complete()
    assert server.tables[0].get_row_info(2).format is Format.SPARSE
    assert server.tables[0].get_row_info(2).capacity == 8


def test_add_to_server_reaches_server(cluster, tmp_path):
    server, config = cluster
    mv = Multiverso()
    mv.init(config)
    mv.begin_config()
    mv.add_table(0, 4, 3)
    mv.end_config()
    mv.add_to_server(0, 1, 2, 5)
    mv.end_config()
    mv.close()
    server.wait_to_complete()
    assert server.tables[0].get_row(1).at(2) == 5
    assert (tmp_path / "server_0_table_0.model").read_text() == "1 2:5\n"


def test_push_data_block_forwards(cluster):
    _, config = cluster
    loader = _Recorder()
    trainers = [_Recorder(), _Recorder()]
    mv = Multiverso()
    mv.init(config, trainers, loader)
    try:
        block = DataBlockBase()
        mv.push_data_block(block)
        assert block.count == 1
        assert loader.blocks == [block]
        assert all(t.blocks == [block] for t in trainers)
        mv.begin_clock()
        mv.end_clock()
        assert [b.type for b in loader.blocks[1:]] == [
            DataBlockType.BEGIN_CLOCK,
            DataBlockType.END_CLOCK,
        ]
    finally:
        mv.close()


def test_begin_and_end_train(cluster):
    _, config = cluster
    loader = _Recorder()
    trainers = [_Recorder()]
    mv = Multiverso()
    mv.init(config, trainers, loader)
    try:
        mv.begin_train()
        assert loader.started and trainers[0].started
        mv.end_train()
        assert loader.stopped and trainers[0].stopped
    finally:
        mv.close()


def test_begin_train_without_loader(cluster):
    _, config = cluster
    mv = Multiverso()
    mv.init(config)
    try:
        with pytest.raises(RuntimeError):
            mv.begin_train()
    finally:
        mv.close()


def test_wait_until_all_tags_set(cluster):
    _, config = cluster
    mv = Multiverso()
    mv.init(config, [_Recorder(), _Recorder()], _Recorder())
    try:
        assert mv.data_tag == [False, False]

        def finish():
            time.sleep(0.05)
            with mv.data_cond:
                mv.data_tag[:] = [True, True]
                mv.data_cond.notify_all()

        thread = threading.Thread(target=finish)
        thread.start()
        mv.wait()
        thread.join()
        assert mv.data_tag == [True, True]
    finally:
        mv.close()


def test_double_buffer_swaps_after_loader(cluster):
    _, config = cluster
    mv = Multiverso()
    mv.init(config)
    try:
        mv.add_table(0, 2, 2)
        buffer = mv.double_buffer
        filled = buffer.io_buffer
        buffer.start(0)
        buffer.end(0)
        assert buffer.worker_buffer is filled
        buffer.start(1)
        assert buffer.worker_buffer[0].table_id == 0
        buffer.end(1)
        assert buffer.io_buffer is filled
    finally:
        mv.close()