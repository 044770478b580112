import socket as pysocket
import uuid

import pytest
import zmq

from multiverso.communicator import Communicator, RegisterInfo
from multiverso.multiverso import Config
from multiverso.msg_pack import Header, MsgArrow, MsgPack, MsgType
from multiverso.server import Server


def _free_port():
    with pysocket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def cluster(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    port = _free_port()
    server = Server(0, 1, f"tcp://127.0.0.1:{port}")
    endpoint_file = tmp_path / "servers.txt"
    endpoint_file.write_text(f"0 127.0.0.1:{port}\n")
    config = Config(
        server_endpoint_file=str(endpoint_file),
        comm_endpoint=f"inproc://comm-test-{uuid.uuid4().hex}",
        max_delay=2,
    )
    yield server, config
    server.close()


def _socket(comm):
    sock = comm.create_socket()
    sock.setsockopt(zmq.RCVTIMEO, 5000)
    return sock


def test_reg_info_before_register(cluster):
    _, config = cluster
    with Communicator(config) as comm:
        assert comm.reg_info == RegisterInfo(-1, -1, -1, 0)
        assert comm.server_endpoints == (
            "tcp://" + open(config.server_endpoint_file).read().split()[1],
        )


def test_register_returns_assigned_info(cluster):
    server, config = cluster
    with Communicator(config) as comm:
        sock = _socket(comm)
        try:
            info = comm.register(sock, config, 3)
        finally:
            sock.close(linger=0)
        assert info == RegisterInfo(
            proc_rank=0, proc_count=1, server_count=1, total_trainer_count=3
        )
        assert comm.reg_info == info
    assert server.max_delay == config.max_delay


def test_reply_routed_back_to_sender(cluster):
    _, config = cluster
    with Communicator(config) as comm:
        sock = _socket(comm)
        try:
            comm.register(sock, config, 1)
            MsgPack.create(MsgType.BARRIER, MsgArrow.WORKER_TO_SERVER, 0, 0).send(sock)
            reply = MsgPack.recv(sock)
        finally:
            sock.close(linger=0)
    assert reply.header() == Header(
        MsgType.REPLY_BARRIER, MsgArrow.SERVER_TO_WORKER, 0, 0
    )


def test_missing_endpoint_file_raises(tmp_path):
    config = Config(
        server_endpoint_file=str(tmp_path / "missing.txt"),
        comm_endpoint=f"inproc://comm-test-{uuid.uuid4().hex}",
    )
    with pytest.raises(OSError):
        Communicator(config)


def test_endpoint_in_use_raises(cluster):
    _, config = cluster
    with Communicator(config):
        with pytest.raises(zmq.ZMQError):
            Communicator(config)