"""Worker-side router between local threads and the parameter servers."""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass, replace

import zmq

from . import log
from .endpoint_list import EndpointList
from .msg_pack import MsgArrow, MsgPack, MsgType
from .zmq_util import COMM_ENDPOINT, create_socket, get_context, poll

__all__ = ["RegisterInfo", "Communicator"]

_REGISTER_REQUEST = struct.Struct("<3i")
_REGISTER_REPLY = struct.Struct("<4i")


@dataclass
class RegisterInfo:
    """What a worker process learns when it registers with the servers."""

    proc_rank: int = -1
    proc_count: int = -1
    server_count: int = -1
    total_trainer_count: int = 0


class Communicator:
    """Forwards messages between local sockets and the servers.

    A ROUTER socket bound at ``config.comm_endpoint`` collects messages from
    local DEALER sockets; a message going to a server is sent on the DEALER
    connected to the server named by its destination, and replies coming
    back from servers are routed to the local socket that asked.
    """

    def __init__(self, config):
        self._comm_endpoint = getattr(config, "comm_endpoint", COMM_ENDPOINT)
        endpoints = EndpointList(getattr(config, "server_endpoint_file", ""))
        self._server_endpoints = [
            f"tcp://{endpoints.get_endpoint(i)}" for i in range(len(endpoints))
        ]
        self._reg_info = RegisterInfo()
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._startup_error: zmq.ZMQError | None = None
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name="communicator", daemon=True
        )
        self._thread.start()
        self._ready.wait()
        if self._startup_error is not None:
            self._thread.join()
            self._closed = True
            raise self._startup_error

    @property
    def reg_info(self) -> RegisterInfo:
        return replace(self._reg_info)

    @property
    def comm_endpoint(self) -> str:
        return self._comm_endpoint

    @property
    def server_endpoints(self) -> tuple[str, ...]:
        return tuple(self._server_endpoints)

    def register(self, socket, config, num_trainers) -> RegisterInfo:
        """Register this process with server 0 and return the assigned info."""
        info = self._reg_info
        if info.server_count < 0:
            info.server_count = len(self._server_endpoints)
        request = MsgPack.create(
            MsgType.REGISTER, MsgArrow.WORKER_TO_SERVER, info.proc_rank, 0
        )
        request.push(
            _REGISTER_REQUEST.pack(num_trainers, info.server_count, config.max_delay)
        )
        request.send(socket)

        reply = MsgPack.recv(socket)
        rank, count, servers, trainers = _REGISTER_REPLY.unpack_from(reply.get_msg(1))
        if info.proc_rank < 0:
            info.proc_rank = rank
        if info.proc_count < 0:
            info.proc_count = count
        if info.server_count != servers:
            log.fatal(
                "Rank %d/%d: Inconsistance in number of servers: local=%d vs. global=%d\n",
                info.proc_rank, info.proc_count, info.server_count, servers,
            )
        info.total_trainer_count = trainers
        return replace(info)

    def create_socket(self) -> zmq.Socket:
        """Return a new DEALER socket connected to this communicator."""
        return create_socket(self._comm_endpoint)

    def close(self) -> None:
        """Stop forwarding once no more messages are pending."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        self._thread.join()

    def __enter__(self) -> "Communicator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _run(self) -> None:
        context = get_context()
        sockets: list[zmq.Socket] = []
        try:
            router = context.socket(zmq.ROUTER)
            sockets.append(router)
            router.bind(self._comm_endpoint)
            for endpoint in self._server_endpoints:
                dealer = context.socket(zmq.DEALER)
                sockets.append(dealer)
                dealer.connect(endpoint)
        except zmq.ZMQError as exc:
            self._startup_error = exc
            for sock in sockets:
                sock.close(linger=0)
            self._ready.set()
            return

        dealers = sockets[1:]
        poller = zmq.Poller()
        for sock in sockets:
            poller.register(sock, zmq.POLLIN)
        self._ready.set()
        try:
            while True:
                packs = poll(poller, sockets)
                if not packs and self._stop.is_set():
                    break
                for pack in packs:
                    self._forward(pack, router, dealers)
        finally:
            for sock in sockets:
                sock.close(linger=1000)

    @staticmethod
    def _forward(pack: MsgPack, router, dealers) -> None:
        try:
            header = pack.header()
        except ValueError as exc:
            log.error("Communicator: dropping malformed message: %s\n", exc)
            return
        if header.arrow is MsgArrow.WORKER_TO_SERVER:
            if 0 <= header.dst < len(dealers):
                pack.send(dealers[header.dst])
            else:
                log.error("Communicator: no server with id %d\n", header.dst)
        else:
            pack.send(router)