"""Shared ZeroMQ context, socket creation and polling helpers."""

from __future__ import annotations

import threading
from collections.abc import Sequence

import zmq

from .msg_pack import MsgPack

__all__ = [
    "COMM_ENDPOINT",
    "SERVER_ENDPOINT",
    "ZMQ_IO_THREADS",
    "POLL_TIMEOUT",
    "get_context",
    "create_socket",
    "poll",
]

COMM_ENDPOINT = "inproc://multiverso-comm"
"""Endpoint of the in-process communicator."""

SERVER_ENDPOINT = "inproc://multiverso-server"
"""Endpoint of a server living in the same process."""

ZMQ_IO_THREADS = 1
POLL_TIMEOUT = 10
"""Poll timeout in milliseconds."""

_context: zmq.Context | None = None
_context_lock = threading.Lock()


def get_context() -> zmq.Context:
    """Return the process-wide context, creating it on first use."""
    global _context
    with _context_lock:
        if _context is None or _context.closed:
            _context = zmq.Context(io_threads=ZMQ_IO_THREADS)
        return _context


def create_socket(endpoint=COMM_ENDPOINT) -> zmq.Socket:
    """Create a DEALER socket connected to ``endpoint``."""
    socket = get_context().socket(zmq.DEALER)
    socket.connect(endpoint)
    return socket


def poll(poller: zmq.Poller, sockets: Sequence, timeout=POLL_TIMEOUT) -> list[MsgPack]:
    """Receive one message from each readable socket, in the order given."""
    events = dict(poller.poll(timeout))
    return [
        MsgPack.recv(socket)
        for socket in sockets
        if events.get(socket, 0) & zmq.POLLIN
    ]