"""Multi-frame messages exchanged between workers and servers."""

from __future__ import annotations

import enum
import struct
from collections.abc import Iterable
from typing import NamedTuple

__all__ = ["MAX_MSG_SIZE", "MsgType", "MsgArrow", "Header", "MsgPack"]

MAX_MSG_SIZE = 1 << 20
"""Upper bound in bytes on the payload gathered into one message."""

_HEADER = struct.Struct("<4i")
_LENGTH = struct.Struct("<i")


class MsgType(enum.IntEnum):
    """Kind of a message; a reply carries the negated type of its request."""

    REGISTER = 1
    CLOSE = 2
    BARRIER = 3
    CREATE_TABLE = 4
    SET_ROW = 5
    CLOCK = 6
    END_TRAIN = 7
    GET = 8
    ADD = 9
    REPLY_REGISTER = -1
    REPLY_CLOSE = -2
    REPLY_BARRIER = -3
    REPLY_CREATE_TABLE = -4
    REPLY_SET_ROW = -5
    REPLY_CLOCK = -6
    REPLY_END_TRAIN = -7
    REPLY_GET = -8
    REPLY_ADD = -9


class MsgArrow(enum.IntEnum):
    """Direction of a message."""

    WORKER_TO_SERVER = 0
    SERVER_TO_WORKER = 1


class Header(NamedTuple):
    type: MsgType
    arrow: MsgArrow
    src: int
    dst: int


class MsgPack:
    """A list of frames: routing addresses, an empty delimiter, a header, data.

    The header is the first frame after the first empty frame, or the first
    frame when there is no empty one. Indices used by :meth:`get_msg` and
    the length count from the header, so frame 0 is the header.
    """

    def __init__(self, frames: Iterable = ()):
        self._frames: list[bytes] = []
        self._start = 0
        for frame in frames:
            self.push(frame)

    @classmethod
    def create(cls, type, arrow, src, dst) -> "MsgPack":
        """Build a message with an empty delimiter and a header."""
        pack = cls([b""])
        pack.push(_HEADER.pack(int(type), int(arrow), src, dst))
        return pack

    @classmethod
    def recv(cls, socket) -> "MsgPack":
        """Receive one multi-part message from ``socket``."""
        return cls(socket.recv_multipart())

    @classmethod
    def deserialize(cls, data) -> "MsgPack":
        """Rebuild a message from the output of :meth:`serialize`."""
        view = memoryview(data)
        size = len(view)
        pack = cls()
        pos = 0
        while pos < size:
            if pos + _LENGTH.size > size:
                raise ValueError("truncated frame length")
            (length,) = _LENGTH.unpack_from(view, pos)
            pos += _LENGTH.size
            if length < 0 or pos + length > size:
                raise ValueError(f"invalid frame length {length}")
            pack.push(view[pos:pos + length])
            pos += length
        return pack

    @property
    def frames(self) -> tuple[bytes, ...]:
        return tuple(self._frames)

    def push(self, frame) -> None:
        """Append a frame; the first empty frame marks where the header starts."""
        frame = bytes(frame)
        self._frames.append(frame)
        if self._start == 0 and not frame:
            self._start = len(self._frames)

    def _raw_header(self) -> tuple[int, int, int, int]:
        if self._start >= len(self._frames):
            raise ValueError("message has no header")
        try:
            return _HEADER.unpack_from(self._frames[self._start])
        except struct.error as exc:
            raise ValueError("malformed message header") from exc

    def header(self) -> Header:
        msg_type, arrow, src, dst = self._raw_header()
        return Header(MsgType(msg_type), MsgArrow(arrow), src, dst)

    def get_msg(self, i) -> bytes:
        """Return frame ``i`` counted from the header."""
        if not 0 <= i < len(self):
            raise IndexError(f"frame {i} out of range")
        return self._frames[self._start + i]

    def send(self, socket) -> None:
        socket.send_multipart(self._frames)

    def create_reply(self) -> "MsgPack":
        """Build a reply: same addresses, negated type, reversed direction."""
        msg_type, arrow, src, dst = self._raw_header()
        reply = MsgPack(self._frames[:self._start])
        reply.push(_HEADER.pack(-msg_type, 1 - arrow, dst, src))
        return reply

    def serialize(self) -> bytes:
        """Encode every frame as its length followed by its bytes."""
        return b"".join(_LENGTH.pack(len(frame)) + frame for frame in self._frames)

    def __len__(self) -> int:
        return len(self._frames) - self._start

    def __repr__(self) -> str:
        return f"MsgPack(frames={len(self._frames)}, start={self._start})"