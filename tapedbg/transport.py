"""
Byte-stream transport for piped mode.

Wraps one inbound and one outbound binary stream (normally stdin/stdout of
the device process).  Frames are written and flushed under a lock so a
reader never sees two frames interleaved.
"""

from __future__ import annotations

import io
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from .errors import TapeDebugError

LOGGER = logging.getLogger("tapedbg.transport")


class TransportError(TapeDebugError):
    """Raised when a stream cannot be read or written."""


@dataclass
class StreamTransport:
    reader: BinaryIO
    writer: BinaryIO
    read_size: int = 4096

    _write_lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _closed: bool = field(init=False, default=False)

    @classmethod
    def from_stdio(cls, read_size: int = 4096) -> "StreamTransport":
        return cls(sys.stdin.buffer, sys.stdout.buffer, read_size=read_size)

    @classmethod
    def from_fds(cls, read_fd: int, write_fd: int, read_size: int = 4096) -> "StreamTransport":
        reader = os.fdopen(read_fd, "rb")
        writer = os.fdopen(write_fd, "wb")
        return cls(reader, writer, read_size=read_size)

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self) -> bytes:
        """Return the next available bytes; ``b""`` means end of stream."""
        if self._closed:
            return b""
        read1 = getattr(self.reader, "read1", None)
        try:
            if read1 is not None:
                return read1(self.read_size)
            return self.reader.read(self.read_size) or b""
        except (OSError, ValueError) as exc:
            raise TransportError(f"read failed: {exc}") from exc

    def write_frame(self, frame: bytes) -> None:
        """Write one complete frame atomically."""
        with self._write_lock:
            if self._closed:
                raise TransportError("transport closed")
            try:
                self.writer.write(frame)
                self.writer.flush()
            except (OSError, ValueError) as exc:
                raise TransportError(f"write failed: {exc}") from exc

    def close(self) -> None:
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            try:
                self.writer.flush()
            except (OSError, ValueError) as exc:
                LOGGER.debug("flush on close failed: %s", exc)

    def close_stream(self, which: str) -> None:
        """Close the underlying ``"reader"`` or ``"writer"`` stream."""
        stream = self.reader if which == "reader" else self.writer
        try:
            stream.close()
        except (OSError, ValueError) as exc:
            LOGGER.debug("closing %s failed: %s", which, exc)


def memory_transport(inbound: bytes = b"") -> StreamTransport:
    """Transport over in-memory buffers; handy for scripted sessions."""
    return StreamTransport(io.BytesIO(inbound), io.BytesIO())


__all__ = ["StreamTransport", "TransportError", "memory_transport"]
