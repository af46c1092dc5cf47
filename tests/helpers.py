"""Shared helpers for tapedbg tests."""

from __future__ import annotations

from typing import List, Union

from tapedbg.device import MiniDevice
from tapedbg.protocol import FrameDecoder, decode_event

Op = Union[int, str, bytes]


def program(*ops: Op) -> bytes:
    """Build a program image from ints, single characters and byte strings."""
    out = bytearray()
    for op in ops:
        if isinstance(op, (bytes, bytearray)):
            out.extend(op)
        elif isinstance(op, str):
            out.extend(op.encode("ascii"))
        else:
            out.append(op & 0xFF)
    return bytes(out)


def device(*ops: Op) -> MiniDevice:
    return MiniDevice(program(*ops))


def decode_all(data: bytes) -> List[object]:
    decoder = FrameDecoder(decode_event)
    decoder.feed(data)
    events = []
    while True:
        event = decoder.next(final=True)
        if event is None:
            break
        events.append(event)
    assert decoder.pending == 0, "trailing bytes left in event stream"
    return events


def addr(value: int) -> bytes:
    return bytes([(value >> 8) & 0xFF, value & 0xFF])
