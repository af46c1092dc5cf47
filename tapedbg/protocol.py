"""
Frame codec for the piped debug protocol.

Every frame is ``<prefix><payload>``.  Payload layouts:

    none        Step, StepIgnoringBreakpoints, Stop, RequestDump, RequestStack,
                KeyRequested, StringRequested, EndOfProgram, Crashed
    addr:2      SetBreakpoint, ClearBreakpoint, BreakpointHit
    char:1      InputKey
    a1:2 a2:2   RequestMemory
    a:2 n:1 b*n SetMemory
    id:1 v:2    SetRegister
    chunked     InputString, Output, ErrorOutput, DumpResult, MemoryResult,
                StackResult

Two byte fields are big-endian.  A chunked payload is a run of
``<prefix><len:1><bytes>`` frames sharing one prefix.  A frame holding
exactly 255 bytes is continued when the next frame repeats the prefix; a
shorter frame, a different prefix or the end of input ends the payload, so
a payload of L bytes takes ceil(L/255) frames.
"""

from __future__ import annotations

import string
import struct
from dataclasses import dataclass
from typing import Callable, ClassVar, Dict, List, Optional, Tuple, Type, Union

from .errors import DecodeError, IncompleteFrame

MAX_CHUNK = 255
ADDRESS = struct.Struct(">H")
MEMORY_RANGE = struct.Struct(">HH")
REGISTER_WRITE = struct.Struct(">BH")

Buffer = Union[bytes, bytearray, memoryview]

NAMED_KEYS: Dict[str, str] = {
    "escape": "\x1b",
    "space": " ",
    "return": "\n",
    "tab": "\t",
    "backspace": "\x08",
}
PUNCTUATION = "!\"#$%&'()*+,-./:;<=>?@[\\]^_`{|}~"
VALID_KEYS = frozenset(string.ascii_letters + string.digits + PUNCTUATION) | frozenset(NAMED_KEYS.values())


def is_valid_key(key: str) -> bool:
    return len(key) == 1 and key in VALID_KEYS


def validate_key(key: str) -> str:
    """Return ``key`` if it is a supported key press, else raise ValueError.

    Named keys (``"escape"``, ``"space"``...) are translated to their byte.
    """
    key = NAMED_KEYS.get(key, key)
    if not is_valid_key(key):
        raise ValueError(f"unsupported key {key!r}")
    return key


def _check_u16(value: int, what: str) -> int:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{what} 0x{value:X} does not fit in 16 bits")
    return value


# ---------------------------------------------------------------------------
# Commands (controller -> device)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Step:
    PREFIX: ClassVar[bytes] = b"e"


@dataclass(frozen=True)
class StepIgnoringBreakpoints:
    PREFIX: ClassVar[bytes] = b"f"


@dataclass(frozen=True)
class Stop:
    PREFIX: ClassVar[bytes] = b"x"


@dataclass(frozen=True)
class SetBreakpoint:
    addr: int
    PREFIX: ClassVar[bytes] = b"b"


@dataclass(frozen=True)
class ClearBreakpoint:
    addr: int
    PREFIX: ClassVar[bytes] = b"c"


@dataclass(frozen=True)
class RequestDump:
    PREFIX: ClassVar[bytes] = b"d"


@dataclass(frozen=True)
class InputKey:
    key: str
    PREFIX: ClassVar[bytes] = b"i"


@dataclass(frozen=True)
class InputString:
    text: str
    PREFIX: ClassVar[bytes] = b"t"


@dataclass(frozen=True)
class RequestMemory:
    start: int
    end: int
    PREFIX: ClassVar[bytes] = b"m"


@dataclass(frozen=True)
class RequestStack:
    PREFIX: ClassVar[bytes] = b"s"


@dataclass(frozen=True)
class SetMemory:
    addr: int
    data: bytes
    PREFIX: ClassVar[bytes] = b"n"


@dataclass(frozen=True)
class SetRegister:
    reg_id: int
    value: int
    PREFIX: ClassVar[bytes] = b"r"


Command = Union[
    Step,
    StepIgnoringBreakpoints,
    Stop,
    SetBreakpoint,
    ClearBreakpoint,
    RequestDump,
    InputKey,
    InputString,
    RequestMemory,
    RequestStack,
    SetMemory,
    SetRegister,
]

COMMAND_TYPES: Dict[bytes, Type] = {
    cls.PREFIX: cls
    for cls in (
        Step,
        StepIgnoringBreakpoints,
        Stop,
        SetBreakpoint,
        ClearBreakpoint,
        RequestDump,
        InputKey,
        InputString,
        RequestMemory,
        RequestStack,
        SetMemory,
        SetRegister,
    )
}


# ---------------------------------------------------------------------------
# Events (device -> controller)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Output:
    text: str
    PREFIX: ClassVar[bytes] = b"o"


@dataclass(frozen=True)
class ErrorOutput:
    text: str
    PREFIX: ClassVar[bytes] = b"e"


@dataclass(frozen=True)
class BreakpointHit:
    addr: int
    PREFIX: ClassVar[bytes] = b"h"


@dataclass(frozen=True)
class DumpResult:
    text: str
    PREFIX: ClassVar[bytes] = b"d"


@dataclass(frozen=True)
class MemoryResult:
    data: bytes
    PREFIX: ClassVar[bytes] = b"m"


@dataclass(frozen=True)
class StackResult:
    data: bytes
    PREFIX: ClassVar[bytes] = b"s"


@dataclass(frozen=True)
class KeyRequested:
    PREFIX: ClassVar[bytes] = b"k"


@dataclass(frozen=True)
class StringRequested:
    PREFIX: ClassVar[bytes] = b"t"


@dataclass(frozen=True)
class EndOfProgram:
    PREFIX: ClassVar[bytes] = b"f"


@dataclass(frozen=True)
class Crashed:
    PREFIX: ClassVar[bytes] = b"c"


Event = Union[
    Output,
    ErrorOutput,
    BreakpointHit,
    DumpResult,
    MemoryResult,
    StackResult,
    KeyRequested,
    StringRequested,
    EndOfProgram,
    Crashed,
]

EVENT_TYPES: Dict[bytes, Type] = {
    cls.PREFIX: cls
    for cls in (
        Output,
        ErrorOutput,
        BreakpointHit,
        DumpResult,
        MemoryResult,
        StackResult,
        KeyRequested,
        StringRequested,
        EndOfProgram,
        Crashed,
    )
}

_EMPTY_COMMANDS = (Step, StepIgnoringBreakpoints, Stop, RequestDump, RequestStack)
_EMPTY_EVENTS = (KeyRequested, StringRequested, EndOfProgram, Crashed)
_TEXT_EVENTS = (Output, ErrorOutput, DumpResult)
_BLOB_EVENTS = (MemoryResult, StackResult)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def chunk_payload(raw: bytes) -> List[bytes]:
    """Split ``raw`` into ``ceil(len/255)`` frame-sized pieces (one empty piece for ``b""``)."""
    pieces = [bytes(raw[idx : idx + MAX_CHUNK]) for idx in range(0, len(raw), MAX_CHUNK)]
    return pieces or [b""]


def encode_chunked(prefix: bytes, raw: bytes) -> bytes:
    return b"".join(prefix + bytes([len(piece)]) + piece for piece in chunk_payload(raw))


def _decode_chunked(data: Buffer, final: bool) -> Tuple[bytes, int]:
    # A full frame continues only if the next byte repeats the prefix; at the
    # end of the buffer that is unknown until more bytes arrive or input ends.
    prefix = data[0]
    pieces: List[bytes] = []
    offset = 0
    while True:
        if len(data) < offset + 2:
            raise IncompleteFrame(f"waiting for chunk header of {bytes([prefix])!r}")
        length = data[offset + 1]
        end = offset + 2 + length
        if len(data) < end:
            raise IncompleteFrame(f"waiting for {end - len(data)} more bytes of {bytes([prefix])!r}")
        pieces.append(bytes(data[offset + 2 : end]))
        offset = end
        if length < MAX_CHUNK:
            break
        if len(data) == offset:
            if final:
                break
            raise IncompleteFrame(f"full chunk of {bytes([prefix])!r} may continue")
        if data[offset] != prefix:
            break
    return b"".join(pieces), offset


def _need(data: Buffer, size: int) -> None:
    if len(data) < size:
        raise IncompleteFrame(f"frame {bytes(data[:1])!r} needs {size} bytes, have {len(data)}")


def _skip_unknown(data: Buffer, table: Dict[bytes, Type]) -> int:
    for index in range(1, len(data)):
        if bytes((data[index],)) in table:
            return index
    return len(data)


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode_command(command: Command) -> bytes:
    if type(command) not in COMMAND_TYPES.values():
        raise TypeError(f"not a command: {command!r}")
    prefix = command.PREFIX
    if isinstance(command, _EMPTY_COMMANDS):
        return prefix
    if isinstance(command, (SetBreakpoint, ClearBreakpoint)):
        return prefix + ADDRESS.pack(_check_u16(command.addr, "address"))
    if isinstance(command, InputKey):
        return prefix + validate_key(command.key).encode("ascii")
    if isinstance(command, InputString):
        return encode_chunked(prefix, command.text.encode("utf-8"))
    if isinstance(command, RequestMemory):
        return prefix + MEMORY_RANGE.pack(_check_u16(command.start, "address"), _check_u16(command.end, "address"))
    if isinstance(command, SetMemory):
        if len(command.data) > MAX_CHUNK:
            raise ValueError(f"SetMemory carries at most {MAX_CHUNK} bytes, got {len(command.data)}")
        return prefix + ADDRESS.pack(_check_u16(command.addr, "address")) + bytes([len(command.data)]) + bytes(command.data)
    if isinstance(command, SetRegister):
        if not 0 <= command.reg_id <= 0xFF:
            raise ValueError(f"register id {command.reg_id} does not fit in one byte")
        return prefix + REGISTER_WRITE.pack(command.reg_id, _check_u16(command.value, "register value"))
    raise AssertionError(f"unhandled command type {type(command).__name__}")


def decode_command(data: Buffer, *, final: bool = True) -> Tuple[Command, int]:
    """Decode one command from the front of ``data``.

    Returns the command and the number of bytes it used.  Raises
    IncompleteFrame when ``data`` ends mid-frame and DecodeError when the
    bytes cannot be a command.  With ``final=False`` a trailing 255 byte
    chunk is held back because the next chunk may still be on its way.
    """
    if not data:
        raise IncompleteFrame("empty buffer")
    cls = COMMAND_TYPES.get(bytes(data[:1]))
    if cls is None:
        raise DecodeError(f"unknown command prefix 0x{data[0]:02X}", consumed=_skip_unknown(data, COMMAND_TYPES))
    if cls in _EMPTY_COMMANDS:
        return cls(), 1
    if cls in (SetBreakpoint, ClearBreakpoint):
        _need(data, 3)
        return cls(ADDRESS.unpack_from(data, 1)[0]), 3
    if cls is InputKey:
        _need(data, 2)
        key = chr(data[1])
        if not is_valid_key(key):
            raise DecodeError(f"unsupported key byte 0x{data[1]:02X}", consumed=2)
        return InputKey(key), 2
    if cls is InputString:
        raw, used = _decode_chunked(data, final)
        return InputString(_text(raw)), used
    if cls is RequestMemory:
        _need(data, 5)
        start, end = MEMORY_RANGE.unpack_from(data, 1)
        return RequestMemory(start, end), 5
    if cls is SetMemory:
        _need(data, 4)
        length = data[3]
        _need(data, 4 + length)
        return SetMemory(ADDRESS.unpack_from(data, 1)[0], bytes(data[4 : 4 + length])), 4 + length
    if cls is SetRegister:
        _need(data, 4)
        reg_id, value = REGISTER_WRITE.unpack_from(data, 1)
        return SetRegister(reg_id, value), 4
    raise AssertionError(f"unhandled command type {cls.__name__}")


def encode_event(event: Event) -> bytes:
    if type(event) not in EVENT_TYPES.values():
        raise TypeError(f"not an event: {event!r}")
    prefix = event.PREFIX
    if isinstance(event, _EMPTY_EVENTS):
        return prefix
    if isinstance(event, BreakpointHit):
        return prefix + ADDRESS.pack(_check_u16(event.addr, "address"))
    if isinstance(event, _TEXT_EVENTS):
        return encode_chunked(prefix, event.text.encode("utf-8"))
    if isinstance(event, _BLOB_EVENTS):
        return encode_chunked(prefix, bytes(event.data))
    raise AssertionError(f"unhandled event type {type(event).__name__}")


def decode_event(data: Buffer, *, final: bool = True) -> Tuple[Event, int]:
    """Decode one event from the front of ``data`` (mirror of decode_command)."""
    if not data:
        raise IncompleteFrame("empty buffer")
    cls = EVENT_TYPES.get(bytes(data[:1]))
    if cls is None:
        raise DecodeError(f"unknown event prefix 0x{data[0]:02X}", consumed=_skip_unknown(data, EVENT_TYPES))
    if cls in _EMPTY_EVENTS:
        return cls(), 1
    if cls is BreakpointHit:
        _need(data, 3)
        return BreakpointHit(ADDRESS.unpack_from(data, 1)[0]), 3
    raw, used = _decode_chunked(data, final)
    if cls in _TEXT_EVENTS:
        return cls(_text(raw)), used
    return cls(raw), used


def encode_frames(commands) -> bytes:
    """Concatenate the encodings of several commands, in order."""
    return b"".join(encode_command(command) for command in commands)


class FrameDecoder:
    """Incremental decoder over a byte stream.

    ``next()`` returns a decoded frame, ``None`` when more bytes are needed,
    or raises DecodeError after dropping the offending bytes so the caller
    can report the error and keep going.  Pass ``final=True`` once the
    stream has ended so a trailing full chunk completes its payload.
    """

    def __init__(self, decode: Callable[..., Tuple[object, int]] = decode_command) -> None:
        self._decode = decode
        self._buffer = b""
        self._pos = 0

    def feed(self, data: bytes) -> None:
        # Consumed bytes are dropped here, once per read, not once per frame.
        self._buffer = self._buffer[self._pos :] + bytes(data)
        self._pos = 0

    @property
    def pending(self) -> int:
        return len(self._buffer) - self._pos

    def next(self, *, final: bool = False) -> Optional[object]:
        if self._pos >= len(self._buffer):
            return None
        view = memoryview(self._buffer)[self._pos :]
        try:
            frame, consumed = self._decode(view, final=final)
        except IncompleteFrame:
            return None
        except DecodeError as exc:
            self._pos += max(1, exc.consumed)
            raise
        self._pos += consumed
        return frame

    def reset(self) -> bytes:
        """Drop and return whatever is still buffered."""
        leftover = self._buffer[self._pos :]
        self._buffer = b""
        self._pos = 0
        return leftover


__all__ = [
    "MAX_CHUNK",
    "NAMED_KEYS",
    "VALID_KEYS",
    "is_valid_key",
    "validate_key",
    "Command",
    "Event",
    "Step",
    "StepIgnoringBreakpoints",
    "Stop",
    "SetBreakpoint",
    "ClearBreakpoint",
    "RequestDump",
    "InputKey",
    "InputString",
    "RequestMemory",
    "RequestStack",
    "SetMemory",
    "SetRegister",
    "Output",
    "ErrorOutput",
    "BreakpointHit",
    "DumpResult",
    "MemoryResult",
    "StackResult",
    "KeyRequested",
    "StringRequested",
    "EndOfProgram",
    "Crashed",
    "COMMAND_TYPES",
    "EVENT_TYPES",
    "chunk_payload",
    "encode_chunked",
    "encode_command",
    "decode_command",
    "encode_event",
    "decode_event",
    "encode_frames",
    "FrameDecoder",
]
