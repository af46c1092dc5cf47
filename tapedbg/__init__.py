"""
tapedbg - piped debug-control protocol for the tape device.

An external debugger drives the device over two byte streams: command
frames in, event frames out.  Each module owns one concern:

    protocol.py     → frame codec, command/event types, chunking
    breakpoints.py  → breakpoint registry
    inspector.py    → register/memory/stack access and dump snapshots
    iobridge.py     → program output and key/string input requests
    controller.py   → execution state machine
    session.py      → piped-mode loop over a transport
    transport.py    → byte streams with atomic frame writes
    client.py       → controller-side client
    repl.py / cli.py → interactive debugger and command line
"""

from .breakpoints import BreakpointRegistry  # noqa: F401
from .client import ClientConfig, DeviceClient, Exchange  # noqa: F401
from .controller import ControllerState, ExecutionController  # noqa: F401
from .device import MiniDevice, RunResult  # noqa: F401
from .errors import (  # noqa: F401
    AddressOutOfRange,
    ClientError,
    DecodeError,
    DeviceCrash,
    ProtocolViolation,
    TapeDebugError,
)
from .inspector import DeviceSnapshot, StateInspector  # noqa: F401
from .iobridge import IOBridge, PendingInput  # noqa: F401
from .protocol import FrameDecoder, decode_command, decode_event, encode_command, encode_event  # noqa: F401
from .session import DebugSession, SessionConfig  # noqa: F401
from .transport import StreamTransport  # noqa: F401

__all__ = [
    "BreakpointRegistry",
    "ClientConfig",
    "DeviceClient",
    "Exchange",
    "ControllerState",
    "ExecutionController",
    "MiniDevice",
    "RunResult",
    "AddressOutOfRange",
    "ClientError",
    "DecodeError",
    "DeviceCrash",
    "ProtocolViolation",
    "TapeDebugError",
    "DeviceSnapshot",
    "StateInspector",
    "IOBridge",
    "PendingInput",
    "FrameDecoder",
    "decode_command",
    "decode_event",
    "encode_command",
    "encode_event",
    "DebugSession",
    "SessionConfig",
    "StreamTransport",
]

__version__ = "0.1.0"
