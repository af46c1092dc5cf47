"""Error hierarchy shared by the protocol engine and the client."""

from __future__ import annotations


class TapeDebugError(RuntimeError):
    """Base class for every tapedbg failure."""


class DecodeError(TapeDebugError):
    """Raised when inbound bytes do not form a valid frame.

    ``consumed`` is the number of bytes the caller should discard before
    trying again.
    """

    def __init__(self, message: str, consumed: int = 1) -> None:
        super().__init__(message)
        self.consumed = consumed


class IncompleteFrame(TapeDebugError):
    """Raised when the buffer ends in the middle of a frame."""


class ProtocolViolation(TapeDebugError):
    """Raised when a command is not valid in the current controller state."""


class AddressOutOfRange(TapeDebugError):
    """Raised when a memory or stack access falls outside the device."""


class DeviceCrash(TapeDebugError):
    """Raised by a device when the running program faults."""


class ClientError(TapeDebugError):
    """Raised by the controller-side client when a request cannot complete."""


__all__ = [
    "TapeDebugError",
    "DecodeError",
    "IncompleteFrame",
    "ProtocolViolation",
    "AddressOutOfRange",
    "DeviceCrash",
    "ClientError",
]
