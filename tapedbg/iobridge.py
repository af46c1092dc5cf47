"""I/O bridge between the running program and the protocol event stream."""

from __future__ import annotations

import enum
import logging
from typing import Callable

from .device import Device
from .errors import ProtocolViolation
from .protocol import ErrorOutput, Event, KeyRequested, Output, StringRequested, is_valid_key

LOGGER = logging.getLogger("tapedbg.iobridge")


class PendingInput(enum.Enum):
    NONE = "none"
    AWAITING_KEY = "key"
    AWAITING_STRING = "string"


class IOBridge:
    """Turns device output into events and routes controller input to the device.

    Each device write becomes one Output/ErrorOutput event; the frame codec
    splits it into 255 byte frames on the wire.  At most one input request
    is outstanding at a time.
    """

    def __init__(self, device: Device, emit: Callable[[Event], None]) -> None:
        self.device = device
        self._emit = emit
        self.pending = PendingInput.NONE

    def attach(self) -> None:
        """Install the bridge as the device's output and error sinks."""
        self.device.output_sink = self.write_output
        self.device.error_sink = self.write_error

    @property
    def waiting(self) -> bool:
        return self.pending is not PendingInput.NONE

    def write_output(self, text: str) -> None:
        if text:
            self._emit(Output(text))

    def write_error(self, text: str) -> None:
        if text:
            self._emit(ErrorOutput(text))

    def request_key(self) -> None:
        self._request(PendingInput.AWAITING_KEY, KeyRequested())

    def request_string(self) -> None:
        self._request(PendingInput.AWAITING_STRING, StringRequested())

    def _request(self, kind: PendingInput, event: Event) -> None:
        if self.pending is not PendingInput.NONE:
            raise ProtocolViolation(f"device asked for {kind.value} input while waiting for {self.pending.value}")
        self.pending = kind
        LOGGER.debug("program waiting for %s input", kind.value)
        self._emit(event)

    def supply_key(self, key: str) -> None:
        if self.pending is not PendingInput.AWAITING_KEY:
            raise ProtocolViolation(f"unexpected key input (pending: {self.pending.value})")
        if not is_valid_key(key):
            raise ProtocolViolation(f"unsupported key {key!r}")
        self.device.supply_key(key)
        self.pending = PendingInput.NONE

    def supply_string(self, text: str) -> None:
        if self.pending is not PendingInput.AWAITING_STRING:
            raise ProtocolViolation(f"unexpected string input (pending: {self.pending.value})")
        self.device.supply_string(text)
        self.pending = PendingInput.NONE


__all__ = ["IOBridge", "PendingInput"]
