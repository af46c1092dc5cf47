"""Piped-mode session: reads command frames, drives the controller, writes events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .controller import ControllerState, ExecutionController
from .device import Device
from .errors import DecodeError
from .protocol import Event, FrameDecoder, decode_command, encode_event
from .transport import StreamTransport

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    read_size: int = 4096
    log_commands: bool = False


class DebugSession:
    """One controller/device pairing over a StreamTransport.

    Resynchronization: an unknown prefix byte drops the run of bytes up to
    the next recognised prefix and reports one ErrorOutput for the run.
    """

    def __init__(
        self,
        device: Device,
        transport: StreamTransport,
        config: Optional[SessionConfig] = None,
    ) -> None:
        self.config = config or SessionConfig()
        self.transport = transport
        self.transport.read_size = self.config.read_size
        self.decoder = FrameDecoder(decode_command)
        self.controller = ExecutionController(device, self.emit)
        self.events_sent = 0

    @property
    def state(self) -> ControllerState:
        return self.controller.state

    def emit(self, event: Event) -> None:
        self.transport.write_frame(encode_event(event))
        self.events_sent += 1

    def feed(self, data: bytes) -> ControllerState:
        """Buffer ``data`` and apply every complete command it finishes."""
        self.decoder.feed(data)
        self._drain(final=False)
        return self.controller.state

    def _drain(self, *, final: bool) -> None:
        while not self.controller.terminal:
            try:
                command = self.decoder.next(final=final)
            except DecodeError as exc:
                self.controller.report(exc)
                continue
            if command is None:
                break
            if self.config.log_commands:
                logger.info("command %r", command)
            self.controller.handle(command)

    def run(self) -> ControllerState:
        """Serve commands until a terminal state or end of input."""
        logger.info("piped session started")
        try:
            while not self.controller.terminal:
                chunk = self.transport.read()
                if not chunk:
                    self._handle_eof()
                    break
                self.feed(chunk)
        finally:
            self.transport.close()
        logger.info("piped session ended in state %s after %d events", self.controller.state.value, self.events_sent)
        return self.controller.state

    def _handle_eof(self) -> None:
        # Input is over: a trailing full chunk now ends its payload.
        self._drain(final=True)
        leftover = self.decoder.reset()
        if leftover and not self.controller.terminal:
            self.controller.report(
                DecodeError(f"truncated frame at end of input ({len(leftover)} bytes)", consumed=len(leftover))
            )
        logger.info("inbound stream closed")
        self.controller.stop()


__all__ = ["DebugSession", "SessionConfig"]
