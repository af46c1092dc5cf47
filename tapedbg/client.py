"""
Controller-side client for the piped debug protocol.

``DeviceClient`` writes command frames and decodes the event stream on a
background reader thread.  Because commands are applied strictly in order,
request helpers that need to know when the device is done append a
RequestDump as a fence and collect everything up to the DumpResult.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Iterable, List, Optional, Sequence, Tuple, Type

from .errors import ClientError, DecodeError
from .inspector import DeviceSnapshot
from .protocol import (
    MAX_CHUNK,
    BreakpointHit,
    ClearBreakpoint,
    Command,
    Crashed,
    DumpResult,
    EndOfProgram,
    ErrorOutput,
    Event,
    FrameDecoder,
    InputKey,
    InputString,
    KeyRequested,
    MemoryResult,
    Output,
    RequestDump,
    RequestMemory,
    RequestStack,
    SetBreakpoint,
    SetMemory,
    SetRegister,
    StackResult,
    Step,
    StepIgnoringBreakpoints,
    Stop,
    StringRequested,
    decode_event,
    encode_command,
    validate_key,
)
from .transport import StreamTransport, TransportError

LOGGER = logging.getLogger("tapedbg.client")


@dataclass
class ClientConfig:
    reply_timeout: float = 5.0
    shutdown_timeout: float = 2.0
    python: str = sys.executable


@dataclass
class Exchange:
    """Everything the device emitted in answer to one client request."""

    events: List[Event] = field(default_factory=list)
    snapshot: Optional[DeviceSnapshot] = None

    @property
    def output(self) -> str:
        return "".join(event.text for event in self.events if isinstance(event, Output))

    @property
    def errors(self) -> List[str]:
        return [event.text for event in self.events if isinstance(event, ErrorOutput)]

    @property
    def breakpoint(self) -> Optional[int]:
        for event in self.events:
            if isinstance(event, BreakpointHit):
                return event.addr
        return None

    @property
    def waiting_for(self) -> Optional[str]:
        for event in reversed(self.events):
            if isinstance(event, KeyRequested):
                return "key"
            if isinstance(event, StringRequested):
                return "string"
        return None

    @property
    def finished(self) -> bool:
        return any(isinstance(event, (EndOfProgram, Crashed)) for event in self.events)

    @property
    def crashed(self) -> bool:
        return any(isinstance(event, Crashed) for event in self.events)


class DeviceClient:
    """Drive a piped device over a StreamTransport."""

    def __init__(
        self,
        transport: StreamTransport,
        config: Optional[ClientConfig] = None,
        *,
        process: Optional[subprocess.Popen] = None,
    ) -> None:
        self.transport = transport
        self.config = config or ClientConfig()
        self.process = process
        self.finished = False
        self._events: Deque[Event] = deque()
        self._side: List[Event] = []
        self._cv = threading.Condition(threading.Lock())
        self._eof = False
        self._reader = threading.Thread(target=self._reader_loop, name="tapedbg-events", daemon=True)
        self._reader.start()

    @classmethod
    def spawn(
        cls,
        program: Path,
        config: Optional[ClientConfig] = None,
        *,
        extra_args: Sequence[str] = (),
    ) -> "DeviceClient":
        """Start ``python -m tapedbg run --piped PROGRAM`` and attach to it."""
        config = config or ClientConfig()
        cmd = [config.python, "-m", "tapedbg", "run", "--piped", str(program), *extra_args]
        LOGGER.debug("spawning %s", cmd)
        process = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        assert process.stdin is not None and process.stdout is not None
        transport = StreamTransport(process.stdout, process.stdin)
        return cls(transport, config, process=process)

    #
    # Event stream
    #
    def _reader_loop(self) -> None:
        decoder = FrameDecoder(decode_event)
        while True:
            try:
                chunk = self.transport.read()
            except TransportError as exc:
                LOGGER.debug("event stream closed: %s", exc)
                break
            if not chunk:
                break
            decoder.feed(chunk)
            self._publish(decoder, final=False)
        self._publish(decoder, final=True)
        with self._cv:
            self._eof = True
            self._cv.notify_all()

    def _publish(self, decoder: FrameDecoder, *, final: bool) -> None:
        while True:
            try:
                event = decoder.next(final=final)
            except DecodeError as exc:
                LOGGER.warning("dropping undecodable event bytes: %s", exc)
                continue
            if event is None:
                return
            with self._cv:
                self._events.append(event)
                self._cv.notify_all()

    def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Pop the next event; ``None`` once the device closed its stream."""
        wait = self.config.reply_timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        with self._cv:
            while not self._events:
                if self._eof:
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ClientError("timed out waiting for a device event")
                self._cv.wait(timeout=remaining)
            event = self._events.popleft()
        if isinstance(event, (EndOfProgram, Crashed)):
            self.finished = True
        return event

    def drain_events(self) -> List[Event]:
        """Return events no request claimed, oldest first, and forget them."""
        with self._cv:
            events = self._side + list(self._events)
            self._side = []
            self._events.clear()
        if any(isinstance(event, (EndOfProgram, Crashed)) for event in events):
            self.finished = True
        return events

    #
    # Sending
    #
    def send(self, command: Command) -> None:
        if self.finished:
            raise ClientError("device session has ended")
        try:
            self.transport.write_frame(encode_command(command))
        except TransportError as exc:
            raise ClientError(f"cannot reach device: {exc}") from exc

    def _await(self, kinds: Tuple[Type, ...]) -> Event:
        while True:
            event = self.next_event()
            if event is None:
                raise ClientError("device closed the event stream")
            if isinstance(event, kinds):
                return event
            if isinstance(event, ErrorOutput):
                raise ClientError(event.text)
            with self._cv:
                self._side.append(event)

    def _exchange(self, commands: Iterable[Command]) -> Exchange:
        for command in commands:
            self.send(command)
        self.send(RequestDump())
        exchange = Exchange()
        while True:
            event = self.next_event()
            if event is None:
                self.finished = True
                return exchange
            if isinstance(event, DumpResult):
                exchange.snapshot = DeviceSnapshot.from_json(event.text)
                return exchange
            exchange.events.append(event)
            if isinstance(event, (EndOfProgram, Crashed)):
                return exchange

    def _query(self, command: Command, kind: Type) -> Event:
        # The fence also ends a reply whose last chunk is exactly 255 bytes.
        exchange = self._exchange([command])
        if exchange.errors:
            raise ClientError("; ".join(exchange.errors))
        for event in exchange.events:
            if isinstance(event, kind):
                return event
        raise ClientError(f"device sent no {kind.__name__}")

    def _apply(self, commands: Iterable[Command]) -> DeviceSnapshot:
        exchange = self._exchange(commands)
        if exchange.errors:
            raise ClientError("; ".join(exchange.errors))
        if exchange.snapshot is None:
            raise ClientError("device ended before acknowledging the request")
        return exchange.snapshot

    #
    # Requests
    #
    def step(self, count: int = 1) -> Exchange:
        return self._exchange([Step()] * count)

    def step_over_breakpoints(self, count: int = 1) -> Exchange:
        return self._exchange([StepIgnoringBreakpoints()] * count)

    def send_key(self, key: str) -> Exchange:
        return self._exchange([InputKey(validate_key(key))])

    def send_string(self, text: str) -> Exchange:
        return self._exchange([InputString(text)])

    def set_breakpoint(self, addr: int) -> None:
        self._apply([SetBreakpoint(addr)])

    def clear_breakpoint(self, addr: int) -> None:
        self._apply([ClearBreakpoint(addr)])

    def write_memory(self, addr: int, data: bytes) -> None:
        commands = [
            SetMemory(addr + offset, bytes(data[offset : offset + MAX_CHUNK]))
            for offset in range(0, len(data), MAX_CHUNK)
        ]
        self._apply(commands)

    def set_register(self, reg_id: int, value: int) -> DeviceSnapshot:
        return self._apply([SetRegister(reg_id, value)])

    def dump(self) -> DeviceSnapshot:
        self.send(RequestDump())
        event = self._await((DumpResult,))
        return DeviceSnapshot.from_json(event.text)

    def read_memory(self, start: int, end: int) -> bytes:
        return self._query(RequestMemory(start, end), MemoryResult).data

    def read_stack(self) -> bytes:
        return self._query(RequestStack(), StackResult).data

    def stop(self) -> None:
        if not self.finished:
            try:
                self.send(Stop())
            except ClientError as exc:
                LOGGER.debug("stop not delivered: %s", exc)
        self.finished = True
        self.close()

    def close(self) -> None:
        # Closing our end of the command stream is EOF for the device.
        self.transport.close()
        self.transport.close_stream("writer")
        process = self.process
        if process is not None:
            try:
                process.wait(timeout=self.config.shutdown_timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning("device process %d did not exit; killing it", process.pid)
                process.kill()
                process.wait()
        self._reader.join(timeout=self.config.shutdown_timeout)
        if not self._reader.is_alive():
            self.transport.close_stream("reader")


__all__ = ["ClientConfig", "DeviceClient", "Exchange"]
