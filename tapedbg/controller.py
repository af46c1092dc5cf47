"""Execution controller: the state machine behind piped mode.

States:

    IDLE       ready for the next command
    SUSPENDED  the program is blocked on a key/string request
    FINISHED   EndOfProgram or Crashed was emitted (terminal)
    STOPPED    Stop was received (terminal)

Commands are applied one at a time in arrival order.  Only Step and
StepIgnoringBreakpoints execute instructions; everything else takes effect
immediately.  While SUSPENDED, Step variants are rejected (not queued) and
the matching input command completes the blocked instruction.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

from .breakpoints import BreakpointRegistry
from .device import Device, RunResult
from .errors import AddressOutOfRange, DecodeError, DeviceCrash, ProtocolViolation, TapeDebugError
from .inspector import StateInspector
from .iobridge import IOBridge
from .protocol import (
    BreakpointHit,
    ClearBreakpoint,
    Command,
    Crashed,
    DumpResult,
    EndOfProgram,
    ErrorOutput,
    Event,
    InputKey,
    InputString,
    MemoryResult,
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
)

LOGGER = logging.getLogger("tapedbg.controller")

RECOVERABLE_ERRORS = (DecodeError, ProtocolViolation, AddressOutOfRange)


class ControllerState(enum.Enum):
    IDLE = "idle"
    SUSPENDED = "suspended"
    FINISHED = "finished"
    STOPPED = "stopped"


TERMINAL_STATES = frozenset({ControllerState.FINISHED, ControllerState.STOPPED})


class ExecutionController:
    """Owns breakpoints, inspector and I/O bridge for one device session."""

    def __init__(
        self,
        device: Device,
        emit: Callable[[Event], None],
        *,
        breakpoints: Optional[BreakpointRegistry] = None,
        inspector: Optional[StateInspector] = None,
        bridge: Optional[IOBridge] = None,
    ) -> None:
        self.device = device
        self._emit = emit
        self.breakpoints = breakpoints if breakpoints is not None else BreakpointRegistry()
        self.inspector = inspector if inspector is not None else StateInspector(device)
        self.bridge = bridge if bridge is not None else IOBridge(device, emit)
        self.bridge.attach()
        self.state = ControllerState.IDLE
        self.instructions_executed = 0
        self.crashed = False

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def handle(self, command: Command) -> ControllerState:
        """Apply one command and return the resulting state."""
        if self.terminal:
            LOGGER.debug("ignoring %r in terminal state %s", command, self.state.value)
            return self.state
        LOGGER.debug("applying %r in state %s", command, self.state.value)
        try:
            self._dispatch(command)
        except RECOVERABLE_ERRORS as exc:
            self.report(exc)
        return self.state

    def report(self, error: TapeDebugError) -> None:
        """Surface a recoverable error to the controller as ErrorOutput."""
        LOGGER.warning("%s: %s", type(error).__name__, error)
        self._emit(ErrorOutput(f"{type(error).__name__}: {error}"))

    def stop(self) -> None:
        if not self.terminal:
            LOGGER.info("session stopped in state %s", self.state.value)
            self.state = ControllerState.STOPPED

    def _dispatch(self, command: Command) -> None:
        if isinstance(command, Stop):
            self.stop()
        elif isinstance(command, Step):
            self._step(honor_breakpoints=True)
        elif isinstance(command, StepIgnoringBreakpoints):
            self._step(honor_breakpoints=False)
        elif isinstance(command, SetBreakpoint):
            self.breakpoints.set(command.addr)
        elif isinstance(command, ClearBreakpoint):
            self.breakpoints.clear(command.addr)
        elif isinstance(command, RequestDump):
            self._emit(DumpResult(self.inspector.dump().to_json()))
        elif isinstance(command, InputKey):
            self.bridge.supply_key(command.key)
            self._resume()
        elif isinstance(command, InputString):
            self.bridge.supply_string(command.text)
            self._resume()
        elif isinstance(command, RequestMemory):
            self._emit(MemoryResult(self.inspector.read_memory(command.start, command.end)))
        elif isinstance(command, RequestStack):
            self._emit(StackResult(self.inspector.read_stack()))
        elif isinstance(command, SetMemory):
            self.inspector.write_memory(command.addr, command.data)
        elif isinstance(command, SetRegister):
            self.inspector.write_register(command.reg_id, command.value)
        else:
            raise TypeError(f"not a command: {command!r}")

    def _step(self, *, honor_breakpoints: bool) -> None:
        if self.state is ControllerState.SUSPENDED:
            raise ProtocolViolation(f"step refused: program is waiting for {self.bridge.pending.value} input")
        pc = self.device.pc
        if honor_breakpoints and self.breakpoints.contains(pc):
            LOGGER.debug("breakpoint hit at 0x%04X", pc)
            self._emit(BreakpointHit(pc))
            return
        self._execute()

    def _resume(self) -> None:
        # The blocked instruction now has its input and runs to completion.
        self.state = ControllerState.IDLE
        self._execute()

    def _execute(self) -> None:
        try:
            result = self.device.step()
        except DeviceCrash as exc:
            LOGGER.info("device crashed: %s", exc)
            self._emit(ErrorOutput(str(exc)))
            self._emit(Crashed())
            self.crashed = True
            self.state = ControllerState.FINISHED
            return
        if result is RunResult.NEED_KEY:
            self.bridge.request_key()
            self.state = ControllerState.SUSPENDED
        elif result is RunResult.NEED_STRING:
            self.bridge.request_string()
            self.state = ControllerState.SUSPENDED
        elif result is RunResult.HALT:
            self.instructions_executed += 1
            LOGGER.info("end of program after %d instructions", self.instructions_executed)
            self._emit(EndOfProgram())
            self.state = ControllerState.FINISHED
        else:
            self.instructions_executed += 1
            self.state = ControllerState.IDLE


__all__ = ["ControllerState", "ExecutionController", "TERMINAL_STATES", "RECOVERABLE_ERRORS"]
