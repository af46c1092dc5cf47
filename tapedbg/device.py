"""
Device collaborator for the debug protocol.

The protocol engine only needs a handful of things from a device: its
register file, its memory, a way to execute one instruction and a way to
hand it the key or string it is blocked on.  ``Device`` documents that
surface; ``MiniDevice`` is a small reference machine used by the CLI and
the tests.
"""

from __future__ import annotations

import enum
import logging
import sys
from typing import Callable, List, Optional, Protocol

from .errors import DeviceCrash

LOGGER = logging.getLogger("tapedbg.device")

MEMORY_SIZE = 64 * 1024
STACK_TOP = 0xFFFF

REG_ACC = 0x01
REG_D0 = 0x02
REG_D1 = 0x03
REG_D2 = 0x04
REG_D3 = 0x05
REG_A0 = 0x06
REG_A1 = 0x07
REG_PC = 0x08
REG_SP = 0x09
REG_FP = 0x0A

REGISTER_NAMES = {
    REG_ACC: "acc",
    REG_D0: "d0",
    REG_D1: "d1",
    REG_D2: "d2",
    REG_D3: "d3",
    REG_A0: "a0",
    REG_A1: "a1",
    REG_PC: "pc",
    REG_SP: "sp",
    REG_FP: "fp",
}
REGISTER_IDS = {name: reg_id for reg_id, name in REGISTER_NAMES.items()}
BYTE_REGISTERS = frozenset({REG_ACC, REG_D0, REG_D1, REG_D2, REG_D3})


class RunResult(enum.Enum):
    OK = "ok"
    HALT = "halt"
    NEED_KEY = "need_key"
    NEED_STRING = "need_string"


class Device(Protocol):
    """Surface of the virtual machine that the protocol engine drives."""

    pc: int
    acc: int
    sp: int
    fp: int
    data_reg: List[int]
    addr_reg: List[int]
    overflow: bool
    memory: bytearray
    stack_top: int
    output_sink: Callable[[str], None]
    error_sink: Callable[[str], None]

    def step(self) -> RunResult:
        """Execute one instruction; raise DeviceCrash if the program faults."""

    def supply_key(self, key: str) -> None:
        ...

    def supply_string(self, text: str) -> None:
        ...


def register_width(reg_id: int) -> int:
    """Return the register width in bits; KeyError for unknown ids."""
    if reg_id not in REGISTER_NAMES:
        raise KeyError(reg_id)
    return 8 if reg_id in BYTE_REGISTERS else 16


def read_register(device: Device, reg_id: int) -> int:
    if reg_id == REG_ACC:
        return device.acc
    if REG_D0 <= reg_id <= REG_D3:
        return device.data_reg[reg_id - REG_D0]
    if REG_A0 <= reg_id <= REG_A1:
        return device.addr_reg[reg_id - REG_A0]
    if reg_id == REG_PC:
        return device.pc
    if reg_id == REG_SP:
        return device.sp
    if reg_id == REG_FP:
        return device.fp
    raise KeyError(reg_id)


def write_register(device: Device, reg_id: int, value: int) -> None:
    """Store ``value``; ValueError when it does not fit the register."""
    width = register_width(reg_id)
    if not 0 <= value < (1 << width):
        raise ValueError(f"value {value} does not fit {REGISTER_NAMES[reg_id]} ({width} bits)")
    if reg_id == REG_ACC:
        device.acc = value
    elif REG_D0 <= reg_id <= REG_D3:
        device.data_reg[reg_id - REG_D0] = value
    elif REG_A0 <= reg_id <= REG_A1:
        device.addr_reg[reg_id - REG_A0] = value
    elif reg_id == REG_PC:
        device.pc = value
    elif reg_id == REG_SP:
        device.sp = value
    else:
        device.fp = value


# Opcodes understood by MiniDevice (operand bytes in parentheses).
OP_NOP = 0x00
OP_HALT = 0x01
OP_CPY = 0x02  # (reg, value)
OP_INC = 0x03  # (reg)
OP_ADD = 0x04  # (reg, reg) -> acc
OP_PRTC = 0x05  # (char)
OP_PRTS = 0x06  # (addr:2) length-prefixed string
OP_EPRTC = 0x07  # (char) to the error stream
OP_RCHR = 0x08  # (reg) wait for a key
OP_RSTR = 0x09  # (addr:2) wait for a string, stored length-prefixed
OP_PUSH = 0x0A  # (value)
OP_POP = 0x0B  # (reg)
OP_JMP = 0x0C  # (addr:2)
OP_CALL = 0x0D  # (addr:2)
OP_RET = 0x0E

OPCODE_SIZES = {
    OP_NOP: 1,
    OP_HALT: 1,
    OP_CPY: 3,
    OP_INC: 2,
    OP_ADD: 3,
    OP_PRTC: 2,
    OP_PRTS: 3,
    OP_EPRTC: 2,
    OP_RCHR: 2,
    OP_RSTR: 3,
    OP_PUSH: 2,
    OP_POP: 2,
    OP_JMP: 3,
    OP_CALL: 3,
    OP_RET: 1,
}


def _print_output(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _print_error(text: str) -> None:
    sys.stderr.write(text)
    sys.stderr.flush()


class MiniDevice:
    """Reference tape machine: 64 KiB memory, 8-bit data path, downward stack."""

    def __init__(self, program: bytes, *, memory_size: int = MEMORY_SIZE) -> None:
        if len(program) > memory_size:
            raise ValueError(f"program of {len(program)} bytes does not fit {memory_size} bytes of memory")
        self.memory = bytearray(memory_size)
        self.memory[: len(program)] = program
        self.program_end = len(program)
        self.stack_top = min(STACK_TOP, memory_size - 1)
        self.pc = 0
        self.acc = 0
        self.sp = self.stack_top
        self.fp = self.stack_top
        self.data_reg = [0, 0, 0, 0]
        self.addr_reg = [0, 0]
        self.overflow = False
        self.steps = 0
        self.output_sink: Callable[[str], None] = _print_output
        self.error_sink: Callable[[str], None] = _print_error
        self._key: Optional[str] = None
        self._text: Optional[str] = None

    def supply_key(self, key: str) -> None:
        self._key = key

    def supply_string(self, text: str) -> None:
        self._text = text

    #
    # Memory helpers
    #
    def _fetch(self, offset: int) -> int:
        addr = self.pc + offset
        if addr >= len(self.memory):
            raise DeviceCrash(f"instruction at 0x{self.pc:04X} runs past the end of memory")
        return self.memory[addr]

    def _fetch16(self, offset: int) -> int:
        return (self._fetch(offset) << 8) | self._fetch(offset + 1)

    def _push(self, value: int) -> None:
        if self.sp <= self.program_end:
            raise DeviceCrash(f"stack overflow at 0x{self.pc:04X}")
        self.sp -= 1
        self.memory[self.sp] = value & 0xFF

    def _pop(self) -> int:
        if self.sp >= self.stack_top:
            raise DeviceCrash(f"stack underflow at 0x{self.pc:04X}")
        value = self.memory[self.sp]
        self.sp += 1
        return value

    def _push16(self, value: int) -> None:
        self._push(value & 0xFF)
        self._push((value >> 8) & 0xFF)

    def _pop16(self) -> int:
        high = self._pop()
        return (high << 8) | self._pop()

    def _reg(self, reg_id: int) -> int:
        try:
            return read_register(self, reg_id)
        except KeyError:
            raise DeviceCrash(f"invalid register 0x{reg_id:02X} at 0x{self.pc:04X}") from None

    def _set_reg(self, reg_id: int, value: int) -> None:
        try:
            write_register(self, reg_id, value)
        except KeyError:
            raise DeviceCrash(f"invalid register 0x{reg_id:02X} at 0x{self.pc:04X}") from None

    def _string_at(self, addr: int) -> str:
        if addr >= len(self.memory):
            raise DeviceCrash(f"string address 0x{addr:04X} outside memory")
        length = self.memory[addr]
        end = addr + 1 + length
        if end > len(self.memory):
            raise DeviceCrash(f"string at 0x{addr:04X} runs past the end of memory")
        return bytes(self.memory[addr + 1 : end]).decode("utf-8", errors="replace")

    #
    # Execution
    #
    def step(self) -> RunResult:
        if self.pc >= self.program_end:
            return RunResult.HALT
        op = self._fetch(0)
        size = OPCODE_SIZES.get(op)
        if size is None:
            raise DeviceCrash(f"illegal opcode 0x{op:02X} at 0x{self.pc:04X}")
        next_pc = self.pc + size

        if op == OP_NOP:
            pass
        elif op == OP_HALT:
            self.steps += 1
            return RunResult.HALT
        elif op == OP_CPY:
            self._set_reg(self._fetch(1), self._fetch(2))
        elif op == OP_INC:
            reg_id = self._fetch(1)
            value = self._reg(reg_id) + 1
            limit = 1 << register_width(reg_id)
            self.overflow = value >= limit
            self._set_reg(reg_id, value % limit)
        elif op == OP_ADD:
            value = self._reg(self._fetch(1)) + self._reg(self._fetch(2))
            self.overflow = value > 0xFF
            self.acc = value & 0xFF
        elif op == OP_PRTC:
            self.output_sink(chr(self._fetch(1)))
        elif op == OP_PRTS:
            self.output_sink(self._string_at(self._fetch16(1)))
        elif op == OP_EPRTC:
            self.error_sink(chr(self._fetch(1)))
        elif op == OP_RCHR:
            if self._key is None:
                return RunResult.NEED_KEY
            self._set_reg(self._fetch(1), ord(self._key) & 0xFF)
            self._key = None
        elif op == OP_RSTR:
            if self._text is None:
                return RunResult.NEED_STRING
            raw = self._text.encode("utf-8")[:0xFF]
            addr = self._fetch16(1)
            if addr + 1 + len(raw) > len(self.memory):
                raise DeviceCrash(f"string input at 0x{addr:04X} runs past the end of memory")
            self.memory[addr] = len(raw)
            self.memory[addr + 1 : addr + 1 + len(raw)] = raw
            self._text = None
        elif op == OP_PUSH:
            self._push(self._fetch(1))
        elif op == OP_POP:
            reg_id = self._fetch(1)
            if reg_id in BYTE_REGISTERS:
                self._set_reg(reg_id, self._pop())
            else:
                self._set_reg(reg_id, self._pop16())
        elif op == OP_JMP:
            next_pc = self._fetch16(1)
        elif op == OP_CALL:
            self._push16(next_pc)
            self._push16(self.fp)
            self.fp = self.sp
            next_pc = self._fetch16(1)
        elif op == OP_RET:
            self.sp = self.fp
            self.fp = self._pop16()
            next_pc = self._pop16()

        self.pc = next_pc
        self.steps += 1
        return RunResult.OK

    def run(
        self,
        *,
        read_key: Optional[Callable[[], str]] = None,
        read_string: Optional[Callable[[], str]] = None,
        max_steps: Optional[int] = None,
    ) -> int:
        """Run without a controller.  Returns 0 on halt, 1 on a crash."""
        read_string = read_string or (lambda: input())
        read_key = read_key or (lambda: (input() or "\n")[0])
        while max_steps is None or self.steps < max_steps:
            try:
                result = self.step()
            except DeviceCrash as exc:
                LOGGER.error("device crashed: %s", exc)
                self.error_sink(f"crash: {exc}\n")
                return 1
            if result is RunResult.HALT:
                return 0
            if result is RunResult.NEED_KEY:
                self.supply_key(read_key())
            elif result is RunResult.NEED_STRING:
                self.supply_string(read_string())
        LOGGER.warning("stopped after %d steps", self.steps)
        return 0


__all__ = [
    "Device",
    "MiniDevice",
    "RunResult",
    "MEMORY_SIZE",
    "STACK_TOP",
    "REGISTER_NAMES",
    "REGISTER_IDS",
    "register_width",
    "read_register",
    "write_register",
]
