"""Interactive debugger front-end driving a piped device through DeviceClient."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Callable, Dict, List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory
from tabulate import tabulate

from .client import DeviceClient, Exchange
from .device import REGISTER_IDS
from .errors import ClientError
from .inspector import DeviceSnapshot
from .protocol import BreakpointHit, DumpResult, ErrorOutput, Event, MemoryResult, Output, StackResult

LOGGER = logging.getLogger("tapedbg.repl")

PROMPT = "(tapedbg) "
DEFAULT_CONTINUE_LIMIT = 10000


def split_command(line: str) -> List[str]:
    """Split a REPL line into tokens; ValueError on an unclosed quote."""
    return shlex.split(line)


def _parse_int(text: str, what: str = "value") -> int:
    try:
        return int(text, 0)
    except ValueError:
        raise ValueError(f"{what} must be a number (decimal or 0x hex), got {text!r}") from None


def describe_event(event: Event) -> str:
    if isinstance(event, (Output, ErrorOutput)):
        return f"{type(event).__name__}: {event.text!r}"
    if isinstance(event, BreakpointHit):
        return f"BreakpointHit: 0x{event.addr:04X}"
    if isinstance(event, DumpResult):
        return f"DumpResult: {event.text}"
    if isinstance(event, (MemoryResult, StackResult)):
        return f"{type(event).__name__}: {len(event.data)} bytes"
    return type(event).__name__


def render_snapshot(snapshot: DeviceSnapshot) -> str:
    rows = [
        ("pc", f"0x{snapshot.pc:04X}", snapshot.pc),
        ("acc", f"0x{snapshot.acc:02X}", snapshot.acc),
        ("sp", f"0x{snapshot.sp:04X}", snapshot.sp),
        ("fp", f"0x{snapshot.fp:04X}", snapshot.fp),
    ]
    rows += [(f"d{idx}", f"0x{value:02X}", value) for idx, value in enumerate(snapshot.data_reg)]
    rows += [(f"a{idx}", f"0x{value:04X}", value) for idx, value in enumerate(snapshot.addr_reg)]
    table = tabulate(rows, headers=["register", "hex", "dec"], tablefmt="github", disable_numparse=True)
    flag = "set" if snapshot.overflowed else "clear"
    return f"{table}\noverflow: {flag}"


def render_hexdump(base: int, data: bytes, width: int = 16) -> str:
    if not data:
        return "(empty)"
    rows = []
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        text = "".join(chr(byte) if 0x20 <= byte < 0x7F else "." for byte in chunk)
        rows.append((f"0x{base + offset:04X}", " ".join(f"{byte:02X}" for byte in chunk), text))
    return tabulate(rows, headers=["addr", "bytes", "ascii"], tablefmt="plain", disable_numparse=True)


class DebuggerREPL:
    """prompt_toolkit REPL over a DeviceClient."""

    def __init__(self, client: DeviceClient, *, history_path: Optional[Path] = None) -> None:
        self.client = client
        self.history_path = history_path
        self._commands: Dict[str, Callable[[List[str]], Optional[bool]]] = {
            "step": self._cmd_step,
            "s": self._cmd_step,
            "stepi": self._cmd_stepi,
            "si": self._cmd_stepi,
            "cont": self._cmd_continue,
            "c": self._cmd_continue,
            "break": self._cmd_break,
            "b": self._cmd_break,
            "clear": self._cmd_clear,
            "dump": self._cmd_dump,
            "regs": self._cmd_dump,
            "mem": self._cmd_mem,
            "stack": self._cmd_stack,
            "key": self._cmd_key,
            "str": self._cmd_str,
            "poke": self._cmd_poke,
            "reg": self._cmd_reg,
            "events": self._cmd_events,
            "help": self._cmd_help,
            "quit": self._cmd_quit,
            "exit": self._cmd_quit,
        }
        self.breakpoints: List[int] = []

    def run(self) -> int:
        history = FileHistory(str(self.history_path)) if self.history_path else InMemoryHistory()
        session = PromptSession(PROMPT, history=history)
        while True:
            try:
                line = session.prompt()
            except (EOFError, KeyboardInterrupt):
                print()
                break
            if self.dispatch(line):
                break
            if self.client.finished:
                print("device session ended")
                break
        self.client.stop()
        return 0

    def dispatch(self, line: str) -> bool:
        """Run one command line.  Returns True when the REPL should exit."""
        try:
            argv = split_command(line)
        except ValueError as exc:
            print(f"Parse error: {exc}")
            return False
        if not argv:
            return False
        name, *args = argv
        handler = self._commands.get(name)
        if handler is None:
            print(f"Unknown command: {name}")
            return False
        try:
            return bool(handler(args))
        except (ClientError, ValueError, IndexError) as exc:
            LOGGER.debug("command %s failed", name, exc_info=True)
            print(f"error: {exc}")
            return False

    def _show_exchange(self, exchange: Exchange) -> None:
        if exchange.output:
            print(exchange.output, end="" if exchange.output.endswith("\n") else "\n")
        for message in exchange.errors:
            print(f"error: {message}")
        if exchange.breakpoint is not None:
            print(f"breakpoint hit at 0x{exchange.breakpoint:04X}")
        if exchange.waiting_for:
            print(f"program is waiting for {exchange.waiting_for} input")
        if exchange.crashed:
            print("device crashed")
        elif exchange.finished:
            print("end of program")
        elif exchange.snapshot is not None:
            print(f"pc=0x{exchange.snapshot.pc:04X}")

    def _cmd_step(self, args: List[str]) -> None:
        self._show_exchange(self.client.step(_parse_int(args[0], "count") if args else 1))

    def _cmd_stepi(self, args: List[str]) -> None:
        self._show_exchange(self.client.step_over_breakpoints(_parse_int(args[0], "count") if args else 1))

    def _cmd_continue(self, args: List[str]) -> None:
        limit = _parse_int(args[0]) if args else DEFAULT_CONTINUE_LIMIT
        # The first step skips a breakpoint sitting on the current pc.
        exchange = self.client.step_over_breakpoints()
        steps = 1
        while steps < limit and not (exchange.finished or exchange.waiting_for or exchange.breakpoint is not None):
            if exchange.output:
                print(exchange.output, end="")
            exchange = self.client.step()
            steps += 1
        self._show_exchange(exchange)

    def _cmd_break(self, args: List[str]) -> None:
        if not args:
            print("breakpoints: " + (", ".join(f"0x{addr:04X}" for addr in self.breakpoints) or "(none)"))
            return
        addr = _parse_int(args[0], "address")
        self.client.set_breakpoint(addr)
        if addr not in self.breakpoints:
            self.breakpoints.append(addr)
        print(f"breakpoint set at 0x{addr:04X}")

    def _cmd_clear(self, args: List[str]) -> None:
        addr = _parse_int(args[0], "address")
        self.client.clear_breakpoint(addr)
        if addr in self.breakpoints:
            self.breakpoints.remove(addr)
        print(f"breakpoint cleared at 0x{addr:04X}")

    def _cmd_dump(self, args: List[str]) -> None:
        print(render_snapshot(self.client.dump()))

    def _cmd_mem(self, args: List[str]) -> None:
        start, end = _parse_int(args[0], "address"), _parse_int(args[1], "address")
        print(render_hexdump(start, self.client.read_memory(start, end)))

    def _cmd_stack(self, args: List[str]) -> None:
        snapshot = self.client.dump()
        print(render_hexdump(snapshot.sp, self.client.read_stack()))

    def _cmd_key(self, args: List[str]) -> None:
        self._show_exchange(self.client.send_key(args[0]))

    def _cmd_str(self, args: List[str]) -> None:
        self._show_exchange(self.client.send_string(" ".join(args)))

    def _cmd_poke(self, args: List[str]) -> None:
        addr = _parse_int(args[0], "address")
        data = bytes(_parse_int(value, "byte") for value in args[1:])
        self.client.write_memory(addr, data)
        print(f"wrote {len(data)} bytes at 0x{addr:04X}")

    def _cmd_reg(self, args: List[str]) -> None:
        name = args[0].lower()
        if name not in REGISTER_IDS:
            raise ValueError(f"unknown register {args[0]!r} (expected one of {', '.join(REGISTER_IDS)})")
        value = _parse_int(args[1])
        self.client.set_register(REGISTER_IDS[name], value)
        print(f"{name} = {value}")

    def _cmd_events(self, args: List[str]) -> None:
        events = self.client.drain_events()
        if not events:
            print("(no pending events)")
            return
        for event in events:
            print(describe_event(event))

    def _cmd_help(self, args: List[str]) -> None:
        rows = [
            ("step [n]", "execute n instructions, stopping at breakpoints"),
            ("stepi [n]", "execute n instructions ignoring breakpoints"),
            ("cont [max]", "step until a breakpoint, input request or the end"),
            ("break [ADDR]", "set a breakpoint (or list them)"),
            ("clear ADDR", "remove a breakpoint"),
            ("dump", "show registers"),
            ("mem FROM TO", "show memory FROM..TO (exclusive)"),
            ("stack", "show the stack"),
            ("key K", "answer a key request (a letter or escape/space/return/tab/backspace)"),
            ("str TEXT", "answer a string request"),
            ("poke ADDR B..", "write bytes to memory"),
            ("reg NAME VALUE", "set a register"),
            ("events", "show device events no command has claimed"),
            ("quit", "stop the device and exit"),
        ]
        print(tabulate(rows, tablefmt="plain"))

    def _cmd_quit(self, args: List[str]) -> bool:
        return True


__all__ = ["DebuggerREPL", "describe_event", "render_snapshot", "render_hexdump", "split_command"]
