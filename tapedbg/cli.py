"""tapedbg CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

from .client import ClientConfig, DeviceClient
from .device import MiniDevice
from .errors import TapeDebugError
from .repl import DebuggerREPL
from .session import DebugSession, SessionConfig
from .transport import StreamTransport

LOG = logging.getLogger("tapedbg.cli")


def _configure_logging(level: str) -> None:
    # Always stderr: stdout carries event frames in piped mode.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tapedbg", description="Run or debug a tape device program")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("TAPEDBG_LOG", "WARNING"),
        help="Logging level (default WARNING, or $TAPEDBG_LOG)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.required = True

    run = sub.add_parser("run", help="Run a program")
    run.add_argument("program", type=Path, help="Raw program image")
    run.add_argument(
        "--piped",
        action="store_true",
        help="Wait for debug commands on stdin and write events to stdout",
    )
    run.add_argument("--max-steps", type=int, help="Stop an unattended run after this many instructions")
    run.add_argument("--log-commands", action="store_true", help="Log every decoded command (piped mode)")

    debug = sub.add_parser("debug", help="Start the program in piped mode and attach the interactive debugger")
    debug.add_argument("program", type=Path, help="Raw program image")
    debug.add_argument(
        "--history",
        type=Path,
        default=Path.home() / ".tapedbg-history",
        help="Path to command history file",
    )
    debug.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait for each device reply")
    return parser


def _load_program(path: Path) -> bytes:
    return path.expanduser().read_bytes()


def _run(args: argparse.Namespace) -> int:
    device = MiniDevice(_load_program(args.program))
    if not args.piped:
        return device.run(max_steps=args.max_steps)
    session = DebugSession(device, StreamTransport.from_stdio(), SessionConfig(log_commands=args.log_commands))
    session.run()
    return 1 if session.controller.crashed else 0


def _debug(args: argparse.Namespace) -> int:
    program = args.program.expanduser()
    if not program.is_file():
        raise FileNotFoundError(program)
    client = DeviceClient.spawn(program, ClientConfig(reply_timeout=args.timeout))
    repl = DebuggerREPL(client, history_path=args.history)
    return repl.run()


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        if args.command == "run":
            return _run(args)
        return _debug(args)
    except (OSError, ValueError, TapeDebugError) as exc:
        LOG.debug("command failed", exc_info=True)
        print(f"tapedbg: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
