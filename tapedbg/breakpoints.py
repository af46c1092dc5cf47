"""Breakpoint registry consulted by plain Step commands."""

from __future__ import annotations

import logging
from typing import Iterator, Set

from .errors import AddressOutOfRange

LOGGER = logging.getLogger("tapedbg.breakpoints")


class BreakpointRegistry:
    """Set of instruction addresses at which a plain Step pauses."""

    def __init__(self) -> None:
        self._addresses: Set[int] = set()

    @staticmethod
    def _check(addr: int) -> int:
        if not 0 <= addr <= 0xFFFF:
            raise AddressOutOfRange(f"breakpoint address 0x{addr:X} is not a 16-bit address")
        return addr

    def set(self, addr: int) -> None:
        self._addresses.add(self._check(addr))
        LOGGER.debug("breakpoint set at 0x%04X", addr)

    def clear(self, addr: int) -> None:
        self._addresses.discard(self._check(addr))
        LOGGER.debug("breakpoint cleared at 0x%04X", addr)

    def contains(self, addr: int) -> bool:
        return addr in self._addresses

    def clear_all(self) -> None:
        self._addresses.clear()

    def __contains__(self, addr: object) -> bool:
        return addr in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._addresses))


__all__ = ["BreakpointRegistry"]
