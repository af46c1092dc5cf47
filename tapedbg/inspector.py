"""State inspector: reads and writes device state on behalf of the controller."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .device import REGISTER_NAMES, Device, register_width, write_register
from .errors import AddressOutOfRange, ProtocolViolation


@dataclass(frozen=True)
class DeviceSnapshot:
    """Register/flag projection of the device at one instant."""

    pc: int
    acc: int
    sp: int
    fp: int
    data_reg: List[int] = field(default_factory=lambda: [0, 0, 0, 0])
    addr_reg: List[int] = field(default_factory=lambda: [0, 0])
    overflowed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        # Key order is part of the wire format.
        return {
            "pc": self.pc,
            "acc": self.acc,
            "sp": self.sp,
            "fp": self.fp,
            "data_reg": list(self.data_reg),
            "addr_reg": list(self.addr_reg),
            "overflowed": self.overflowed,
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "DeviceSnapshot":
        payload = json.loads(text)
        data_reg = [int(value) for value in payload.get("data_reg", [])]
        addr_reg = [int(value) for value in payload.get("addr_reg", [])]
        if len(data_reg) != 4 or len(addr_reg) != 2:
            raise ValueError(f"dump needs 4 data and 2 address registers: {text!r}")
        return cls(
            pc=int(payload["pc"]),
            acc=int(payload["acc"]),
            sp=int(payload["sp"]),
            fp=int(payload["fp"]),
            data_reg=data_reg,
            addr_reg=addr_reg,
            overflowed=bool(payload["overflowed"]),
        )


class StateInspector:
    """Reads snapshots, memory and stack; applies memory/register writes.

    Out-of-bounds accesses raise AddressOutOfRange and leave the device
    untouched; nothing is clamped.
    """

    def __init__(self, device: Device) -> None:
        self.device = device

    def dump(self) -> DeviceSnapshot:
        device = self.device
        return DeviceSnapshot(
            pc=device.pc,
            acc=device.acc,
            sp=device.sp,
            fp=device.fp,
            data_reg=list(device.data_reg),
            addr_reg=list(device.addr_reg),
            overflowed=bool(device.overflow),
        )

    def read_memory(self, start: int, end: int) -> bytes:
        size = len(self.device.memory)
        if start > end:
            raise AddressOutOfRange(f"memory range 0x{start:04X}..0x{end:04X} is reversed")
        if end > size:
            raise AddressOutOfRange(f"memory range 0x{start:04X}..0x{end:04X} exceeds {size} bytes")
        return bytes(self.device.memory[start:end])

    def read_stack(self) -> bytes:
        device = self.device
        sp, top = device.sp, device.stack_top
        if sp > top or top > len(device.memory):
            raise AddressOutOfRange(f"stack pointer 0x{sp:04X} is outside the stack (top 0x{top:04X})")
        return bytes(device.memory[sp:top])

    def write_memory(self, addr: int, data: bytes) -> None:
        size = len(self.device.memory)
        end = addr + len(data)
        if end > size:
            raise AddressOutOfRange(f"write of {len(data)} bytes at 0x{addr:04X} exceeds {size} bytes")
        self.device.memory[addr:end] = data

    def write_register(self, reg_id: int, value: int) -> None:
        if reg_id not in REGISTER_NAMES:
            raise ProtocolViolation(f"unknown register id 0x{reg_id:02X}")
        width = register_width(reg_id)
        if value >= (1 << width):
            raise ProtocolViolation(f"value {value} does not fit {REGISTER_NAMES[reg_id]} ({width} bits)")
        write_register(self.device, reg_id, value)


__all__ = ["DeviceSnapshot", "StateInspector"]
