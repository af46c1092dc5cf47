import pytest

from tapedbg.breakpoints import BreakpointRegistry
from tapedbg.errors import AddressOutOfRange


def test_set_and_clear_are_idempotent():
    registry = BreakpointRegistry()
    registry.set(0x10)
    registry.set(0x10)
    assert registry.contains(0x10)
    assert len(registry) == 1
    registry.clear(0x10)
    registry.clear(0x10)
    assert not registry.contains(0x10)
    assert len(registry) == 0


def test_clear_missing_address_is_not_an_error():
    registry = BreakpointRegistry()
    registry.clear(0x1234)
    assert 0x1234 not in registry


def test_iteration_is_sorted():
    registry = BreakpointRegistry()
    for addr in (0x30, 0x02, 0xFFFF, 0x10):
        registry.set(addr)
    assert list(registry) == [0x02, 0x10, 0x30, 0xFFFF]
    registry.clear_all()
    assert list(registry) == []


def test_rejects_addresses_outside_16_bits():
    registry = BreakpointRegistry()
    with pytest.raises(AddressOutOfRange):
        registry.set(0x10000)
    with pytest.raises(AddressOutOfRange):
        registry.clear(-1)
