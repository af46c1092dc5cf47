import pytest

from tapedbg.device import (
    OP_ADD,
    OP_CALL,
    OP_CPY,
    OP_EPRTC,
    OP_HALT,
    OP_INC,
    OP_JMP,
    OP_POP,
    OP_PRTC,
    OP_PRTS,
    OP_PUSH,
    OP_RCHR,
    OP_RET,
    OP_RSTR,
    REG_A0,
    REG_ACC,
    REG_D0,
    REG_D1,
    RunResult,
    read_register,
    register_width,
    write_register,
)
from tapedbg.errors import DeviceCrash

from tests.helpers import addr, device


def test_stack_call_and_return():
    dev = device(
        OP_PUSH, 73,
        OP_POP, REG_ACC,
        OP_CALL, addr(8),
        OP_HALT,
        OP_RET,
    )
    assert dev.step() is RunResult.OK
    assert dev.sp == 65534
    assert dev.step() is RunResult.OK
    assert (dev.acc, dev.sp) == (73, 65535)
    dev.step()
    assert (dev.pc, dev.sp, dev.fp) == (8, 65531, 65531)
    dev.step()
    assert (dev.pc, dev.sp, dev.fp) == (7, 65535, 65535)
    assert dev.step() is RunResult.HALT


def test_pop_into_address_register_takes_two_bytes():
    dev = device(OP_PUSH, 0x03, OP_PUSH, 0x01, OP_POP, REG_A0)
    for _ in range(3):
        dev.step()
    assert dev.addr_reg[0] == 0x0103
    assert dev.sp == 65535


def test_add_sets_overflow_flag():
    dev = device(OP_CPY, REG_D0, 200, OP_CPY, REG_D1, 100, OP_ADD, REG_D0, REG_D1, OP_ADD, REG_D1, REG_D1)
    for _ in range(3):
        dev.step()
    assert dev.acc == (300 & 0xFF)
    assert dev.overflow is True
    dev.step()
    assert dev.acc == 200
    assert dev.overflow is False


def test_inc_wraps_and_flags():
    dev = device(OP_INC, REG_ACC)
    dev.acc = 255
    dev.step()
    assert dev.acc == 0 and dev.overflow


def test_output_goes_to_sinks():
    out, err = [], []
    dev = device(OP_PRTC, "h", OP_PRTS, addr(8), OP_EPRTC, "!", OP_HALT, 2, b"yo")
    dev.output_sink = out.append
    dev.error_sink = err.append
    for _ in range(3):
        dev.step()
    assert out == ["h", "yo"]
    assert err == ["!"]


def test_key_request_blocks_until_supplied():
    dev = device(OP_RCHR, REG_D1, OP_HALT)
    assert dev.step() is RunResult.NEED_KEY
    assert dev.pc == 0
    dev.supply_key("z")
    assert dev.step() is RunResult.OK
    assert dev.data_reg[1] == ord("z")
    assert dev.pc == 2


def test_string_request_stores_length_prefixed_text():
    dev = device(OP_RSTR, addr(0x2000))
    assert dev.step() is RunResult.NEED_STRING
    dev.supply_string("abc")
    assert dev.step() is RunResult.OK
    assert dev.memory[0x2000:0x2004] == b"\x03abc"


def test_jump_and_end_of_program():
    dev = device(OP_JMP, addr(4), OP_HALT, 0x00)
    dev.step()
    assert dev.pc == 4
    assert dev.step() is RunResult.OK
    assert dev.pc == 5
    assert dev.step() is RunResult.HALT


def test_illegal_opcode_and_stack_underflow_crash():
    with pytest.raises(DeviceCrash):
        device(0xEE).step()
    with pytest.raises(DeviceCrash):
        device(OP_POP, REG_ACC).step()
    with pytest.raises(DeviceCrash):
        device(OP_CPY, 0x42, 1).step()


def test_register_helpers():
    dev = device()
    write_register(dev, REG_A0, 0xFFFF)
    assert read_register(dev, REG_A0) == 0xFFFF
    assert register_width(REG_ACC) == 8
    with pytest.raises(ValueError):
        write_register(dev, REG_D0, 256)
    with pytest.raises(KeyError):
        read_register(dev, 0x7F)


def test_autonomous_run_prints_and_reads_input(capsys):
    dev = device(OP_RCHR, REG_D0, OP_PRTC, "-", OP_RSTR, addr(0x3000), OP_PRTS, addr(0x3000), OP_HALT)
    result = dev.run(read_key=lambda: "q", read_string=lambda: "done")
    assert result == 0
    assert capsys.readouterr().out == "-done"
    assert dev.data_reg[0] == ord("q")


def test_autonomous_run_reports_crash(capsys):
    assert device(0xEE).run() == 1
    assert "illegal opcode" in capsys.readouterr().err


def test_max_steps_stops_infinite_loop():
    dev = device(OP_JMP, addr(0))
    assert dev.run(max_steps=5) == 0
    assert dev.steps == 5
