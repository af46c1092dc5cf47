import logging

from tapedbg.controller import ControllerState
from tapedbg.device import OP_HALT, OP_PRTC, OP_RCHR, OP_RSTR, REG_D0
from tapedbg.protocol import (
    MAX_CHUNK,
    BreakpointHit,
    Crashed,
    DumpResult,
    EndOfProgram,
    ErrorOutput,
    InputKey,
    InputString,
    KeyRequested,
    Output,
    SetBreakpoint,
    Step,
    StepIgnoringBreakpoints,
    StringRequested,
    encode_frames,
)
from tapedbg.session import DebugSession, SessionConfig
from tapedbg.transport import memory_transport

from tests.helpers import addr, decode_all, device


def _run(inbound, *ops, config=None):
    transport = memory_transport(inbound)
    session = DebugSession(device(*ops), transport, config)
    state = session.run()
    return state, decode_all(transport.writer.getvalue()), session


def test_scripted_session_with_breakpoint():
    script = encode_frames([SetBreakpoint(2), Step(), Step(), StepIgnoringBreakpoints(), Step()])
    state, events, session = _run(script, OP_PRTC, "a", OP_PRTC, "b", OP_HALT)
    assert events == [Output("a"), BreakpointHit(2), Output("b"), EndOfProgram()]
    assert state is ControllerState.FINISHED
    assert session.events_sent == 4


def test_two_steps_in_one_read_run_two_instructions():
    state, events, _ = _run(b"ee", OP_PRTC, "a", OP_PRTC, "b", OP_HALT)
    assert events == [Output("a"), Output("b")]
    assert state is ControllerState.STOPPED


def test_unknown_bytes_are_reported_and_skipped():
    state, events, _ = _run(b"\x00\x01e", OP_PRTC, "a", OP_HALT)
    assert len(events) == 2
    assert isinstance(events[0], ErrorOutput)
    assert events[0].text.startswith("DecodeError:")
    assert events[1] == Output("a")


def test_truncated_frame_at_end_of_input():
    state, events, _ = _run(b"eb\x00", OP_PRTC, "a", OP_HALT)
    assert events[0] == Output("a")
    assert isinstance(events[1], ErrorOutput)
    assert "truncated frame" in events[1].text
    assert state is ControllerState.STOPPED


def test_empty_input_stops_quietly():
    state, events, _ = _run(b"", OP_HALT)
    assert events == []
    assert state is ControllerState.STOPPED


def test_commands_after_terminal_state_are_ignored():
    state, events, session = _run(b"eee", 0xFF)
    assert isinstance(events[0], ErrorOutput)
    assert events[1:] == [Crashed()]
    assert session.controller.crashed
    assert state is ControllerState.FINISHED


def test_input_round_trip_through_session():
    script = encode_frames([Step(), InputKey("y"), Step()])
    state, events, session = _run(script, OP_RCHR, REG_D0, OP_HALT)
    assert events == [KeyRequested(), EndOfProgram()]
    assert session.controller.device.data_reg[0] == ord("y")


def test_feed_applies_complete_commands_only():
    transport = memory_transport()
    session = DebugSession(device(OP_HALT), transport)
    assert session.feed(b"") is ControllerState.IDLE
    session.feed(b"d")
    events = decode_all(transport.writer.getvalue())
    assert len(events) == 1 and isinstance(events[0], DumpResult)
    session.feed(b"b\x00")
    assert session.decoder.pending == 2
    session.feed(b"\x00")
    assert 0 in session.controller.breakpoints


def test_log_commands_option(caplog):
    with caplog.at_level(logging.INFO, logger="tapedbg.session"):
        _run(b"e", OP_HALT, config=SessionConfig(log_commands=True))
    assert "command Step()" in caplog.text


def test_full_chunk_string_completes_at_end_of_input():
    script = encode_frames([Step(), InputString("z" * MAX_CHUNK)])
    state, events, session = _run(script, OP_RSTR, addr(0x2000), OP_HALT)
    assert events == [StringRequested()]
    assert state is ControllerState.STOPPED
    memory = session.controller.device.memory
    assert memory[0x2000] == MAX_CHUNK
    assert memory[0x2001 : 0x2001 + MAX_CHUNK] == b"z" * MAX_CHUNK


def test_full_chunk_string_ends_at_next_command():
    transport = memory_transport()
    session = DebugSession(device(OP_RSTR, addr(0x2000), OP_PRTC, "!", OP_HALT), transport)
    session.feed(encode_frames([Step(), InputString("y" * 510)]))
    assert session.state is ControllerState.SUSPENDED
    session.feed(b"e")
    assert decode_all(transport.writer.getvalue()) == [StringRequested(), Output("!")]
