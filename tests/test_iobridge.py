from unittest.mock import MagicMock

import pytest

from tapedbg.errors import ProtocolViolation
from tapedbg.iobridge import IOBridge, PendingInput
from tapedbg.protocol import ErrorOutput, KeyRequested, Output, StringRequested


def _bridge():
    events = []
    device = MagicMock()
    bridge = IOBridge(device, events.append)
    return bridge, device, events


def test_attach_routes_device_streams_through_bridge():
    bridge, device, events = _bridge()
    bridge.attach()
    device.output_sink("hello")
    device.error_sink("oops")
    device.output_sink("")
    assert events == [Output("hello"), ErrorOutput("oops")]


def test_key_request_round_trip():
    bridge, device, events = _bridge()
    bridge.request_key()
    assert events == [KeyRequested()]
    assert bridge.pending is PendingInput.AWAITING_KEY
    assert bridge.waiting
    bridge.supply_key("k")
    device.supply_key.assert_called_once_with("k")
    assert bridge.pending is PendingInput.NONE


def test_wrong_input_kind_keeps_request():
    bridge, device, events = _bridge()
    bridge.request_string()
    assert events == [StringRequested()]
    with pytest.raises(ProtocolViolation):
        bridge.supply_key("a")
    assert bridge.pending is PendingInput.AWAITING_STRING
    device.supply_key.assert_not_called()
    bridge.supply_string("typed")
    device.supply_string.assert_called_once_with("typed")
    assert not bridge.waiting


def test_input_without_request_is_violation():
    bridge, device, _ = _bridge()
    with pytest.raises(ProtocolViolation):
        bridge.supply_string("nobody asked")
    with pytest.raises(ProtocolViolation):
        bridge.supply_key("a")
    device.supply_string.assert_not_called()


def test_unsupported_key_rejected():
    bridge, device, _ = _bridge()
    bridge.request_key()
    with pytest.raises(ProtocolViolation):
        bridge.supply_key("\x02")
    assert bridge.pending is PendingInput.AWAITING_KEY


def test_second_request_while_pending_is_violation():
    bridge, _, events = _bridge()
    bridge.request_key()
    with pytest.raises(ProtocolViolation):
        bridge.request_string()
    assert events == [KeyRequested()]
