from __future__ import annotations

from datetime import datetime, timezone

import cbor2
import pytest

from openstuder.core.bt_client import BluetoothGatewayClient
from openstuder.core.bt_codec import fragment_payload
from openstuder.core.callbacks import BluetoothGatewayClientCallbacks
from openstuder.core.errors import ProtocolError
from openstuder.core.model import AccessLevel, ConnectionState, DatalogEntry, Status
from openstuder.transports.base import TransportEvents


def _frame(*items: object) -> bytes:
    return b"".join(cbor2.dumps(item) for item in items)


def _single(*items: object) -> bytes:
    return b"\x00" + _frame(*items)


class FakeBluetoothTransport:
    def __init__(self) -> None:
        self.address: str | None = None
        self.events: TransportEvents[bytes] | None = None
        self.written: list[bytes] = []
        self.close_calls = 0

    def open(self, events: TransportEvents[bytes], address: str | None = None) -> None:
        self.events = events
        self.address = address

    def write(self, fragment: bytes) -> None:
        self.written.append(fragment)

    def close(self) -> None:
        self.close_calls += 1


class RecordingCallbacks(BluetoothGatewayClientCallbacks):
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def on_connected(self, access_level, gateway_version):
        self.calls.append(("connected", access_level, gateway_version))

    def on_disconnected(self):
        self.calls.append(("disconnected",))

    def on_error(self, reason):
        self.calls.append(("error", reason))

    def on_enumerated(self, status, device_count):
        self.calls.append(("enumerated", status, device_count))

    def on_description(self, status, description, id_=None):
        self.calls.append(("description", status, description, id_))

    def on_datalog_read(self, status, property_id, count, values):
        self.calls.append(("datalog", status, property_id, count, values))


def _client(max_fragment_size: int = 508) -> tuple[BluetoothGatewayClient, FakeBluetoothTransport, RecordingCallbacks]:
    transport = FakeBluetoothTransport()
    callbacks = RecordingCallbacks()
    client = BluetoothGatewayClient(transport, max_fragment_size=max_fragment_size)
    client.set_callbacks(callbacks)
    return client, transport, callbacks


def _connected(max_fragment_size: int = 508) -> tuple[BluetoothGatewayClient, FakeBluetoothTransport, RecordingCallbacks]:
    client, transport, callbacks = _client(max_fragment_size)
    client.connect()
    transport.events.on_open()
    transport.events.on_message(_single(0x81, 1, 1, "0.6.1"))
    callbacks.calls.clear()
    transport.written.clear()
    return client, transport, callbacks


def test_successful_authorization() -> None:
    client, transport, callbacks = _client()
    client.connect("qsp", "secret", address="AA:BB:CC:DD:EE:FF")

    assert client.state is ConnectionState.CONNECTING
    assert transport.address == "AA:BB:CC:DD:EE:FF"

    transport.events.on_open()
    assert client.state is ConnectionState.AUTHORIZING
    assert transport.written == [b"\x00" + _frame(0x01, "qsp", "secret", 1)]

    transport.events.on_message(_single(0x81, 4, 1, "0.6.1"))

    assert client.state is ConnectionState.CONNECTED
    assert client.access_level is AccessLevel.QUALIFIED_SERVICE_PERSONNEL
    assert callbacks.calls == [("connected", AccessLevel.QUALIFIED_SERVICE_PERSONNEL, "0.6.1")]


def test_protocol_version_mismatch_disconnects() -> None:
    client, transport, callbacks = _client()
    client.connect()
    transport.events.on_open()
    transport.events.on_message(_single(0x81, 1, 2, "0.6.1"))

    assert client.state is ConnectionState.DISCONNECTED
    assert transport.close_calls == 1
    assert callbacks.calls == [("error", "protocol version 1 not supported by server")]


def test_operations_require_connected_state() -> None:
    client, transport, _ = _client()
    with pytest.raises(ProtocolError, match="invalid client state"):
        client.enumerate()

    client.connect()
    with pytest.raises(ProtocolError, match="invalid client state"):
        client.read_property("demo.inv.3136")

    transport.events.on_open()
    with pytest.raises(ProtocolError, match="invalid client state"):
        client.write_property("demo.inv.1415")
    with pytest.raises(ProtocolError, match="invalid client state"):
        client.disconnect()

    assert len(transport.written) == 1


def test_fragmented_response_is_reassembled() -> None:
    _, transport, callbacks = _connected()
    payload = _frame(0x82, 0, 5)
    transport.events.on_message(b"\x02" + payload[:1])
    transport.events.on_message(b"\x01" + payload[1:2])
    assert callbacks.calls == []

    transport.events.on_message(b"\x00" + payload[2:])
    assert callbacks.calls == [("enumerated", Status.SUCCESS, 5)]


def test_large_requests_are_fragmented() -> None:
    client, transport, _ = _connected(max_fragment_size=8)
    client.read_property("demo.inv.3136")

    frame = _frame(0x04, "demo.inv.3136")
    assert transport.written == fragment_payload(frame, 8)
    assert b"".join(fragment[1:] for fragment in transport.written) == frame
    assert transport.written[-1][0] == 0


def test_description_and_datalog_dispatch() -> None:
    _, transport, callbacks = _connected()
    transport.events.on_message(_single(0x83, 0, "demo", {"devices": ["inv"]}))
    transport.events.on_message(_single(0x88, 0, "demo.inv.3136", 1, [1672531200, 1.5]))

    assert callbacks.calls == [
        ("description", Status.SUCCESS, {"devices": ["inv"]}, "demo"),
        (
            "datalog",
            Status.SUCCESS,
            "demo.inv.3136",
            1,
            [DatalogEntry(timestamp=datetime(2023, 1, 1, tzinfo=timezone.utc), value=1.5)],
        ),
    ]


def test_errors_while_connected_are_reported() -> None:
    client, transport, callbacks = _connected()
    transport.events.on_message(_single(0xFF, "no such property"))
    transport.events.on_message(_single(0x42))
    transport.events.on_message(_single(0x82, "bad"))

    assert callbacks.calls == [
        ("error", "no such property"),
        ("error", "unsupported frame command: 66"),
        ("error", "unknown error during device enumeration"),
    ]
    assert client.state is ConnectionState.CONNECTED


def test_close_resets_state_and_partial_frame() -> None:
    client, transport, callbacks = _connected()
    transport.events.on_message(b"\x01" + _frame(0x82))
    transport.events.on_close()

    assert client.state is ConnectionState.DISCONNECTED
    assert client.access_level is AccessLevel.NONE
    assert callbacks.calls == [("disconnected",)]

    client.connect()
    transport.events.on_open()
    transport.events.on_message(_single(0x81, 1, 1, "0.6.1"))
    assert client.state is ConnectionState.CONNECTED


@pytest.mark.parametrize(
    "frame",
    [
        _single(0xFD, 1e300, "demo", "inv", 1, "msg"),
        _single(0x88, 0, "demo.inv.3136", 1, [float("nan"), 1.5]),
        _single(0x82, 0, float("inf")),
        _single(0x89, 0, float("nan"), []),
    ],
)
def test_out_of_range_numbers_are_reported_and_connection_survives(frame: bytes) -> None:
    client, transport, callbacks = _connected()
    transport.events.on_message(frame)

    assert client.state is ConnectionState.CONNECTED
    assert len(callbacks.calls) == 1
    assert callbacks.calls[0][0] == "error"
    assert callbacks.calls[0][1].startswith("unknown error during")
