from __future__ import annotations

from datetime import datetime, timezone

import cbor2
import pytest

from openstuder.core import bt_codec
from openstuder.core.bt_codec import FrameReassembler, Opcode
from openstuder.core.errors import ProtocolError
from openstuder.core.model import AccessLevel, Status, WriteFlags


def _frame(*items: object) -> bytes:
    return b"".join(cbor2.dumps(item) for item in items)


def test_enumerated_response() -> None:
    enumerated = bt_codec.decode_enumerated_frame(_frame(0x82, 0, 5))
    assert enumerated.status is Status.SUCCESS
    assert enumerated.device_count == 5


def test_decode_frame_splits_command_and_sequence() -> None:
    frame = bt_codec.decode_frame(_frame(0x84, 0, "demo.inv.3136", 12.5))
    assert frame.command == Opcode.PROPERTY_READ
    assert frame.sequence == (0, "demo.inv.3136", 12.5)


@pytest.mark.parametrize("payload", [b"", b"\xff\xff", cbor2.dumps("text")])
def test_invalid_frames_are_rejected(payload: bytes) -> None:
    with pytest.raises(ProtocolError, match="invalid frame"):
        bt_codec.decode_frame(payload)


def test_request_encodings() -> None:
    assert bt_codec.encode_enumerate_frame() == _frame(0x02)
    assert bt_codec.encode_authorize_frame("qsp", "secret") == _frame(0x01, "qsp", "secret", 1)
    assert bt_codec.encode_authorize_frame() == _frame(0x01, None, None, 1)
    assert bt_codec.encode_describe_frame("demo", "inv") == _frame(0x03, "demo.inv")
    assert bt_codec.encode_read_property_frame("demo.inv.3136") == _frame(0x04, "demo.inv.3136")
    assert bt_codec.encode_subscribe_property_frame("demo.inv.3136") == _frame(0x06, "demo.inv.3136")
    assert bt_codec.encode_unsubscribe_property_frame("demo.inv.3136") == _frame(0x07, "demo.inv.3136")


def test_write_property_encoding() -> None:
    assert bt_codec.encode_write_property_frame("demo.inv.1415") == _frame(0x05, "demo.inv.1415", None, None)
    assert bt_codec.encode_write_property_frame("demo.inv.1399", 3.5, WriteFlags.PERMANENT) == _frame(
        0x05, "demo.inv.1399", 1, 3.5
    )


def test_datalog_and_messages_requests_use_epoch_seconds() -> None:
    start = datetime(2023, 1, 1, tzinfo=timezone.utc)
    assert bt_codec.encode_read_datalog_frame("demo.inv.3136", start, None, 100) == _frame(
        0x08, "demo.inv.3136", 1672531200, None, 100
    )
    assert bt_codec.encode_read_messages_frame(None, start) == _frame(0x09, None, 1672531200, None)


def test_authorized_response() -> None:
    authorized = bt_codec.decode_authorized_frame(_frame(0x81, 4, 1, "0.6.1"))
    assert authorized.access_level is AccessLevel.QUALIFIED_SERVICE_PERSONNEL
    assert authorized.gateway_version == "0.6.1"


def test_authorized_response_with_other_version_fails() -> None:
    with pytest.raises(ProtocolError, match="protocol version 1 not supported by server"):
        bt_codec.decode_authorized_frame(_frame(0x81, 1, 2, "0.6.1"))


def test_error_response_message_is_raised() -> None:
    with pytest.raises(ProtocolError, match="authorization failed"):
        bt_codec.decode_authorized_frame(_frame(0xFF, "authorization failed"))


def test_wrong_arity_gives_operation_specific_error() -> None:
    with pytest.raises(ProtocolError, match="unknown error during device enumeration"):
        bt_codec.decode_enumerated_frame(_frame(0x82, 0))


def test_unknown_status_code_maps_to_error() -> None:
    assert bt_codec.decode_property_written_frame(_frame(0x85, 99, "a.b.1")).status is Status.ERROR


def test_property_read_with_and_without_value() -> None:
    with_value = bt_codec.decode_property_read_frame(_frame(0x84, 0, "demo.inv.3136", True))
    assert with_value.value is True

    without_value = bt_codec.decode_property_read_frame(_frame(0x84, -2, "demo.inv.9"))
    assert without_value.status is Status.NO_PROPERTY
    assert without_value.value is None


def test_description_keeps_decoded_structure() -> None:
    description = bt_codec.decode_description_frame(_frame(0x83, 0, None, {"instances": []}))
    assert description.id is None
    assert description.description == {"instances": []}


def test_property_update_push() -> None:
    update = bt_codec.decode_property_update_frame(_frame(0xFE, "demo.inv.3136", 230))
    assert update.id == "demo.inv.3136"
    assert update.value == 230


def test_datalog_read_entries() -> None:
    datalog = bt_codec.decode_datalog_read_frame(
        _frame(0x88, 0, "demo.inv.3136", 2, [1672531200, 1.5, 1672531260, 1.6])
    )
    assert datalog.count == 2
    assert [entry.value for entry in datalog.values] == [1.5, 1.6]
    assert datalog.values[1].timestamp == datetime(2023, 1, 1, 0, 1, tzinfo=timezone.utc)


def test_datalog_read_property_listing() -> None:
    listing = bt_codec.decode_datalog_read_frame(_frame(0x88, 0, None, 2, ["demo.inv.3136", "demo.bat.7002"]))
    assert listing.id is None
    assert listing.values == ["demo.inv.3136", "demo.bat.7002"]


def test_messages_read_and_device_message() -> None:
    fields = [1672531200, "demo", "inv", 42, "AC-In synchronized"]
    read = bt_codec.decode_messages_read_frame(_frame(0x89, 0, 1, fields))
    assert read.messages[0].message_id == "42"
    assert read.messages[0].access_id == "demo"

    pushed = bt_codec.decode_device_message_frame(_frame(0xFD, *fields))
    assert pushed == read.messages[0]


def test_messages_read_with_inconsistent_count_is_empty() -> None:
    read = bt_codec.decode_messages_read_frame(_frame(0x89, 0, 2, [1672531200, "demo", "inv", 42, "x"]))
    assert read.count == 2
    assert read.messages == ()


def test_error_frame_text() -> None:
    assert bt_codec.decode_error_frame(_frame(0xFF, "no such device")) == "no such device"


def test_fragmentation_prefixes_count_down() -> None:
    payload = bytes(range(256)) * 5
    fragments = bt_codec.fragment_payload(payload)
    assert [fragment[0] for fragment in fragments] == [2, 1, 0]
    assert [len(fragment) for fragment in fragments] == [509, 509, 1280 - 2 * 508 + 1]


def test_fragment_prefix_saturates() -> None:
    fragments = bt_codec.fragment_payload(b"x" * 300, max_fragment_size=1)
    assert fragments[0][0] == 255
    assert fragments[-1][0] == 0
    assert len(fragments) == 300


def test_reassembler_returns_frame_on_last_fragment() -> None:
    reassembler = FrameReassembler()
    assert reassembler.feed(b"\x02abc") is None
    assert reassembler.feed(b"\x01def") is None
    assert reassembler.pending == 6
    assert reassembler.feed(b"\x00gh") == b"abcdefgh"
    assert reassembler.pending == 0


def test_reassembler_round_trip_of_large_frame() -> None:
    frame = _frame(0x83, 0, "demo", {"data": "y" * 2000})
    reassembler = FrameReassembler()
    results = [reassembler.feed(fragment) for fragment in bt_codec.fragment_payload(frame)]
    assert results[:-1] == [None] * (len(results) - 1)
    assert results[-1] == frame


def test_reassembler_rejects_empty_fragment() -> None:
    with pytest.raises(ProtocolError):
        FrameReassembler().feed(b"")
