"""CBOR frame encoder/decoders and fragmentation for the Bluetooth gateway protocol.

A frame is a CBOR sequence: the opcode followed by positional arguments,
with no length prefixes in between. Every BLE write/notification carries one
fragment of a frame::

    +------------------+---------------------------+
    | Remaining count  |     Payload fragment      |
    | 1 byte (sat 255) |  up to MAX_FRAGMENT_SIZE  |
    +------------------+---------------------------+

The remaining count is the number of fragments that follow; 0 marks the last
fragment of a frame.
"""

from __future__ import annotations

import io
import math
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

import cbor2

from openstuder.core.errors import ProtocolError
from openstuder.core.model import (
    AccessLevel,
    Authorized,
    BinaryFrame,
    DatalogEntry,
    DatalogRead,
    Description,
    DeviceMessage,
    Enumerated,
    MessagesRead,
    PropertyReadResult,
    PropertyUpdate,
    PropertyValue,
    Status,
    SubscriptionResult,
    WriteFlags,
)

MAX_FRAGMENT_SIZE = 508
PROTOCOL_VERSION = 1

SERVICE_UUID = "f3c2d800-8421-44b1-9655-0951992f313b"
RX_CHAR_UUID = "f3c2d801-8421-44b1-9655-0951992f313b"
TX_CHAR_UUID = "f3c2d802-8421-44b1-9655-0951992f313b"


class Opcode(IntEnum):
    """Frame opcodes; responses set the high bit of their request code."""

    AUTHORIZE = 0x01
    ENUMERATE = 0x02
    DESCRIBE = 0x03
    READ_PROPERTY = 0x04
    WRITE_PROPERTY = 0x05
    SUBSCRIBE_PROPERTY = 0x06
    UNSUBSCRIBE_PROPERTY = 0x07
    READ_DATALOG = 0x08
    READ_MESSAGES = 0x09
    AUTHORIZED = 0x81
    ENUMERATED = 0x82
    DESCRIPTION = 0x83
    PROPERTY_READ = 0x84
    PROPERTY_WRITTEN = 0x85
    PROPERTY_SUBSCRIBED = 0x86
    PROPERTY_UNSUBSCRIBED = 0x87
    DATALOG_READ = 0x88
    MESSAGES_READ = 0x89
    DEVICE_MESSAGE = 0xFD
    PROPERTY_UPDATE = 0xFE
    ERROR = 0xFF


def _is_number(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, int) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_value(value: Any) -> bool:
    return value is None or isinstance(value, (bool, int, float, str))


def _from_epoch_seconds(value: int | float, operation: str) -> datetime:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ProtocolError(f"unknown error during {operation}") from exc


def _to_epoch_seconds(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _join(*items: Any) -> bytes:
    return b"".join(cbor2.dumps(item) for item in items)


def decode_frame(frame: bytes) -> BinaryFrame:
    items: list[Any] = []
    stream = io.BytesIO(frame)
    decoder = cbor2.CBORDecoder(stream)
    try:
        while stream.tell() < len(frame):
            items.append(decoder.decode())
    except (cbor2.CBORDecodeError, EOFError, ValueError) as exc:
        raise ProtocolError("invalid frame") from exc
    if not items or not _is_int(items[0]):
        raise ProtocolError("invalid frame")
    return BinaryFrame(command=items[0], sequence=tuple(items[1:]))


def peek_frame_command(frame: bytes) -> int:
    return decode_frame(frame).command


def _ensure(
    frame: BinaryFrame,
    command: Opcode,
    check: Callable[[Sequence[Any]], bool],
    operation: str,
) -> Sequence[Any]:
    sequence = frame.sequence
    if frame.command == command and check(sequence):
        return sequence
    if frame.command == Opcode.ERROR and len(sequence) == 1 and isinstance(sequence[0], str):
        raise ProtocolError(sequence[0])
    raise ProtocolError(f"unknown error during {operation}")


def _status_and_id(seq: Sequence[Any]) -> bool:
    return len(seq) == 2 and _is_number(seq[0]) and isinstance(seq[1], str)


# Request encoders.


def encode_authorize_frame(user: str | None = None, password: str | None = None) -> bytes:
    return _join(Opcode.AUTHORIZE.value, user, password, PROTOCOL_VERSION)


def encode_enumerate_frame() -> bytes:
    return _join(Opcode.ENUMERATE.value)


def encode_describe_frame(
    device_access_id: str | None = None,
    device_id: str | None = None,
    property_id: int | None = None,
) -> bytes:
    subject = None
    if device_access_id is not None:
        subject = device_access_id
        if device_id is not None:
            subject += f".{device_id}"
            if property_id is not None:
                subject += f".{property_id}"
    return _join(Opcode.DESCRIBE.value, subject)


def encode_read_property_frame(property_id: str) -> bytes:
    return _join(Opcode.READ_PROPERTY.value, property_id)


def encode_write_property_frame(
    property_id: str,
    value: PropertyValue | None = None,
    flags: WriteFlags | None = None,
) -> bytes:
    return _join(
        Opcode.WRITE_PROPERTY.value,
        property_id,
        int(flags) if flags is not None else None,
        value,
    )


def encode_subscribe_property_frame(property_id: str) -> bytes:
    return _join(Opcode.SUBSCRIBE_PROPERTY.value, property_id)


def encode_unsubscribe_property_frame(property_id: str) -> bytes:
    return _join(Opcode.UNSUBSCRIBE_PROPERTY.value, property_id)


def encode_read_datalog_frame(
    property_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int | None = None,
) -> bytes:
    return _join(
        Opcode.READ_DATALOG.value,
        property_id,
        _to_epoch_seconds(date_from),
        _to_epoch_seconds(date_to),
        limit,
    )


def encode_read_messages_frame(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int | None = None,
) -> bytes:
    return _join(
        Opcode.READ_MESSAGES.value,
        _to_epoch_seconds(date_from),
        _to_epoch_seconds(date_to),
        limit,
    )


# Response decoders.


def decode_authorized_frame(frame: bytes) -> Authorized:
    seq = _ensure(
        decode_frame(frame),
        Opcode.AUTHORIZED,
        lambda s: len(s) == 3 and _is_number(s[0]) and _is_number(s[1]) and isinstance(s[2], str),
        "authorization",
    )
    if seq[1] != PROTOCOL_VERSION:
        raise ProtocolError("protocol version 1 not supported by server")
    return Authorized(
        access_level=AccessLevel.from_code(seq[0]),
        protocol_version=str(seq[1]),
        gateway_version=seq[2],
    )


def decode_enumerated_frame(frame: bytes) -> Enumerated:
    seq = _ensure(
        decode_frame(frame),
        Opcode.ENUMERATED,
        lambda s: len(s) == 2 and _is_number(s[0]) and _is_number(s[1]),
        "device enumeration",
    )
    return Enumerated(status=Status.from_code(seq[0]), device_count=int(seq[1]))


def decode_description_frame(frame: bytes) -> Description:
    seq = _ensure(
        decode_frame(frame),
        Opcode.DESCRIPTION,
        lambda s: len(s) == 3 and _is_number(s[0]) and _is_optional_str(s[1]),
        "description",
    )
    return Description(status=Status.from_code(seq[0]), id=seq[1], description=seq[2])


def decode_property_read_frame(frame: bytes) -> PropertyReadResult:
    seq = _ensure(
        decode_frame(frame),
        Opcode.PROPERTY_READ,
        lambda s: len(s) in (2, 3) and _is_number(s[0]) and isinstance(s[1], str)
        and (len(s) == 2 or _is_value(s[2])),
        "property read",
    )
    return PropertyReadResult(
        status=Status.from_code(seq[0]),
        id=seq[1],
        value=seq[2] if len(seq) == 3 else None,
    )


def decode_property_written_frame(frame: bytes) -> SubscriptionResult:
    seq = _ensure(decode_frame(frame), Opcode.PROPERTY_WRITTEN, _status_and_id, "property write")
    return SubscriptionResult(status=Status.from_code(seq[0]), id=seq[1])


def decode_property_subscribed_frame(frame: bytes) -> SubscriptionResult:
    seq = _ensure(decode_frame(frame), Opcode.PROPERTY_SUBSCRIBED, _status_and_id, "property subscribe")
    return SubscriptionResult(status=Status.from_code(seq[0]), id=seq[1])


def decode_property_unsubscribed_frame(frame: bytes) -> SubscriptionResult:
    seq = _ensure(
        decode_frame(frame), Opcode.PROPERTY_UNSUBSCRIBED, _status_and_id, "property unsubscribe"
    )
    return SubscriptionResult(status=Status.from_code(seq[0]), id=seq[1])


def decode_property_update_frame(frame: bytes) -> PropertyUpdate:
    seq = _ensure(
        decode_frame(frame),
        Opcode.PROPERTY_UPDATE,
        lambda s: len(s) == 2 and isinstance(s[0], str) and _is_value(s[1]),
        "property update",
    )
    return PropertyUpdate(id=seq[0], value=seq[1])


def decode_datalog_read_frame(frame: bytes) -> DatalogRead:
    """Decode a datalog response.

    Without a property ID the results are the IDs of all logged properties.
    Otherwise they are flattened ``timestamp, value`` pairs with timestamps in
    epoch seconds.
    """
    seq = _ensure(
        decode_frame(frame),
        Opcode.DATALOG_READ,
        lambda s: len(s) == 4 and _is_number(s[0]) and _is_optional_str(s[1])
        and _is_number(s[2]) and isinstance(s[3], list),
        "datalog read",
    )
    status, property_id, count, results = Status.from_code(seq[0]), seq[1], int(seq[2]), seq[3]
    if property_id is None:
        return DatalogRead(status=status, id=None, count=count, values=[str(r) for r in results])

    entries: list[DatalogEntry] = []
    for index in range(min(count, len(results) // 2)):
        timestamp, value = results[2 * index], results[2 * index + 1]
        if not _is_number(timestamp) or not _is_value(value):
            raise ProtocolError("unknown error during datalog read")
        entries.append(DatalogEntry(timestamp=_from_epoch_seconds(timestamp, "datalog read"), value=value))
    return DatalogRead(status=status, id=property_id, count=count, values=entries)


def _device_message(fields: Sequence[Any], operation: str) -> DeviceMessage:
    return DeviceMessage(
        timestamp=_from_epoch_seconds(fields[0], operation),
        access_id=fields[1],
        device_id=fields[2],
        message_id=str(fields[3]),
        message=fields[4],
    )


def _is_device_message(fields: Sequence[Any]) -> bool:
    return (
        len(fields) == 5
        and _is_number(fields[0])
        and isinstance(fields[1], str)
        and isinstance(fields[2], str)
        and _is_number(fields[3])
        and isinstance(fields[4], str)
    )


def decode_messages_read_frame(frame: bytes) -> MessagesRead:
    seq = _ensure(
        decode_frame(frame),
        Opcode.MESSAGES_READ,
        lambda s: len(s) == 3 and _is_number(s[0]) and _is_number(s[1]) and isinstance(s[2], list),
        "messages read",
    )
    status, count, flat = Status.from_code(seq[0]), int(seq[1]), seq[2]
    if len(flat) != 5 * count:
        return MessagesRead(status=status, count=count)
    messages = []
    for index in range(count):
        fields = flat[5 * index : 5 * index + 5]
        if not _is_device_message(fields):
            raise ProtocolError("unknown error during messages read")
        messages.append(_device_message(fields, "messages read"))
    return MessagesRead(status=status, count=count, messages=tuple(messages))


def decode_device_message_frame(frame: bytes) -> DeviceMessage:
    seq = _ensure(decode_frame(frame), Opcode.DEVICE_MESSAGE, _is_device_message, "device message")
    return _device_message(seq, "device message")


def decode_error_frame(frame: bytes) -> str:
    sequence = decode_frame(frame).sequence
    if sequence and isinstance(sequence[0], str):
        return sequence[0]
    return "unknown error"


# Fragmentation.


def fragment_payload(payload: bytes, max_fragment_size: int = MAX_FRAGMENT_SIZE) -> list[bytes]:
    """Split an encoded frame into prefixed BLE fragments.

    The one-byte prefix saturates at 255, so for frames longer than 256
    fragments only the final 0 is exact.
    """
    if max_fragment_size < 1:
        raise ValueError(f"max_fragment_size must be positive, got {max_fragment_size}")
    fragment_count = math.ceil(len(payload) / max_fragment_size)
    fragments: list[bytes] = []
    for index in range(fragment_count):
        remaining = fragment_count - index - 1
        chunk = payload[index * max_fragment_size : (index + 1) * max_fragment_size]
        fragments.append(bytes([min(remaining, 255)]) + chunk)
    return fragments


class FrameReassembler:
    """Accumulates fragments until the one flagged as last arrives."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, fragment: bytes) -> bytes | None:
        if not fragment:
            raise ProtocolError("empty fragment")
        self._buffer.extend(fragment[1:])
        if fragment[0] != 0:
            return None
        frame = bytes(self._buffer)
        self.reset()
        return frame

    def reset(self) -> None:
        self._buffer = bytearray()
