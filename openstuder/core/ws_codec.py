"""Text frame encoder and decoders for the WebSocket gateway protocol.

Frame layout::

    <COMMAND>\\n
    <key>:<value>\\n        (zero or more headers)
    \\n
    <body>                 (optional)

Header values may themselves contain colons (ISO-8601 timestamps), so only
the first colon separates key and value.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from openstuder.core.errors import ProtocolError
from openstuder.core.model import (
    DEVICE_FUNCTION_TOKENS,
    AccessLevel,
    Authorized,
    DatalogRead,
    Description,
    DescriptionFlags,
    DeviceFunctions,
    DeviceMessage,
    Enumerated,
    MessagesRead,
    PropertiesFound,
    PropertyReadResult,
    PropertyUpdate,
    PropertyValue,
    Status,
    SubscriptionResult,
    TextFrame,
    WriteFlags,
)

PROTOCOL_VERSION = "1"


def decode_frame(frame: str) -> TextFrame:
    lines = frame.split("\n")
    if len(lines) < 2:
        raise ProtocolError("Invalid frame")

    headers: dict[str, str] = {}
    index = 1
    while index < len(lines):
        line = lines[index]
        index += 1
        if line == "":
            break
        components = line.split(":")
        if len(components) >= 2:
            headers[components[0]] = ":".join(components[1:])

    body = "\n".join(line for line in lines[index:] if line != "")
    return TextFrame(command=lines[0], headers=headers, body=body)


def peek_frame_command(frame: str) -> str:
    return frame.split("\n", 1)[0]


def format_timestamp(timestamp: datetime) -> str:
    """Render a timestamp the way the gateway expects: UTC, milliseconds, ``Z``."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    utc = timestamp.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ProtocolError(f"invalid timestamp '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_value(value: PropertyValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _encode(command: str, headers: Iterable[tuple[str, str]] = (), body: str = "") -> str:
    frame = command + "\n"
    for key, value in headers:
        frame += f"{key}:{value}\n"
    return frame + "\n" + body


def _ensure(frame: TextFrame, command: str, required: Sequence[str], operation: str) -> None:
    if frame.command == command and all(key in frame.headers for key in required):
        return
    if frame.command == "ERROR" and "reason" in frame.headers:
        raise ProtocolError(frame.headers["reason"])
    raise ProtocolError(f"unknown error during {operation}")


def _json_body(frame: TextFrame, operation: str) -> Any:
    try:
        return json.loads(frame.body)
    except ValueError as exc:
        raise ProtocolError(f"invalid body during {operation}") from exc


def _int_header(frame: TextFrame, key: str) -> int:
    try:
        return int(frame.headers.get(key) or 0)
    except ValueError as exc:
        raise ProtocolError(f"invalid {key} header '{frame.headers[key]}'") from exc


def _timestamp_headers(date_from: datetime | None, date_to: datetime | None) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    if date_from is not None:
        headers.append(("from", format_timestamp(date_from)))
    if date_to is not None:
        headers.append(("to", format_timestamp(date_to)))
    return headers


def _property_id(device_access_id: str | None, device_id: str | None, property_id: int | None) -> str | None:
    if not device_access_id:
        return None
    subject = device_access_id
    if device_id:
        subject += f".{device_id}"
        if property_id is not None:
            subject += f".{property_id}"
    return subject


# Authorization.


def encode_authorize_frame(user: str | None = None, password: str | None = None) -> str:
    headers: list[tuple[str, str]] = []
    if user or password:
        headers.extend([("user", user or ""), ("password", password or "")])
    headers.append(("protocol_version", PROTOCOL_VERSION))
    return _encode("AUTHORIZE", headers)


def decode_authorized_frame(frame: str) -> Authorized:
    decoded = decode_frame(frame)
    _ensure(decoded, "AUTHORIZED", ("access_level", "protocol_version"), "authorization")
    if decoded.headers["protocol_version"] != PROTOCOL_VERSION:
        raise ProtocolError("protocol version 1 not supported by server")
    return Authorized(
        access_level=AccessLevel.from_string(decoded.headers["access_level"]),
        protocol_version=decoded.headers["protocol_version"],
        gateway_version=decoded.headers.get("gateway_version", ""),
    )


# Topology.


def encode_enumerate_frame() -> str:
    return _encode("ENUMERATE")


def decode_enumerated_frame(frame: str) -> Enumerated:
    decoded = decode_frame(frame)
    _ensure(decoded, "ENUMERATED", (), "device enumeration")
    return Enumerated(
        status=Status.from_string(decoded.headers.get("status")),
        device_count=_int_header(decoded, "device_count"),
    )


def encode_describe_frame(
    device_access_id: str | None = None,
    device_id: str | None = None,
    property_id: int | None = None,
    flags: Iterable[DescriptionFlags] | None = None,
) -> str:
    headers: list[tuple[str, str]] = []
    subject = _property_id(device_access_id, device_id, property_id)
    if subject is not None:
        headers.append(("id", subject))
    flag_list = list(flags or ())
    if flag_list:
        headers.append(("flags", ",".join(flag.value for flag in flag_list)))
    return _encode("DESCRIBE", headers)


def decode_description_frame(frame: str) -> Description:
    decoded = decode_frame(frame)
    _ensure(decoded, "DESCRIPTION", ("status",), "description")
    status = Status.from_string(decoded.headers["status"])
    return Description(
        status=status,
        id=decoded.headers.get("id"),
        description=decoded.body if status is Status.SUCCESS else None,
    )


def encode_find_properties_frame(
    property_id: str,
    virtual: bool | None = None,
    functions: DeviceFunctions | None = None,
) -> str:
    headers = [("id", property_id)]
    if virtual is not None:
        headers.append(("virtual", "true" if virtual else "false"))
    if functions:
        headers.append(("functions", encode_device_functions(functions)))
    return _encode("FIND PROPERTIES", headers)


def encode_device_functions(functions: DeviceFunctions) -> str:
    if functions & DeviceFunctions.ALL == DeviceFunctions.ALL:
        return "all"
    return ",".join(token for function, token in DEVICE_FUNCTION_TOKENS if functions & function)


def decode_device_functions(value: str | None) -> DeviceFunctions:
    if value is None:
        return DeviceFunctions.ALL
    tokens = {token.strip() for token in value.split(",")}
    if "all" in tokens:
        return DeviceFunctions.ALL
    functions = DeviceFunctions.NONE
    for function, token in DEVICE_FUNCTION_TOKENS:
        if token in tokens:
            functions |= function
    return functions


def decode_properties_found_frame(frame: str) -> PropertiesFound:
    decoded = decode_frame(frame)
    _ensure(decoded, "PROPERTIES FOUND", ("status", "id", "count"), "find properties")
    status = Status.from_string(decoded.headers["status"])
    properties: tuple[str, ...] = ()
    if status is Status.SUCCESS:
        body = _json_body(decoded, "find properties")
        if not isinstance(body, list):
            raise ProtocolError("invalid body during find properties")
        properties = tuple(str(item) for item in body)
    return PropertiesFound(
        status=status,
        id=decoded.headers["id"],
        count=_int_header(decoded, "count"),
        virtual=decoded.headers.get("virtual") == "true",
        functions=decode_device_functions(decoded.headers.get("functions")),
        properties=properties,
    )


# Property access.


def encode_read_property_frame(property_id: str) -> str:
    return _encode("READ PROPERTY", [("id", property_id)])


def decode_property_read_frame(frame: str) -> PropertyReadResult:
    decoded = decode_frame(frame)
    _ensure(decoded, "PROPERTY READ", ("status", "id"), "property read")
    status = Status.from_string(decoded.headers["status"])
    return PropertyReadResult(
        status=status,
        id=decoded.headers["id"],
        value=decoded.headers.get("value", "") if status is Status.SUCCESS else None,
    )


def encode_read_properties_frame(property_ids: Sequence[str]) -> str:
    return _encode("READ PROPERTIES", body=json.dumps(list(property_ids)))


def decode_properties_read_frame(frame: str) -> list[PropertyReadResult]:
    decoded = decode_frame(frame)
    _ensure(decoded, "PROPERTIES READ", ("status",), "properties read")
    if Status.from_string(decoded.headers["status"]) is not Status.SUCCESS:
        return []
    try:
        return [
            PropertyReadResult(
                status=Status.from_string(entry.get("status")),
                id=entry["id"],
                value=entry.get("value"),
            )
            for entry in _json_body(decoded, "properties read")
        ]
    except (AttributeError, KeyError, TypeError) as exc:
        raise ProtocolError("invalid body during properties read") from exc


def encode_write_property_frame(
    property_id: str,
    value: PropertyValue | None = None,
    flags: WriteFlags | None = None,
) -> str:
    headers = [("id", property_id)]
    if flags == WriteFlags.PERMANENT:
        headers.append(("flags", "Permanent"))
    if value is not None:
        headers.append(("value", format_value(value)))
    # Writes always carry an explicit (possibly empty) body line.
    return _encode("WRITE PROPERTY", headers, "\n")


def decode_property_written_frame(frame: str) -> SubscriptionResult:
    decoded = decode_frame(frame)
    _ensure(decoded, "PROPERTY WRITTEN", ("status", "id"), "property write")
    return SubscriptionResult(
        status=Status.from_string(decoded.headers["status"]),
        id=decoded.headers["id"],
    )


# Subscriptions.


def encode_subscribe_property_frame(property_id: str) -> str:
    return _encode("SUBSCRIBE PROPERTY", [("id", property_id)])


def encode_subscribe_properties_frame(property_ids: Sequence[str]) -> str:
    return _encode("SUBSCRIBE PROPERTIES", body=json.dumps(list(property_ids)))


def encode_unsubscribe_property_frame(property_id: str) -> str:
    return _encode("UNSUBSCRIBE PROPERTY", [("id", property_id)])


def encode_unsubscribe_properties_frame(property_ids: Sequence[str]) -> str:
    return _encode("UNSUBSCRIBE PROPERTIES", body=json.dumps(list(property_ids)))


def _decode_single_subscription(frame: str, command: str, operation: str) -> SubscriptionResult:
    decoded = decode_frame(frame)
    _ensure(decoded, command, ("status", "id"), operation)
    return SubscriptionResult(
        status=Status.from_string(decoded.headers["status"]),
        id=decoded.headers["id"],
    )


def _decode_batch_subscription(frame: str, command: str, operation: str) -> list[SubscriptionResult]:
    decoded = decode_frame(frame)
    _ensure(decoded, command, ("status",), operation)
    if Status.from_string(decoded.headers["status"]) is not Status.SUCCESS:
        return []
    try:
        return [
            SubscriptionResult(status=Status.from_string(entry.get("status")), id=entry["id"])
            for entry in _json_body(decoded, operation)
        ]
    except (AttributeError, KeyError, TypeError) as exc:
        raise ProtocolError(f"invalid body during {operation}") from exc


def decode_property_subscribed_frame(frame: str) -> SubscriptionResult:
    return _decode_single_subscription(frame, "PROPERTY SUBSCRIBED", "property subscribe")


def decode_properties_subscribed_frame(frame: str) -> list[SubscriptionResult]:
    return _decode_batch_subscription(frame, "PROPERTIES SUBSCRIBED", "properties subscribe")


def decode_property_unsubscribed_frame(frame: str) -> SubscriptionResult:
    return _decode_single_subscription(frame, "PROPERTY UNSUBSCRIBED", "property unsubscribe")


def decode_properties_unsubscribed_frame(frame: str) -> list[SubscriptionResult]:
    return _decode_batch_subscription(frame, "PROPERTIES UNSUBSCRIBED", "properties unsubscribe")


def decode_property_update_frame(frame: str) -> PropertyUpdate:
    decoded = decode_frame(frame)
    _ensure(decoded, "PROPERTY UPDATE", ("id", "value"), "property update")
    return PropertyUpdate(id=decoded.headers["id"], value=decoded.headers["value"])


# Datalog and messages.


def encode_read_datalog_frame(
    property_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int | None = None,
) -> str:
    headers: list[tuple[str, str]] = []
    if property_id:
        headers.append(("id", property_id))
    headers.extend(_timestamp_headers(date_from, date_to))
    if limit is not None:
        headers.append(("limit", str(limit)))
    return _encode("READ DATALOG", headers)


def decode_datalog_read_frame(frame: str) -> DatalogRead:
    """Decode a DATALOG READ response.

    With an ``id`` header the body is CSV (timestamp, value per line);
    without one it lists the IDs of all logged properties, one per line.
    """
    decoded = decode_frame(frame)
    _ensure(decoded, "DATALOG READ", ("status", "count"), "datalog read")
    property_id = decoded.headers.get("id") or None
    values: Any = decoded.body
    if property_id is None:
        values = [line for line in decoded.body.split("\n") if line]
    return DatalogRead(
        status=Status.from_string(decoded.headers["status"]),
        id=property_id,
        count=_int_header(decoded, "count"),
        values=values,
    )


def encode_read_messages_frame(
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int | None = None,
) -> str:
    headers = _timestamp_headers(date_from, date_to)
    if limit is not None:
        headers.append(("limit", str(limit)))
    return _encode("READ MESSAGES", headers)


def decode_messages_read_frame(frame: str) -> MessagesRead:
    decoded = decode_frame(frame)
    _ensure(decoded, "MESSAGES READ", ("status", "count"), "messages read")
    status = Status.from_string(decoded.headers["status"])
    messages: list[DeviceMessage] = []
    if status is Status.SUCCESS:
        try:
            for entry in _json_body(decoded, "messages read"):
                messages.append(
                    DeviceMessage(
                        timestamp=parse_timestamp(entry["timestamp"]),
                        access_id=entry["access_id"],
                        device_id=entry["device_id"],
                        message_id=str(entry["message_id"]),
                        message=entry["message"],
                    )
                )
        except (AttributeError, KeyError, TypeError) as exc:
            raise ProtocolError("invalid body during messages read") from exc
    return MessagesRead(status=status, count=_int_header(decoded, "count"), messages=tuple(messages))


def decode_device_message_frame(frame: str) -> DeviceMessage:
    decoded = decode_frame(frame)
    _ensure(
        decoded,
        "DEVICE MESSAGE",
        ("access_id", "device_id", "message_id", "message", "timestamp"),
        "device message",
    )
    return DeviceMessage(
        timestamp=parse_timestamp(decoded.headers["timestamp"]),
        access_id=decoded.headers["access_id"],
        device_id=decoded.headers["device_id"],
        message_id=decoded.headers["message_id"],
        message=decoded.headers["message"],
    )


def decode_error_frame(frame: str) -> str:
    return decode_frame(frame).headers.get("reason", "")
