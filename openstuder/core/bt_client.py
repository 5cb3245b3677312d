"""Asynchronous (callback based) Bluetooth LE gateway client."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from openstuder.core import bt_codec
from openstuder.core.bt_codec import FrameReassembler, Opcode
from openstuder.core.callbacks import BluetoothGatewayClientCallbacks
from openstuder.core.errors import ProtocolError
from openstuder.core.model import AccessLevel, ConnectionState, PropertyValue, WriteFlags
from openstuder.transports.base import BluetoothTransport, TransportEvents

LOGGER = logging.getLogger(__name__)


class BluetoothGatewayClient:
    """Client for the CBOR protocol an OpenStuder gateway serves over BLE GATT.

    Mirrors :class:`~openstuder.core.ws_client.GatewayClient` without the
    batch and search operations. Frames are split into fragments of at most
    ``max_fragment_size`` payload bytes, each prefixed with the number of
    fragments that follow.
    """

    def __init__(
        self,
        transport: BluetoothTransport | None = None,
        *,
        max_fragment_size: int = bt_codec.MAX_FRAGMENT_SIZE,
    ) -> None:
        if transport is None:
            from openstuder.transports.ble_gatt import BLEGATTTransport

            transport = BLEGATTTransport()
        self._transport = transport
        self._max_fragment_size = max_fragment_size
        self._reassembler = FrameReassembler()
        self._callbacks: BluetoothGatewayClientCallbacks | None = None
        self._state = ConnectionState.DISCONNECTED
        self._access_level = AccessLevel.NONE
        self._gateway_version = ""
        self._user: str | None = None
        self._password: str | None = None
        self._handlers: dict[int, Callable[[bytes], None]] = {
            Opcode.ERROR: self._handle_error,
            Opcode.ENUMERATED: self._handle_enumerated,
            Opcode.DESCRIPTION: self._handle_description,
            Opcode.PROPERTY_READ: self._handle_property_read,
            Opcode.PROPERTY_WRITTEN: self._handle_property_written,
            Opcode.PROPERTY_SUBSCRIBED: self._handle_property_subscribed,
            Opcode.PROPERTY_UNSUBSCRIBED: self._handle_property_unsubscribed,
            Opcode.PROPERTY_UPDATE: self._handle_property_update,
            Opcode.DATALOG_READ: self._handle_datalog_read,
            Opcode.DEVICE_MESSAGE: self._handle_device_message,
            Opcode.MESSAGES_READ: self._handle_messages_read,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def access_level(self) -> AccessLevel:
        return self._access_level

    @property
    def gateway_version(self) -> str:
        return self._gateway_version

    def set_callbacks(self, callbacks: BluetoothGatewayClientCallbacks | None) -> None:
        self._callbacks = callbacks

    def connect(
        self,
        user: str | None = None,
        password: str | None = None,
        address: str | None = None,
    ) -> None:
        """Connect to the gateway at ``address`` (or the first one advertising
        the OpenStuder service) and authorize.

        Without ``user`` the gateway grants its guest access level.
        """
        self._ensure_in_state(ConnectionState.DISCONNECTED)

        self._user = user
        self._password = password
        self._reassembler.reset()

        self._set_state(ConnectionState.CONNECTING)
        try:
            self._transport.open(
                TransportEvents(
                    on_open=self._on_open,
                    on_message=self._on_fragment,
                    on_close=self._on_close,
                    on_error=self._on_transport_error,
                ),
                address,
            )
        except Exception:
            self._set_state(ConnectionState.DISCONNECTED)
            raise

    def enumerate(self) -> None:
        self._send(bt_codec.encode_enumerate_frame())

    def describe(
        self,
        device_access_id: str | None = None,
        device_id: str | None = None,
        property_id: int | None = None,
    ) -> None:
        self._send(bt_codec.encode_describe_frame(device_access_id, device_id, property_id))

    def read_property(self, property_id: str) -> None:
        self._send(bt_codec.encode_read_property_frame(property_id))

    def write_property(
        self,
        property_id: str,
        value: PropertyValue | None = None,
        flags: WriteFlags | None = None,
    ) -> None:
        self._send(bt_codec.encode_write_property_frame(property_id, value, flags))

    def subscribe_to_property(self, property_id: str) -> None:
        self._send(bt_codec.encode_subscribe_property_frame(property_id))

    def unsubscribe_from_property(self, property_id: str) -> None:
        self._send(bt_codec.encode_unsubscribe_property_frame(property_id))

    def read_datalog_properties(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> None:
        self._send(bt_codec.encode_read_datalog_frame(None, date_from, date_to, None))

    def read_datalog(
        self,
        property_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
    ) -> None:
        self._send(bt_codec.encode_read_datalog_frame(property_id, date_from, date_to, limit))

    def read_messages(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
    ) -> None:
        self._send(bt_codec.encode_read_messages_frame(date_from, date_to, limit))

    def disconnect(self) -> None:
        self._ensure_in_state(ConnectionState.CONNECTED)
        self._transport.close()

    def _ensure_in_state(self, state: ConnectionState) -> None:
        if self._state is not state:
            raise ProtocolError("invalid client state")

    def _send(self, frame: bytes) -> None:
        self._ensure_in_state(ConnectionState.CONNECTED)
        self._write_frame(frame)

    def _write_frame(self, frame: bytes) -> None:
        fragments = bt_codec.fragment_payload(frame, self._max_fragment_size)
        LOGGER.debug("Sending %d byte frame in %d fragment(s)", len(frame), len(fragments))
        for fragment in fragments:
            self._transport.write(fragment)

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            LOGGER.info("Bluetooth client state %s -> %s", self._state.value, state.value)
        self._state = state

    def _report_error(self, reason: str) -> None:
        LOGGER.warning("Bluetooth client error: %s", reason)
        if self._callbacks is not None:
            self._callbacks.on_error(reason)

    # Transport events.

    def _on_open(self) -> None:
        self._set_state(ConnectionState.AUTHORIZING)
        self._write_frame(bt_codec.encode_authorize_frame(self._user, self._password))

    def _on_fragment(self, fragment: bytes) -> None:
        try:
            frame = self._reassembler.feed(fragment)
        except ProtocolError as exc:
            self._report_error(str(exc))
            return
        if frame is not None:
            self._on_frame(frame)

    def _on_frame(self, frame: bytes) -> None:
        if self._state is ConnectionState.AUTHORIZING:
            self._handle_authorized(frame)
        elif self._state is ConnectionState.CONNECTED:
            try:
                command = bt_codec.peek_frame_command(frame)
                LOGGER.debug("Received frame 0x%02x", command)
                handler = self._handlers.get(command)
                if handler is None:
                    raise ProtocolError(f"unsupported frame command: {command}")
                handler(frame)
            except ProtocolError as exc:
                self._report_error(str(exc))
        else:
            LOGGER.debug("Dropping frame received in state %s", self._state.value)

    def _on_close(self) -> None:
        self._reassembler.reset()
        self._set_state(ConnectionState.DISCONNECTED)
        self._access_level = AccessLevel.NONE
        if self._callbacks is not None:
            self._callbacks.on_disconnected()

    def _on_transport_error(self, reason: str) -> None:
        self._report_error(reason)

    # Frame handlers.

    def _handle_authorized(self, frame: bytes) -> None:
        try:
            authorized = bt_codec.decode_authorized_frame(frame)
        except ProtocolError as exc:
            self._report_error(str(exc))
            self._transport.close()
            self._set_state(ConnectionState.DISCONNECTED)
            return

        self._access_level = authorized.access_level
        self._gateway_version = authorized.gateway_version
        self._set_state(ConnectionState.CONNECTED)
        if self._callbacks is not None:
            self._callbacks.on_connected(self._access_level, self._gateway_version)

    def _handle_error(self, frame: bytes) -> None:
        self._report_error(bt_codec.decode_error_frame(frame))

    def _handle_enumerated(self, frame: bytes) -> None:
        decoded = bt_codec.decode_enumerated_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_enumerated(decoded.status, decoded.device_count)

    def _handle_description(self, frame: bytes) -> None:
        decoded = bt_codec.decode_description_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_description(decoded.status, decoded.description, decoded.id)

    def _handle_property_read(self, frame: bytes) -> None:
        decoded = bt_codec.decode_property_read_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_read(decoded.status, decoded.id, decoded.value)

    def _handle_property_written(self, frame: bytes) -> None:
        decoded = bt_codec.decode_property_written_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_written(decoded.status, decoded.id)

    def _handle_property_subscribed(self, frame: bytes) -> None:
        decoded = bt_codec.decode_property_subscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_subscribed(decoded.status, decoded.id)

    def _handle_property_unsubscribed(self, frame: bytes) -> None:
        decoded = bt_codec.decode_property_unsubscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_unsubscribed(decoded.status, decoded.id)

    def _handle_property_update(self, frame: bytes) -> None:
        decoded = bt_codec.decode_property_update_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_updated(decoded.id, decoded.value)

    def _handle_datalog_read(self, frame: bytes) -> None:
        decoded = bt_codec.decode_datalog_read_frame(frame)
        if self._callbacks is None:
            return
        if decoded.id is None:
            self._callbacks.on_datalog_properties_read(decoded.status, decoded.values)
        else:
            self._callbacks.on_datalog_read(decoded.status, decoded.id, decoded.count, decoded.values)

    def _handle_device_message(self, frame: bytes) -> None:
        message = bt_codec.decode_device_message_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_device_message(message)

    def _handle_messages_read(self, frame: bytes) -> None:
        decoded = bt_codec.decode_messages_read_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_messages_read(decoded.status, decoded.count, list(decoded.messages))
