"""Asynchronous (callback based) WebSocket gateway client."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from openstuder.core import ws_codec
from openstuder.core.callbacks import GatewayClientCallbacks
from openstuder.core.errors import ProtocolError
from openstuder.core.model import (
    AccessLevel,
    ConnectionState,
    DescriptionFlags,
    DeviceFunctions,
    PropertyValue,
    WriteFlags,
)
from openstuder.transports.base import CallLater, TextTransport, TimerHandle, TransportEvents

DEFAULT_PORT = 1987
DEFAULT_TIMEOUT_MS = 5000
LOGGER = logging.getLogger(__name__)


def _loop_call_later(delay_s: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay_s, callback)


class GatewayClient:
    """Client for the text protocol of an OpenStuder gateway.

    All requests are fire-and-forget; results are delivered through the
    :class:`GatewayClientCallbacks` registered with :meth:`set_callbacks`.
    Every request except :meth:`connect` requires the ``CONNECTED`` state and
    raises :class:`ProtocolError` otherwise.
    """

    def __init__(
        self,
        transport: TextTransport | None = None,
        *,
        call_later: CallLater | None = None,
    ) -> None:
        if transport is None:
            from openstuder.transports.websocket import WebSocketTransport

            transport = WebSocketTransport()
        self._transport = transport
        self._call_later = call_later or _loop_call_later
        self._callbacks: GatewayClientCallbacks | None = None
        self._state = ConnectionState.DISCONNECTED
        self._access_level = AccessLevel.NONE
        self._gateway_version = ""
        self._user: str | None = None
        self._password: str | None = None
        self._connect_timer: TimerHandle | None = None
        self._handlers: dict[str, Callable[[str], None]] = {
            "ERROR": self._handle_error,
            "ENUMERATED": self._handle_enumerated,
            "DESCRIPTION": self._handle_description,
            "PROPERTIES FOUND": self._handle_properties_found,
            "PROPERTY READ": self._handle_property_read,
            "PROPERTIES READ": self._handle_properties_read,
            "PROPERTY WRITTEN": self._handle_property_written,
            "PROPERTY SUBSCRIBED": self._handle_property_subscribed,
            "PROPERTIES SUBSCRIBED": self._handle_properties_subscribed,
            "PROPERTY UNSUBSCRIBED": self._handle_property_unsubscribed,
            "PROPERTIES UNSUBSCRIBED": self._handle_properties_unsubscribed,
            "PROPERTY UPDATE": self._handle_property_update,
            "DATALOG READ": self._handle_datalog_read,
            "DEVICE MESSAGE": self._handle_device_message,
            "MESSAGES READ": self._handle_messages_read,
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

    def set_callbacks(self, callbacks: GatewayClientCallbacks | None) -> None:
        self._callbacks = callbacks

    def connect(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        user: str | None = None,
        password: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        """Open the connection and authorize once it is established.

        The outcome is reported through ``on_connected`` or ``on_error``.
        ``host`` may carry a ``ws://``/``wss://`` scheme; ``ws://`` is assumed
        otherwise.
        """
        self._ensure_in_state(ConnectionState.DISCONNECTED)

        self._user = user or ""
        self._password = password or ""
        url = host if "://" in host else f"ws://{host}"

        self._connect_timer = self._call_later(timeout_ms / 1000.0, self._on_connect_timeout)
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._transport.open(
                f"{url}:{port}",
                TransportEvents(
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_close=self._on_close,
                    on_error=self._on_transport_error,
                ),
            )
        except Exception:
            self._cancel_connect_timer()
            self._set_state(ConnectionState.DISCONNECTED)
            raise

    def enumerate(self) -> None:
        """Ask the gateway to rescan all device access drivers for devices."""
        self._send(ws_codec.encode_enumerate_frame())

    def describe(
        self,
        device_access_id: str | None = None,
        device_id: str | None = None,
        property_id: int | None = None,
        flags: Iterable[DescriptionFlags] | None = None,
    ) -> None:
        """Request the description of the whole topology or one part of it."""
        self._send(ws_codec.encode_describe_frame(device_access_id, device_id, property_id, flags))

    def find_properties(
        self,
        property_id: str,
        virtual: bool | None = None,
        functions: DeviceFunctions | None = None,
    ) -> None:
        """Search properties; ``*`` is allowed for the access and device segments."""
        self._send(ws_codec.encode_find_properties_frame(property_id, virtual, functions))

    def read_property(self, property_id: str) -> None:
        self._send(ws_codec.encode_read_property_frame(property_id))

    def read_properties(self, property_ids: Sequence[str]) -> None:
        self._send(ws_codec.encode_read_properties_frame(property_ids))

    def write_property(
        self,
        property_id: str,
        value: PropertyValue | None = None,
        flags: WriteFlags | None = None,
    ) -> None:
        """Write a property; omit ``value`` to trigger a signal property."""
        self._send(ws_codec.encode_write_property_frame(property_id, value, flags))

    def subscribe_to_property(self, property_id: str) -> None:
        self._send(ws_codec.encode_subscribe_property_frame(property_id))

    def subscribe_to_properties(self, property_ids: Sequence[str]) -> None:
        self._send(ws_codec.encode_subscribe_properties_frame(property_ids))

    def unsubscribe_from_property(self, property_id: str) -> None:
        self._send(ws_codec.encode_unsubscribe_property_frame(property_id))

    def unsubscribe_from_properties(self, property_ids: Sequence[str]) -> None:
        self._send(ws_codec.encode_unsubscribe_properties_frame(property_ids))

    def read_datalog_properties(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> None:
        """List the properties with logged data, optionally within a time window."""
        self._send(ws_codec.encode_read_datalog_frame(None, date_from, date_to, None))

    def read_datalog(
        self,
        property_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
    ) -> None:
        self._send(ws_codec.encode_read_datalog_frame(property_id, date_from, date_to, limit))

    def read_messages(
        self,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
    ) -> None:
        self._send(ws_codec.encode_read_messages_frame(date_from, date_to, limit))

    def disconnect(self) -> None:
        self._ensure_in_state(ConnectionState.CONNECTED)
        self._transport.close()

    def _ensure_in_state(self, state: ConnectionState) -> None:
        if self._state is not state:
            raise ProtocolError("invalid client state")

    def _send(self, frame: str) -> None:
        self._ensure_in_state(ConnectionState.CONNECTED)
        LOGGER.debug("Sending frame %r", ws_codec.peek_frame_command(frame))
        self._transport.send(frame)

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            LOGGER.info("Gateway client state %s -> %s", self._state.value, state.value)
        self._state = state

    def _cancel_connect_timer(self) -> None:
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    def _report_error(self, reason: str) -> None:
        LOGGER.warning("Gateway client error: %s", reason)
        if self._callbacks is not None:
            self._callbacks.on_error(reason)

    # Transport events.

    def _on_connect_timeout(self) -> None:
        self._connect_timer = None
        if self._state is ConnectionState.CONNECTING:
            self._transport.close()
            self._set_state(ConnectionState.DISCONNECTED)
            self._report_error("connect timeout")

    def _on_open(self) -> None:
        self._cancel_connect_timer()
        self._set_state(ConnectionState.AUTHORIZING)
        self._transport.send(ws_codec.encode_authorize_frame(self._user, self._password))

    def _on_message(self, frame: str) -> None:
        if self._state is ConnectionState.AUTHORIZING:
            self._handle_authorized(frame)
        elif self._state is ConnectionState.CONNECTED:
            try:
                command = ws_codec.peek_frame_command(frame)
                LOGGER.debug("Received frame %r", command)
                handler = self._handlers.get(command)
                if handler is None:
                    raise ProtocolError(f"unsupported frame command: {command}")
                handler(frame)
            except ProtocolError as exc:
                self._report_error(str(exc))
        else:
            LOGGER.debug("Dropping frame received in state %s", self._state.value)

    def _on_close(self) -> None:
        self._cancel_connect_timer()
        self._set_state(ConnectionState.DISCONNECTED)
        self._access_level = AccessLevel.NONE
        if self._callbacks is not None:
            self._callbacks.on_disconnected()

    def _on_transport_error(self, reason: str) -> None:
        self._report_error(reason)

    # Frame handlers.

    def _handle_authorized(self, frame: str) -> None:
        try:
            authorized = ws_codec.decode_authorized_frame(frame)
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

    def _handle_error(self, frame: str) -> None:
        self._report_error(ws_codec.decode_error_frame(frame))

    def _handle_enumerated(self, frame: str) -> None:
        decoded = ws_codec.decode_enumerated_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_enumerated(decoded.status, decoded.device_count)

    def _handle_description(self, frame: str) -> None:
        decoded = ws_codec.decode_description_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_description(decoded.status, decoded.description, decoded.id)

    def _handle_properties_found(self, frame: str) -> None:
        decoded = ws_codec.decode_properties_found_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_properties_found(
                decoded.status,
                decoded.id,
                decoded.count,
                decoded.virtual,
                decoded.functions,
                list(decoded.properties),
            )

    def _handle_property_read(self, frame: str) -> None:
        decoded = ws_codec.decode_property_read_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_read(decoded.status, decoded.id, decoded.value)

    def _handle_properties_read(self, frame: str) -> None:
        results = ws_codec.decode_properties_read_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_properties_read(results)

    def _handle_property_written(self, frame: str) -> None:
        decoded = ws_codec.decode_property_written_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_written(decoded.status, decoded.id)

    def _handle_property_subscribed(self, frame: str) -> None:
        decoded = ws_codec.decode_property_subscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_subscribed(decoded.status, decoded.id)

    def _handle_properties_subscribed(self, frame: str) -> None:
        statuses = ws_codec.decode_properties_subscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_properties_subscribed(statuses)

    def _handle_property_unsubscribed(self, frame: str) -> None:
        decoded = ws_codec.decode_property_unsubscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_unsubscribed(decoded.status, decoded.id)

    def _handle_properties_unsubscribed(self, frame: str) -> None:
        statuses = ws_codec.decode_properties_unsubscribed_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_properties_unsubscribed(statuses)

    def _handle_property_update(self, frame: str) -> None:
        decoded = ws_codec.decode_property_update_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_property_updated(decoded.id, decoded.value)

    def _handle_datalog_read(self, frame: str) -> None:
        decoded = ws_codec.decode_datalog_read_frame(frame)
        if self._callbacks is None:
            return
        if decoded.id is None:
            self._callbacks.on_datalog_properties_read(decoded.status, decoded.values)
        else:
            self._callbacks.on_datalog_read(decoded.status, decoded.id, decoded.count, decoded.values)

    def _handle_device_message(self, frame: str) -> None:
        message = ws_codec.decode_device_message_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_device_message(message)

    def _handle_messages_read(self, frame: str) -> None:
        decoded = ws_codec.decode_messages_read_frame(frame)
        if self._callbacks is not None:
            self._callbacks.on_messages_read(decoded.status, decoded.count, list(decoded.messages))
