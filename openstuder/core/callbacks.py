"""Callback interfaces invoked by the gateway clients.

Applications subclass the interface matching their client and override the
methods they care about; every method defaults to a no-op. Gateway-side
failures arrive as a non-success ``status`` on the regular callback, so
check it on every call.
"""

from __future__ import annotations

from typing import Any

from openstuder.core.model import (
    AccessLevel,
    DatalogEntry,
    DeviceFunctions,
    DeviceMessage,
    PropertyReadResult,
    PropertyValue,
    Status,
    SubscriptionResult,
)


class _CommonCallbacks:
    def on_connected(self, access_level: AccessLevel, gateway_version: str) -> None:
        """Called once the connection is established and the user is authorized."""

    def on_disconnected(self) -> None:
        """Called when the connection was closed by either side or lost."""

    def on_error(self, reason: str) -> None:
        """Called on protocol, handshake and transport errors."""

    def on_enumerated(self, status: Status, device_count: int) -> None:
        """Called when an enumeration started with ``enumerate()`` completed."""

    def on_property_read(self, status: Status, property_id: str, value: PropertyValue | None) -> None:
        """Called with the result of ``read_property()``."""

    def on_property_written(self, status: Status, property_id: str) -> None:
        """Called with the result of ``write_property()``."""

    def on_property_subscribed(self, status: Status, property_id: str) -> None:
        """Called with the result of ``subscribe_to_property()``."""

    def on_property_unsubscribed(self, status: Status, property_id: str) -> None:
        """Called with the result of ``unsubscribe_from_property()``."""

    def on_property_updated(self, property_id: str, value: PropertyValue | None) -> None:
        """Called whenever the gateway pushes a new value of a subscribed property."""

    def on_datalog_properties_read(self, status: Status, properties: list[str]) -> None:
        """Called with the IDs of all properties that have logged data."""

    def on_device_message(self, message: DeviceMessage) -> None:
        """Called whenever a device broadcasts a message through the gateway."""

    def on_messages_read(self, status: Status, count: int, messages: list[DeviceMessage]) -> None:
        """Called with the stored device messages requested by ``read_messages()``."""


class GatewayClientCallbacks(_CommonCallbacks):
    """Callbacks of the WebSocket :class:`~openstuder.core.ws_client.GatewayClient`."""

    def on_description(self, status: Status, description: str | None, id_: str | None = None) -> None:
        """Called with the JSON description requested by ``describe()``."""

    def on_properties_found(
        self,
        status: Status,
        id_: str,
        count: int,
        virtual: bool,
        functions: DeviceFunctions,
        properties: list[str],
    ) -> None:
        """Called with the property IDs matching a ``find_properties()`` search."""

    def on_properties_read(self, results: list[PropertyReadResult]) -> None:
        pass

    def on_properties_subscribed(self, statuses: list[SubscriptionResult]) -> None:
        pass

    def on_properties_unsubscribed(self, statuses: list[SubscriptionResult]) -> None:
        pass

    def on_datalog_read(self, status: Status, property_id: str, count: int, values: str) -> None:
        """Called with logged values as CSV: ISO-8601 timestamp, value."""


class BluetoothGatewayClientCallbacks(_CommonCallbacks):
    """Callbacks of the :class:`~openstuder.core.bt_client.BluetoothGatewayClient`."""

    def on_description(self, status: Status, description: Any, id_: str | None = None) -> None:
        """Called with the decoded CBOR description requested by ``describe()``."""

    def on_datalog_read(
        self,
        status: Status,
        property_id: str,
        count: int,
        values: list[DatalogEntry],
    ) -> None:
        """Called with the logged values and their timestamps."""
