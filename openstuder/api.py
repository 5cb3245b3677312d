"""Stable public API of the openstuder gateway client library.

Applications should import from here rather than from the ``core`` and
``transports`` modules, whose layout may change.
"""

from __future__ import annotations

from openstuder.core.bt_client import BluetoothGatewayClient
from openstuder.core.callbacks import BluetoothGatewayClientCallbacks, GatewayClientCallbacks
from openstuder.core.config import GatewayConfig, load_config
from openstuder.core.errors import (
    ConfigError,
    OpenStuderError,
    ProtocolError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from openstuder.core.model import (
    AccessLevel,
    ConnectionState,
    DatalogEntry,
    DescriptionFlags,
    DeviceFunctions,
    DeviceMessage,
    PropertyReadResult,
    PropertyValue,
    Status,
    SubscriptionResult,
    WriteFlags,
)
from openstuder.core.ws_client import GatewayClient
from openstuder.transports.base import BluetoothTransport, TextTransport, TransportEvents

__all__ = [
    "OpenStuderError",
    "ProtocolError",
    "ConfigError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "AccessLevel",
    "ConnectionState",
    "DatalogEntry",
    "DescriptionFlags",
    "DeviceFunctions",
    "DeviceMessage",
    "PropertyReadResult",
    "PropertyValue",
    "Status",
    "SubscriptionResult",
    "WriteFlags",
    "GatewayClient",
    "GatewayClientCallbacks",
    "BluetoothGatewayClient",
    "BluetoothGatewayClientCallbacks",
    "GatewayConfig",
    "load_config",
    "TextTransport",
    "BluetoothTransport",
    "TransportEvents",
]
