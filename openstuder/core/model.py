"""Core enums and value objects shared by both gateway protocols."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum, IntFlag
from typing import Any, Union

PropertyValue = Union[bool, int, float, str]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"


class Status(IntEnum):
    """Status of an operation as reported by the gateway."""

    SUCCESS = 0
    IN_PROGRESS = 1
    ERROR = -1
    NO_PROPERTY = -2
    NO_DEVICE = -3
    NO_DEVICE_ACCESS = -4
    TIMEOUT = -5
    INVALID_VALUE = -6

    @classmethod
    def from_string(cls, value: str | None) -> Status:
        return _STATUS_NAMES.get(value or "", cls.ERROR)

    @classmethod
    def from_code(cls, value: Any) -> Status:
        if isinstance(value, bool) or not isinstance(value, int):
            return cls.ERROR
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


_STATUS_NAMES = {
    "Success": Status.SUCCESS,
    "InProgress": Status.IN_PROGRESS,
    "Error": Status.ERROR,
    "NoProperty": Status.NO_PROPERTY,
    "NoDevice": Status.NO_DEVICE,
    "NoDeviceAccess": Status.NO_DEVICE_ACCESS,
    "Timeout": Status.TIMEOUT,
    "InvalidValue": Status.INVALID_VALUE,
}


class AccessLevel(IntEnum):
    """Level of access granted by the gateway, ordered by privilege."""

    NONE = 0
    BASIC = 1
    INSTALLER = 2
    EXPERT = 3
    QUALIFIED_SERVICE_PERSONNEL = 4

    @classmethod
    def from_string(cls, value: str | None) -> AccessLevel:
        return _ACCESS_LEVEL_NAMES.get(value or "", cls.NONE)

    @classmethod
    def from_code(cls, value: Any) -> AccessLevel:
        if isinstance(value, bool) or not isinstance(value, int):
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.NONE


_ACCESS_LEVEL_NAMES = {
    "None": AccessLevel.NONE,
    "Basic": AccessLevel.BASIC,
    "Installer": AccessLevel.INSTALLER,
    "Expert": AccessLevel.EXPERT,
    "QSP": AccessLevel.QUALIFIED_SERVICE_PERSONNEL,
}


class DescriptionFlags(Enum):
    INCLUDE_ACCESS_INFORMATION = "IncludeAccessInformation"
    INCLUDE_PROPERTY_INFORMATION = "IncludePropertyInformation"
    INCLUDE_DEVICE_INFORMATION = "IncludeDeviceInformation"
    INCLUDE_DRIVER_INFORMATION = "IncludeDriverInformation"


class WriteFlags(IntEnum):
    NONE = 0
    PERMANENT = 1


class DeviceFunctions(IntFlag):
    """Device function filter used by the find properties operation."""

    NONE = 0
    INVERTER = 1
    CHARGER = 2
    SOLAR = 4
    TRANSFER = 8
    BATTERY = 16
    ALL = INVERTER | CHARGER | SOLAR | TRANSFER | BATTERY


# Token order on the wire.
DEVICE_FUNCTION_TOKENS: tuple[tuple[DeviceFunctions, str], ...] = (
    (DeviceFunctions.INVERTER, "inverter"),
    (DeviceFunctions.CHARGER, "charger"),
    (DeviceFunctions.SOLAR, "solar"),
    (DeviceFunctions.TRANSFER, "transfer"),
    (DeviceFunctions.BATTERY, "battery"),
)


@dataclass(frozen=True)
class TextFrame:
    command: str
    headers: dict[str, str]
    body: str


@dataclass(frozen=True)
class BinaryFrame:
    command: int
    sequence: tuple[Any, ...]


@dataclass(frozen=True)
class DeviceMessage:
    """A message a device connected to the gateway has broadcast."""

    timestamp: datetime
    access_id: str
    device_id: str
    message_id: str
    message: str


@dataclass(frozen=True)
class DatalogEntry:
    timestamp: datetime
    value: PropertyValue | None


@dataclass(frozen=True)
class PropertyReadResult:
    status: Status
    id: str
    value: PropertyValue | None = None


@dataclass(frozen=True)
class SubscriptionResult:
    status: Status
    id: str


@dataclass(frozen=True)
class Authorized:
    access_level: AccessLevel
    protocol_version: str
    gateway_version: str


@dataclass(frozen=True)
class Enumerated:
    status: Status
    device_count: int


@dataclass(frozen=True)
class Description:
    status: Status
    id: str | None
    description: Any


@dataclass(frozen=True)
class PropertiesFound:
    status: Status
    id: str
    count: int
    virtual: bool
    functions: DeviceFunctions
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class PropertyUpdate:
    id: str
    value: PropertyValue | None


@dataclass(frozen=True)
class DatalogRead:
    """Datalog response; ``id`` is None when the property list was requested."""

    status: Status
    id: str | None
    count: int
    values: Any


@dataclass(frozen=True)
class MessagesRead:
    status: Status
    count: int
    messages: tuple[DeviceMessage, ...] = field(default_factory=tuple)
