"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class TransportEvents(Generic[T]):
    """Event handlers a transport invokes on the caller's event loop.

    ``on_close`` is called exactly once per ``open()``, whether the
    connection was established or not.
    """

    on_open: Callable[[], None]
    on_message: Callable[[T], None]
    on_close: Callable[[], None]
    on_error: Callable[[str], None]


class TextTransport(Protocol):
    def open(self, url: str, events: TransportEvents[str]) -> None:
        """Start connecting to ``url``; completion is reported through ``events``."""

    def send(self, frame: str) -> None:
        """Queue a text frame for sending."""

    def close(self) -> None:
        """Close the connection or abort a pending connection attempt."""


class BluetoothTransport(Protocol):
    def open(self, events: TransportEvents[bytes], address: str | None = None) -> None:
        """Start connecting to the gateway at ``address``, or the first one found."""

    def write(self, fragment: bytes) -> None:
        """Queue one fragment for the TX characteristic."""

    def close(self) -> None:
        """Disconnect or abort a pending connection attempt."""


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]
