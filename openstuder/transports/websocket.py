"""WebSocket transport implementation."""

from __future__ import annotations

import asyncio
import logging

import websockets
from websockets.exceptions import ConnectionClosedError, InvalidHandshake, InvalidURI

from openstuder.core.errors import TransportConnectError, TransportSendError
from openstuder.transports.base import TransportEvents

LOGGER = logging.getLogger(__name__)


class WebSocketTransport:
    """Text frame transport running on the caller's asyncio event loop."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._websocket = None
        self._outbox: asyncio.Queue[str] | None = None
        self._close_task: asyncio.Task[None] | None = None

    def open(self, url: str, events: TransportEvents[str]) -> None:
        if self._task is not None and not self._task.done():
            raise TransportConnectError("WebSocket transport is already open")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportConnectError("WebSocket transport requires a running event loop") from exc
        self._outbox = asyncio.Queue()
        self._task = loop.create_task(self._run(url, events))

    def send(self, frame: str) -> None:
        if self._websocket is None or self._outbox is None:
            raise TransportSendError("WebSocket is not open")
        self._outbox.put_nowait(frame)

    def close(self) -> None:
        if self._task is None or self._task.done():
            return
        if self._websocket is not None:
            self._close_task = asyncio.get_running_loop().create_task(self._websocket.close())
        else:
            self._task.cancel()

    async def _run(self, url: str, events: TransportEvents[str]) -> None:
        writer: asyncio.Task[None] | None = None
        try:
            LOGGER.debug("Connecting to %s", url)
            async with websockets.connect(url, open_timeout=None) as websocket:
                self._websocket = websocket
                writer = asyncio.get_running_loop().create_task(self._drain(websocket))
                _notify("open", events.on_open)
                async for message in websocket:
                    if isinstance(message, bytes):
                        message = message.decode("utf-8", errors="replace")
                    _notify("message", events.on_message, message)
        except asyncio.CancelledError:
            LOGGER.debug("Connection attempt to %s cancelled", url)
            raise
        except (ConnectionClosedError, InvalidURI, InvalidHandshake, OSError) as exc:
            LOGGER.debug("WebSocket failure on %s: %s", url, exc)
            _notify("error", events.on_error, f"WebSocket failure: {exc}")
        finally:
            if writer is not None:
                writer.cancel()
            self._websocket = None
            self._outbox = None
            _notify("close", events.on_close)

    async def _drain(self, websocket) -> None:
        outbox = self._outbox
        if outbox is None:
            return
        while True:
            frame = await outbox.get()
            try:
                await websocket.send(frame)
            except websockets.ConnectionClosed:
                LOGGER.debug("Dropping frame, connection closed")
                return


def _notify(event: str, handler, *args) -> None:
    # Handler failures must not end the receive loop.
    try:
        handler(*args)
    except Exception:
        LOGGER.exception("Unhandled exception in WebSocket %s handler", event)
