"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from openstuder.core.bt_codec import RX_CHAR_UUID, SERVICE_UUID, TX_CHAR_UUID
from openstuder.core.errors import TransportConnectError, TransportSendError
from openstuder.transports.base import TransportEvents

LOGGER = logging.getLogger(__name__)


class BLEGATTTransport:
    """Fragment transport over the OpenStuder GATT service.

    Fragments are written to the TX characteristic without response, inbound
    fragments arrive as notifications on the RX characteristic.
    """

    def __init__(self, *, scan_timeout_s: float = 10.0) -> None:
        self._scan_timeout_s = scan_timeout_s
        self._task: asyncio.Task[None] | None = None
        self._client: BleakClient | None = None
        self._outbox: asyncio.Queue[bytes] | None = None
        self._disconnected: asyncio.Event | None = None

    def open(self, events: TransportEvents[bytes], address: str | None = None) -> None:
        if self._task is not None and not self._task.done():
            raise TransportConnectError("BLE transport is already open")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportConnectError("BLE transport requires a running event loop") from exc
        self._outbox = asyncio.Queue()
        self._disconnected = asyncio.Event()
        self._task = loop.create_task(self._run(events, address))

    def write(self, fragment: bytes) -> None:
        if self._client is None or self._outbox is None:
            raise TransportSendError("BLE connection is not open")
        self._outbox.put_nowait(fragment)

    def close(self) -> None:
        if self._task is None or self._task.done():
            return
        if self._client is not None and self._disconnected is not None:
            self._disconnected.set()
        else:
            self._task.cancel()

    async def _find_device(self, address: str | None):
        if address:
            device = await BleakScanner.find_device_by_address(address, timeout=self._scan_timeout_s)
            if device is None:
                raise TransportConnectError(f"No BLE device found with address {address}")
            return device

        device = await BleakScanner.find_device_by_filter(
            lambda _, adv: SERVICE_UUID in [uuid.lower() for uuid in adv.service_uuids],
            timeout=self._scan_timeout_s,
        )
        if device is None:
            raise TransportConnectError("No OpenStuder gateway found while scanning")
        return device

    async def _run(self, events: TransportEvents[bytes], address: str | None) -> None:
        disconnected = self._disconnected
        writer: asyncio.Task[None] | None = None

        def _on_notify(_: object, data: bytearray) -> None:
            events.on_message(bytes(data))

        def _on_disconnect(_: BleakClient) -> None:
            if disconnected is not None:
                disconnected.set()

        try:
            device = await self._find_device(address)
            LOGGER.debug("Connecting to BLE gateway %s", device.address)
            async with BleakClient(device, disconnected_callback=_on_disconnect) as client:
                await client.start_notify(RX_CHAR_UUID, _on_notify)
                self._client = client
                writer = asyncio.get_running_loop().create_task(self._drain(client))
                events.on_open()
                if disconnected is not None:
                    await disconnected.wait()
        except asyncio.CancelledError:
            LOGGER.debug("BLE connection attempt cancelled")
            raise
        except (BleakError, TransportConnectError, OSError, asyncio.TimeoutError) as exc:
            LOGGER.debug("BLE failure: %s", exc)
            events.on_error(f"BLE failure: {exc}")
        finally:
            if writer is not None:
                writer.cancel()
            self._client = None
            self._outbox = None
            events.on_close()

    async def _drain(self, client: BleakClient) -> None:
        outbox = self._outbox
        if outbox is None:
            return
        while True:
            fragment = await outbox.get()
            try:
                await client.write_gatt_char(TX_CHAR_UUID, fragment, response=False)
            except BleakError as exc:
                LOGGER.warning("BLE write failed: %s", exc)
                if self._disconnected is not None:
                    self._disconnected.set()
                return
