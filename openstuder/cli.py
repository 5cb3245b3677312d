"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import typer

from openstuder.core.bt_client import BluetoothGatewayClient
from openstuder.core.callbacks import BluetoothGatewayClientCallbacks, GatewayClientCallbacks
from openstuder.core.config import GatewayConfig, load_config
from openstuder.core.errors import OpenStuderError
from openstuder.core.model import (
    AccessLevel,
    ConnectionState,
    DescriptionFlags,
    DeviceMessage,
    PropertyValue,
    Status,
    WriteFlags,
)
from openstuder.core.ws_client import GatewayClient
from openstuder.core.ws_codec import decode_device_functions, format_value
from openstuder.transports.ble_gatt import BLEGATTTransport

app = typer.Typer(help="Access OpenStuder gateways over WebSocket or Bluetooth LE")
LOGGER = logging.getLogger(__name__)

Client = GatewayClient | BluetoothGatewayClient


@dataclass(frozen=True)
class _Options:
    config: Path | None = None
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    timeout_ms: int | None = None
    bluetooth: bool = False
    address: str | None = None


def _settings(options: _Options) -> GatewayConfig:
    settings = load_config(options.config)
    overrides = {
        "host": options.host,
        "port": options.port,
        "user": options.user,
        "password": options.password,
        "timeout_ms": options.timeout_ms,
        "bluetooth_address": options.address,
    }
    return replace(settings, **{key: value for key, value in overrides.items() if value is not None})


def _build_client(settings: GatewayConfig, bluetooth: bool) -> Client:
    if bluetooth:
        return BluetoothGatewayClient(
            BLEGATTTransport(scan_timeout_s=settings.scan_timeout_s),
            max_fragment_size=settings.max_fragment_size,
        )
    return GatewayClient()


def _connect(client: Client, settings: GatewayConfig, bluetooth: bool) -> None:
    if bluetooth:
        client.connect(settings.user, settings.password, settings.bluetooth_address)
    else:
        client.connect(settings.host, settings.port, settings.user, settings.password, settings.timeout_ms)


def _format_value(value: PropertyValue | None) -> str:
    return "-" if value is None else format_value(value)


def _format_message(message: DeviceMessage) -> str:
    return (
        f"{message.timestamp.isoformat()} {message.access_id}.{message.device_id} "
        f"[{message.message_id}] {message.message}"
    )


def _parse_value(value: str) -> PropertyValue:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return value


def _split_id(value: str) -> tuple[str | None, str | None, int | None]:
    parts = value.split(".")
    if len(parts) > 3 or not all(parts):
        raise typer.BadParameter(f"'{value}' is not an <access>[.<device>[.<property>]] ID")
    property_id = None
    if len(parts) == 3:
        try:
            property_id = int(parts[2])
        except ValueError:
            raise typer.BadParameter(f"property ID '{parts[2]}' must be numeric") from None
    return parts[0], parts[1] if len(parts) > 1 else None, property_id


class _Session(GatewayClientCallbacks, BluetoothGatewayClientCallbacks):
    """Runs one request on a fresh connection and prints what comes back.

    The session ends after ``expected`` results, unless ``keep_open`` is set
    (subscriptions), in which case it runs until an error or interrupt.
    """

    def __init__(
        self,
        client: Client,
        request: Callable[[Client], None],
        *,
        expected: int = 1,
        keep_open: bool = False,
    ) -> None:
        self._client = client
        self._request = request
        self._pending = expected
        self._keep_open = keep_open
        self.error: str | None = None
        self.done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def _resolve(self) -> None:
        if not self.done.done():
            self.done.set_result(None)

    def _close(self) -> None:
        if self._client.state is ConnectionState.CONNECTED:
            self._client.disconnect()
        else:
            self._resolve()

    def _fail(self, reason: str) -> None:
        if self.error is None:
            self.error = reason
        self._close()

    def _note(self, status: Status, what: str) -> None:
        if status is not Status.SUCCESS and self.error is None:
            self.error = f"{what} failed: {status.name}"

    def _complete(self) -> None:
        self._pending -= 1
        if self._pending <= 0 and (not self._keep_open or self.error is not None):
            self._close()

    def on_connected(self, access_level: AccessLevel, gateway_version: str) -> None:
        LOGGER.info("Connected to gateway %s as %s", gateway_version, access_level.name)
        try:
            self._request(self._client)
        except OpenStuderError as exc:
            self._fail(str(exc))

    def on_disconnected(self) -> None:
        if self.error is None and (self._pending > 0 or self._keep_open):
            self.error = "connection closed by gateway"
        self._resolve()

    def on_error(self, reason: str) -> None:
        self._fail(reason)

    def on_enumerated(self, status: Status, device_count: int) -> None:
        typer.echo(f"Enumerated {device_count} device(s)")
        self._note(status, "enumeration")
        self._complete()

    def on_description(self, status: Status, description: Any, id_: str | None = None) -> None:
        if status is Status.SUCCESS:
            if isinstance(description, str):
                typer.echo(description)
            else:
                typer.echo(json.dumps(description, indent=2, default=str))
        self._note(status, f"describe {id_ or 'gateway'}")
        self._complete()

    def on_properties_found(self, status, id_, count, virtual, functions, properties) -> None:
        for property_id in properties:
            typer.echo(property_id)
        self._note(status, f"find {id_}")
        self._complete()

    def on_property_read(self, status: Status, property_id: str, value: PropertyValue | None) -> None:
        if status is Status.SUCCESS:
            typer.echo(f"{property_id} = {_format_value(value)}")
        self._note(status, f"read {property_id}")
        self._complete()

    def on_properties_read(self, results) -> None:
        for result in results:
            if result.status is Status.SUCCESS:
                typer.echo(f"{result.id} = {_format_value(result.value)}")
            self._note(result.status, f"read {result.id}")
        self._complete()

    def on_property_written(self, status: Status, property_id: str) -> None:
        if status is Status.SUCCESS:
            typer.echo(f"Wrote {property_id}")
        self._note(status, f"write {property_id}")
        self._complete()

    def on_property_subscribed(self, status: Status, property_id: str) -> None:
        if status is Status.SUCCESS:
            typer.echo(f"Subscribed to {property_id}")
        self._note(status, f"subscribe {property_id}")
        self._complete()

    def on_properties_subscribed(self, statuses) -> None:
        for result in statuses:
            if result.status is Status.SUCCESS:
                typer.echo(f"Subscribed to {result.id}")
            self._note(result.status, f"subscribe {result.id}")
        self._complete()

    def on_property_updated(self, property_id: str, value: PropertyValue | None) -> None:
        typer.echo(f"{property_id} = {_format_value(value)}")

    def on_datalog_properties_read(self, status: Status, properties: list[str]) -> None:
        for property_id in properties:
            typer.echo(property_id)
        self._note(status, "datalog read")
        self._complete()

    def on_datalog_read(self, status: Status, property_id: str, count: int, values: Any) -> None:
        if isinstance(values, str):
            for line in values.splitlines():
                typer.echo(line)
        else:
            for entry in values:
                typer.echo(f"{entry.timestamp.isoformat()},{_format_value(entry.value)}")
        self._note(status, f"datalog read {property_id}")
        self._complete()

    def on_device_message(self, message: DeviceMessage) -> None:
        typer.echo(_format_message(message))

    def on_messages_read(self, status: Status, count: int, messages: list[DeviceMessage]) -> None:
        for message in messages:
            typer.echo(_format_message(message))
        self._note(status, "messages read")
        self._complete()


async def _run_session(
    client: Client,
    settings: GatewayConfig,
    bluetooth: bool,
    request: Callable[[Client], None],
    *,
    expected: int,
    keep_open: bool,
) -> str | None:
    session = _Session(client, request, expected=expected, keep_open=keep_open)
    client.set_callbacks(session)
    _connect(client, settings, bluetooth)
    await session.done
    return session.error


def _bluetooth(ctx: typer.Context) -> bool:
    return ctx.obj is not None and ctx.obj.bluetooth


def _execute(
    ctx: typer.Context,
    request: Callable[[Client], None],
    *,
    expected: int = 1,
    keep_open: bool = False,
    websocket_only: str | None = None,
) -> None:
    options: _Options = ctx.obj or _Options()
    try:
        if websocket_only and options.bluetooth:
            raise OpenStuderError(f"{websocket_only} is not available over Bluetooth")
        settings = _settings(options)
        client = _build_client(settings, options.bluetooth)
        error = asyncio.run(
            _run_session(client, settings, options.bluetooth, request, expected=expected, keep_open=keep_open)
        )
    except KeyboardInterrupt:
        return
    except OpenStuderError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if error is not None:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config: Path | None = typer.Option(None, "--config", help="Path to the YAML configuration"),
    host: str | None = typer.Option(None, "--host", help="Gateway host or ws:// URL"),
    port: int | None = typer.Option(None, "--port", help="Gateway WebSocket port"),
    user: str | None = typer.Option(None, "--user", help="User name, guest access if omitted"),
    password: str | None = typer.Option(None, "--password", help="Password of the user"),
    timeout_ms: int | None = typer.Option(None, "--timeout-ms", help="Connect timeout in milliseconds"),
    bluetooth: bool = typer.Option(False, "--bluetooth", help="Connect over Bluetooth LE"),
    address: str | None = typer.Option(None, "--address", help="Bluetooth address of the gateway"),
) -> None:
    """Access OpenStuder gateways over WebSocket or Bluetooth LE."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.ERROR,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = _Options(
        config=config,
        host=host,
        port=port,
        user=user,
        password=password,
        timeout_ms=timeout_ms,
        bluetooth=bluetooth,
        address=address,
    )


@app.command("enumerate")
def enumerate_devices(ctx: typer.Context) -> None:
    """Rescan all device access drivers for devices."""
    _execute(ctx, lambda client: client.enumerate())


@app.command("describe")
def describe(
    ctx: typer.Context,
    target: str | None = typer.Argument(None, help="<access>[.<device>[.<property>]]"),
    flags: list[DescriptionFlags] = typer.Option([], "--flag", help="Description flag (WebSocket only)"),
) -> None:
    """Print the description of the gateway or one of its parts."""
    access_id, device_id, property_id = _split_id(target) if target else (None, None, None)

    def request(client: Client) -> None:
        if _bluetooth(ctx):
            client.describe(access_id, device_id, property_id)
        else:
            client.describe(access_id, device_id, property_id, flags)

    _execute(ctx, request)


@app.command("find")
def find(
    ctx: typer.Context,
    property_id: str = typer.Argument(..., help="Property ID, '*' allowed for access and device"),
    virtual: bool | None = typer.Option(None, "--virtual/--no-virtual", help="Include virtual devices"),
    functions: list[str] = typer.Option(
        [], "--function", help="inverter, charger, solar, transfer, battery or all"
    ),
) -> None:
    """List the properties matching a search pattern."""
    device_functions = decode_device_functions(",".join(functions)) if functions else None
    _execute(
        ctx,
        lambda client: client.find_properties(property_id, virtual, device_functions),
        websocket_only="find",
    )


@app.command("read")
def read(
    ctx: typer.Context,
    property_ids: list[str] = typer.Argument(..., help="Property IDs to read"),
) -> None:
    """Read the current value of one or more properties."""

    def request(client: Client) -> None:
        if not _bluetooth(ctx) and len(property_ids) > 1:
            client.read_properties(property_ids)
            return
        for property_id in property_ids:
            client.read_property(property_id)

    expected = len(property_ids) if _bluetooth(ctx) else 1
    _execute(ctx, request, expected=expected)


@app.command("write")
def write(
    ctx: typer.Context,
    property_id: str = typer.Argument(..., help="Property ID"),
    value: str | None = typer.Argument(None, help="Value, omit to trigger a signal property"),
    permanent: bool = typer.Option(False, "--permanent", help="Write to flash memory"),
) -> None:
    """Write a property value."""
    parsed = _parse_value(value) if value is not None else None
    flags = WriteFlags.PERMANENT if permanent else WriteFlags.NONE
    _execute(ctx, lambda client: client.write_property(property_id, parsed, flags))


@app.command("watch")
def watch(
    ctx: typer.Context,
    property_ids: list[str] = typer.Argument(..., help="Property IDs to subscribe to"),
) -> None:
    """Subscribe to properties and print updates and device messages until interrupted."""

    def request(client: Client) -> None:
        if not _bluetooth(ctx) and len(property_ids) > 1:
            client.subscribe_to_properties(property_ids)
            return
        for property_id in property_ids:
            client.subscribe_to_property(property_id)

    expected = len(property_ids) if _bluetooth(ctx) else 1
    _execute(ctx, request, expected=expected, keep_open=True)


@app.command("datalog")
def datalog(
    ctx: typer.Context,
    property_id: str | None = typer.Argument(None, help="Property ID, omit to list logged properties"),
    date_from: datetime | None = typer.Option(None, "--from", help="Start of the time window (UTC)"),
    date_to: datetime | None = typer.Option(None, "--to", help="End of the time window (UTC)"),
    limit: int | None = typer.Option(None, "--limit", help="Maximum number of entries"),
) -> None:
    """Read logged values of a property, or list the logged properties."""

    def request(client: Client) -> None:
        if property_id is None:
            client.read_datalog_properties(date_from, date_to)
        else:
            client.read_datalog(property_id, date_from, date_to, limit)

    _execute(ctx, request)


@app.command("messages")
def messages(
    ctx: typer.Context,
    date_from: datetime | None = typer.Option(None, "--from", help="Start of the time window (UTC)"),
    date_to: datetime | None = typer.Option(None, "--to", help="End of the time window (UTC)"),
    limit: int | None = typer.Option(None, "--limit", help="Maximum number of messages"),
) -> None:
    """Read stored device messages."""
    _execute(ctx, lambda client: client.read_messages(date_from, date_to, limit))


def run() -> None:
    app()


if __name__ == "__main__":
    run()
