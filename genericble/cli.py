"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer

from genericble.api import Client
from genericble.core.errors import GenericBleError, ValueEncodingError
from genericble.core.model import SessionEvent

app = typer.Typer(help="Generic BLE peripheral access with a serialized connection scheduler")

T = TypeVar("T")


def _build_client() -> Client:
    return Client()


def _run(work: Callable[[Client], Awaitable[T]]) -> T:
    async def _main() -> T:
        client = _build_client()
        async with client:
            return await work(client)

    try:
        return asyncio.run(_main())
    except GenericBleError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None


def _parse_assignments(assignments: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in assignments:
        uuid, sep, value = item.partition("=")
        if not sep or not uuid.strip() or not value.strip():
            raise ValueEncodingError(f"Expected UUID=VALUE, got '{item}'")
        values[uuid.strip()] = value.strip()
    return values


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("devices")
def list_devices(
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
) -> None:
    """List connectable BLE peripherals seen during a scan."""
    devices = _run(lambda client: client.scan(scan_seconds))
    if not devices:
        typer.echo("No BLE devices found")
        return
    for device in devices:
        rssi = "?" if device.rssi is None else str(device.rssi)
        typer.echo(f"{device.identifier} {device.local_name or '<unnamed>'} rssi={rssi}")


@app.command("detail")
def show_detail(
    identifier: str,
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
) -> None:
    """Connect to a peripheral and list its services and characteristics."""

    async def _work(client: Client):
        await client.scan(scan_seconds)
        return await client.device_detail(identifier)

    detail = _run(_work)
    if detail is None:
        typer.echo(f"Error: device '{identifier}' not found", err=True)
        raise typer.Exit(code=1)
    summary = detail.summary
    typer.echo(f"{summary.identifier} {summary.local_name or '<unnamed>'}")
    for service, characteristics in detail.services.items():
        typer.echo(f"  service {service or '<unknown>'}")
        for item in characteristics:
            props = ",".join(item.properties)
            typer.echo(f"    {item.uuid} {item.name or ''} [{props}]")


@app.command("read")
def read_values(
    identifier: str,
    uuids: str = typer.Option("", "--uuids", help="Comma-separated characteristic UUIDs"),
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
) -> None:
    """Read characteristic values (all readable ones by default)."""

    async def _work(client: Client):
        await client.scan(scan_seconds)
        return await client.read(identifier, uuids)

    values = _run(_work)
    for uuid, data in sorted(values.items()):
        typer.echo(f"{uuid}={data.hex()}")


@app.command("write")
def write_values(
    identifier: str,
    assignments: list[str] = typer.Argument(..., help="UUID=VALUE pairs; VALUE is hex or 0x-hex"),
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
) -> None:
    """Write hex values to writable characteristics."""

    async def _work(client: Client):
        values = _parse_assignments(assignments)
        await client.scan(scan_seconds)
        await client.write(identifier, values)
        return values

    values = _run(_work)
    typer.echo(f"Wrote {', '.join(sorted(values))} to {identifier}")


@app.command("watch")
def watch_notifications(
    identifier: str,
    uuids: str = typer.Option("", "--uuids", help="Comma-separated characteristic UUIDs"),
    period_ms: int = typer.Option(0, "--period-ms", help="Unsubscribe after this long each cycle"),
    cycles: int | None = typer.Option(None, "--cycles", help="Stop after this many cycles"),
    scan_seconds: float = typer.Option(5.0, "--scan-seconds", help="How long to scan"),
) -> None:
    """Print notifications until interrupted."""

    def _print(uuid: str, data: bytes) -> None:
        typer.echo(f"{uuid}={data.hex()}")

    async def _work(client: Client) -> None:
        await client.scan(scan_seconds)
        await client.watch(identifier, _print, uuids, period_ms=period_ms, cycles=cycles)

    _run(_work)


@app.command("run")
def run_configured(
    config: list[Path] | None = typer.Option(
        None, "--config", help="Device YAML file (repeatable); defaults to the user device directory"
    ),
) -> None:
    """Drive all configured devices and print lifecycle events until interrupted."""

    def _print(event: SessionEvent) -> None:
        line = f"{event.identifier} {event.kind.value} state={event.state.value}"
        if event.phase:
            line += f" phase={event.phase}"
        if event.uuid:
            line += f" uuid={event.uuid}"
        if isinstance(event.data, bytes):
            line += f" data={event.data.hex()}"
        elif isinstance(event.data, dict):
            line += " " + " ".join(f"{k}={v.hex()}" for k, v in sorted(event.data.items()))
        if event.error is not None:
            line += f" error={event.error}"
        typer.echo(line)

    async def _work(client: Client) -> None:
        loaded = client.load_devices(config or None)
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        if not loaded.devices:
            typer.echo("No devices configured")
            return
        for identifier in loaded.devices:
            client.add_listener(identifier, _print)
        await asyncio.Event().wait()

    _run(_work)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
