from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from genericble.api import (
    Client,
    MissingPeripheralError,
    NoMatchingCharacteristicError,
    OperationTimeoutError,
    SessionEvent,
    TransportError,
)
from genericble.core.model import EventKind
from tests.fake_transport import FakeCharacteristic, FakeDiscovery, FakePeripheral, fast_settings, make_config


def _client() -> Client:
    return Client(discovery=FakeDiscovery(), settings=fast_settings())


def _sensor() -> FakePeripheral:
    return FakePeripheral(
        "C0:FF:EE:00:00:01",
        [
            FakeCharacteristic("2a00", ("read",), value=b"Sensor", service_uuid="1800"),
            FakeCharacteristic("2a6e", ("read", "notify"), value=b"\x2c\x01", service_uuid="181a"),
            FakeCharacteristic("ffe1", ("write",), service_uuid="ffe0"),
        ],
    )


def test_read_configured_device() -> None:
    async def scenario() -> None:
        async with _client() as client:
            client.register(make_config("c0:ff:ee:00:00:01", ("2a6e", ("read", "notify"))))
            client.context.on_discover(_sensor())

            assert await client.read("C0:FF:EE:00:00:01") == {"2a6e": b"\x2c\x01"}
            assert [d.identifier for d in client.list_devices()] == ["c0:ff:ee:00:00:01"]

    asyncio.run(scenario())


def test_read_unconfigured_device_learns_catalog_first() -> None:
    async def scenario() -> None:
        async with _client() as client:
            peripheral = _sensor()
            client.context.on_discover(peripheral)

            values = await client.read("c0:ff:ee:00:00:01", "2a00,2a6e")

            assert values == {"2a00": b"Sensor", "2a6e": b"\x2c\x01"}
            assert peripheral.connect_calls == 2
            session = client.context.get_session("c0:ff:ee:00:00:01")
            assert session.mute_notifications
            assert set(session.catalog) == {"2a00", "2a6e", "ffe1"}

    asyncio.run(scenario())


def test_write_and_rejection() -> None:
    async def scenario() -> None:
        async with _client() as client:
            peripheral = _sensor()
            client.register(make_config("c0:ff:ee:00:00:01", ("ffe1", ("write",)), ("2a6e", ("read",))))
            client.context.on_discover(peripheral)

            await client.write("c0:ff:ee:00:00:01", {"ffe1": "0x0a"})
            assert peripheral.characteristics[2].writes == [(b"\x0a", False)]

            with pytest.raises(NoMatchingCharacteristicError):
                await client.write("c0:ff:ee:00:00:01", {"2a6e": 1})

    asyncio.run(scenario())


def test_write_failure_is_raised_to_caller() -> None:
    async def scenario() -> None:
        async with _client() as client:
            peripheral = _sensor()
            peripheral.characteristics[2].write_error = TransportError("GATT write rejected")
            client.register(make_config("c0:ff:ee:00:00:01", ("ffe1", ("write",))))
            client.context.on_discover(peripheral)

            with pytest.raises(TransportError, match="rejected"):
                await client.write("c0:ff:ee:00:00:01", {"ffe1": 1})
            assert peripheral.state == "disconnected"

    asyncio.run(scenario())


def test_read_of_undiscovered_device() -> None:
    async def scenario() -> None:
        async with _client() as client:
            with pytest.raises(MissingPeripheralError):
                await client.read("de:ad:be:ef:00:00")

    asyncio.run(scenario())


def test_round_trip_timeout() -> None:
    async def scenario() -> None:
        async with Client(discovery=FakeDiscovery(), settings=fast_settings(connection_timeout_ms=5000)) as client:
            peripheral = _sensor()
            peripheral.hang_connect = True
            client.register(make_config("c0:ff:ee:00:00:01", ("2a6e", ("read",))))
            client.context.on_discover(peripheral)

            with pytest.raises(OperationTimeoutError):
                await client.read("c0:ff:ee:00:00:01", timeout_s=0.05)

    asyncio.run(scenario())


def test_watch_forwards_notifications() -> None:
    async def scenario() -> None:
        async with _client() as client:
            peripheral = _sensor()
            temperature = peripheral.characteristics[1]
            client.register(make_config("c0:ff:ee:00:00:01", ("2a6e", ("read", "notify"))))
            client.context.on_discover(peripheral)
            loop = asyncio.get_running_loop()

            def _on_discovering(event: SessionEvent) -> None:
                if event.kind is EventKind.DISCOVERING:
                    loop.call_later(0.01, temperature.notify, b"\x2d\x01")

            client.add_listener("c0:ff:ee:00:00:01", _on_discovering)
            received: list[tuple[str, bytes]] = []

            await client.watch(
                "c0:ff:ee:00:00:01",
                lambda uuid, data: received.append((uuid, data)),
                period_ms=50,
                cycles=2,
            )

            assert received == [("2a6e", b"\x2d\x01"), ("2a6e", b"\x2d\x01")]
            assert peripheral.connect_calls == 2

    asyncio.run(scenario())


def test_load_devices_registers_sessions(tmp_path: Path) -> None:
    path = tmp_path / "sensor.yaml"
    path.write_text(
        "identifier: C0:FF:EE:00:00:01\ncharacteristics:\n  - uuid: 2a6e\n    properties: [read]\n",
        encoding="utf-8",
    )
    client = _client()

    loaded = client.load_devices([path])

    assert list(loaded.devices) == ["c0:ff:ee:00:00:01"]
    assert client.context.get_session("c0:ff:ee:00:00:01").catalog["2a6e"].capabilities.readable
    assert client.unregister("c0:ff:ee:00:00:01")
