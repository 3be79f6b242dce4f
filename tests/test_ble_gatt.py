from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakDBusError, BleakError

from genericble.core.errors import AdapterError, TransportError
from genericble.core.timers import TimerRegistry
from genericble.transports.ble_gatt import (
    BleakCharacteristic,
    BleakDiscovery,
    BleakPeripheral,
    peripheral_identifier,
    translate_error,
)


class FakeBleakClient:
    def __init__(self, device, disconnected_callback=None) -> None:
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.connect_error: Exception | None = None
        self.written: list[tuple[bytes, bool]] = []
        self.notifying: dict[str, object] = {}
        self.services = [
            SimpleNamespace(
                uuid="0000180f-0000-1000-8000-00805f9b34fb",
                characteristics=[_gatt_char("00002a19-0000-1000-8000-00805f9b34fb", ["read", "notify"])],
            )
        ]

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self) -> None:
        return None

    async def read_gatt_char(self, characteristic) -> bytearray:
        return bytearray(b"\x5a")

    async def write_gatt_char(self, characteristic, data, response=True) -> None:
        if characteristic.uuid == "broken":
            raise BleakError("Write failed")
        self.written.append((bytes(data), response))

    async def start_notify(self, characteristic, handler) -> None:
        self.notifying[characteristic.uuid] = handler

    async def stop_notify(self, characteristic) -> None:
        self.notifying.pop(characteristic.uuid, None)


def _gatt_char(uuid: str, properties: list[str], description: str = "") -> SimpleNamespace:
    return SimpleNamespace(uuid=uuid, properties=properties, description=description)


def _device(address: str, name: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(address=address, name=name)


def test_translate_error_detects_adapter_failures() -> None:
    assert isinstance(translate_error(BleakError("No Bluetooth adapters found.")), AdapterError)
    assert isinstance(
        translate_error(BleakDBusError("org.bluez.Error.NotReady", ["Resource Not Ready"])),
        AdapterError,
    )
    error = translate_error(BleakError("Device with address X was not found"))
    assert type(error) is TransportError


def test_peripheral_identifier_prefers_address() -> None:
    assert peripheral_identifier("AA:BB:CC:DD:EE:FF", "1234") == "aa:bb:cc:dd:ee:ff"
    assert peripheral_identifier("unknown", "ABCD-01") == "abcd-01"
    assert peripheral_identifier(None, None) is None


def test_characteristic_maps_properties_and_io() -> None:
    async def scenario() -> None:
        client = FakeBleakClient(None)
        gatt = _gatt_char("2a06", ["write-without-response", "read", "broadcast"], "Alert Level")
        characteristic = BleakCharacteristic(client, gatt, "1802")

        assert characteristic.properties == ("writeWithoutResponse", "read")
        assert characteristic.name == "Alert Level"
        assert await characteristic.read() == b"\x5a"
        await characteristic.write(b"\x01", without_response=True)
        assert client.written == [(b"\x01", False)]

        received: list[bytes] = []
        await characteristic.subscribe(received.append)
        client.notifying["2a06"](None, bytearray(b"\x02"))
        assert received == [b"\x02"]
        await characteristic.unsubscribe()
        assert client.notifying == {}

    asyncio.run(scenario())


def test_characteristic_write_error_is_translated() -> None:
    async def scenario() -> None:
        characteristic = BleakCharacteristic(FakeBleakClient(None), _gatt_char("broken", ["write"]))
        with pytest.raises(TransportError, match="Write failed"):
            await characteristic.write(b"\x00")

    asyncio.run(scenario())


def test_peripheral_lifecycle() -> None:
    async def scenario() -> None:
        clients: list[FakeBleakClient] = []

        def factory(device, disconnected_callback=None) -> FakeBleakClient:
            clients.append(FakeBleakClient(device, disconnected_callback))
            return clients[-1]

        advertisement = SimpleNamespace(rssi=-48, local_name="Tag")
        peripheral = BleakPeripheral(_device("AA:BB:CC:DD:EE:FF"), advertisement, client_factory=factory)
        assert peripheral.identifier == "aa:bb:cc:dd:ee:ff"
        assert peripheral.rssi == -48
        assert peripheral.local_name == "Tag"

        drops: list[str] = []
        peripheral.on_disconnect(lambda: drops.append("drop"))
        await peripheral.connect()
        assert peripheral.state == "connected"

        [battery] = await peripheral.discover_characteristics()
        assert battery.service_uuid == "0000180f-0000-1000-8000-00805f9b34fb"
        assert battery.properties == ("read", "notify")

        clients[-1].disconnected_callback(clients[-1])
        assert peripheral.state == "disconnected"
        assert drops == ["drop"]

    asyncio.run(scenario())


def test_peripheral_without_mac_uses_uuid() -> None:
    peripheral = BleakPeripheral(_device("2B5D6A0E-1F11-4E5A-9C2D-0F4E8C1A7B31", "Scale"))
    assert peripheral.address is None
    assert peripheral.uuid == "2B5D6A0E-1F11-4E5A-9C2D-0F4E8C1A7B31"
    assert peripheral.identifier == "2b5d6a0e-1f11-4e5a-9c2d-0f4e8c1a7b31"


def test_peripheral_connect_failure_is_translated() -> None:
    async def scenario() -> None:
        def factory(device, disconnected_callback=None) -> FakeBleakClient:
            client = FakeBleakClient(device, disconnected_callback)
            client.connect_error = BleakError("org.bluez.Error.NotPermitted")
            return client

        peripheral = BleakPeripheral(_device("AA:BB:CC:DD:EE:FF"), client_factory=factory)
        with pytest.raises(AdapterError):
            await peripheral.connect()
        assert peripheral.state == "disconnected"

    asyncio.run(scenario())


class RecordingListener:
    def __init__(self) -> None:
        self.timers = TimerRegistry()
        self.discovered: list[str] = []
        self.missed: list[str] = []
        self.states: list[str] = []
        self.errors: list[Exception] = []

    def on_discover(self, peripheral) -> None:
        self.discovered.append(peripheral.identifier)

    def on_miss(self, identifier: str) -> None:
        self.missed.append(identifier)

    def on_state_change(self, state: str) -> None:
        self.states.append(state)

    def on_error(self, error: Exception) -> None:
        self.errors.append(error)


class FakeScanner:
    def __init__(self, detection_callback, fail: bool = False) -> None:
        self.detection_callback = detection_callback
        self.fail = fail
        self.stopped = False

    async def start(self) -> None:
        if self.fail:
            raise BleakError("No Bluetooth adapters found.")

    async def stop(self) -> None:
        self.stopped = True


def test_discovery_reports_detections_and_misses() -> None:
    async def scenario() -> None:
        scanners: list[FakeScanner] = []

        def factory(detection_callback) -> FakeScanner:
            scanners.append(FakeScanner(detection_callback))
            return scanners[-1]

        discovery = BleakDiscovery(miss_after_s=30, sweep_interval_s=60, scanner_factory=factory)
        listener = RecordingListener()
        await discovery.start(listener)
        assert listener.states == ["poweredOn"]

        advertisement = SimpleNamespace(rssi=-70, local_name=None)
        scanners[0].detection_callback(_device("AA:BB:CC:DD:EE:FF"), advertisement)
        scanners[0].detection_callback(_device("AA:BB:CC:DD:EE:FF"), advertisement)
        assert listener.discovered == ["aa:bb:cc:dd:ee:ff", "aa:bb:cc:dd:ee:ff"]

        assert discovery.sweep(0) == []
        assert discovery.sweep(float("inf")) == ["aa:bb:cc:dd:ee:ff"]
        assert listener.missed == ["aa:bb:cc:dd:ee:ff"]

        await discovery.stop()
        assert scanners[0].stopped

    asyncio.run(scenario())


def test_discovery_start_failure_reports_adapter_error() -> None:
    async def scenario() -> None:
        discovery = BleakDiscovery(scanner_factory=lambda detection_callback: FakeScanner(detection_callback, fail=True))
        listener = RecordingListener()
        await discovery.start(listener)

        assert listener.states == ["poweredOff"]
        assert len(listener.errors) == 1
        assert isinstance(listener.errors[0], AdapterError)
        await discovery.stop()

    asyncio.run(scenario())


def test_discovery_sweeps_on_the_listener_timers() -> None:
    async def scenario() -> None:
        scanners: list[FakeScanner] = []

        def factory(detection_callback) -> FakeScanner:
            scanners.append(FakeScanner(detection_callback))
            return scanners[-1]

        discovery = BleakDiscovery(miss_after_s=0, sweep_interval_s=0.01, scanner_factory=factory)
        listener = RecordingListener()
        await discovery.start(listener)
        assert len(listener.timers) == 1

        scanners[0].detection_callback(_device("AA:BB:CC:DD:EE:FF"), SimpleNamespace(rssi=-70, local_name=None))
        await asyncio.sleep(0.05)
        assert listener.missed == ["aa:bb:cc:dd:ee:ff"]
        assert len(listener.timers) == 1

        listener.timers.cancel_all()
        assert len(listener.timers) == 0
        await discovery.stop()
        assert scanners[0].stopped

    asyncio.run(scenario())


def test_discovery_stop_cancels_sweep_timer() -> None:
    async def scenario() -> None:
        discovery = BleakDiscovery(sweep_interval_s=60, scanner_factory=FakeScanner)
        listener = RecordingListener()
        await discovery.start(listener)
        assert len(listener.timers) == 1

        await discovery.stop()
        assert len(listener.timers) == 0

    asyncio.run(scenario())
