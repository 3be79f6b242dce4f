"""BLE GATT transport implementation backed by bleak."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakDBusError, BleakError

from genericble.core.errors import AdapterError, TransportError
from genericble.transports.base import CharacteristicHandle, DiscoveryListener

LOGGER = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?::[0-9A-F]{2}){5}$", re.IGNORECASE)
_ADAPTER_MARKERS = (
    "notpermitted",
    "not permitted",
    "permission",
    "notready",
    "not ready",
    "no bluetooth adapters",
    "adapter not found",
    "turned off",
    "powered off",
)
_PROPERTY_NAMES = {
    "read": "read",
    "write": "write",
    "write-without-response": "writeWithoutResponse",
    "notify": "notify",
    "indicate": "indicate",
}


def translate_error(exc: BaseException) -> TransportError:
    """Map a bleak failure onto the transport error tree."""
    dbus_name = exc.dbus_error if isinstance(exc, BleakDBusError) else ""
    haystack = f"{dbus_name} {exc}".lower()
    if any(marker in haystack for marker in _ADAPTER_MARKERS):
        return AdapterError(f"Bluetooth adapter unavailable: {exc}")
    return TransportError(f"BLE transport error: {exc}")


def peripheral_identifier(address: str | None, uuid: str | None) -> str | None:
    if not address or address == "unknown":
        return uuid.lower() if uuid else None
    return address.lower()


class BleakCharacteristic:
    def __init__(
        self,
        client: BleakClient,
        characteristic: BleakGATTCharacteristic,
        service_uuid: str | None = None,
    ) -> None:
        self._client = client
        self._characteristic = characteristic
        self.uuid = characteristic.uuid
        self.name = characteristic.description or None
        self.type = None
        self.service_uuid = service_uuid
        self.properties = tuple(
            _PROPERTY_NAMES[p] for p in characteristic.properties if p in _PROPERTY_NAMES
        )

    async def read(self) -> bytes:
        try:
            return bytes(await self._client.read_gatt_char(self._characteristic))
        except BleakError as exc:
            raise translate_error(exc) from exc

    async def write(self, data: bytes, without_response: bool = False) -> None:
        try:
            await self._client.write_gatt_char(
                self._characteristic,
                data,
                response=not without_response,
            )
        except BleakError as exc:
            raise translate_error(exc) from exc

    async def subscribe(self, callback: Callable[[bytes], None]) -> None:
        def _notify_handler(_: Any, data: bytearray) -> None:
            callback(bytes(data))

        try:
            await self._client.start_notify(self._characteristic, _notify_handler)
        except BleakError as exc:
            raise translate_error(exc) from exc

    async def unsubscribe(self) -> None:
        try:
            await self._client.stop_notify(self._characteristic)
        except BleakError as exc:
            raise translate_error(exc) from exc


class BleakPeripheral:
    """Live peripheral handle wrapping a bleak device and client."""

    def __init__(
        self,
        device: BLEDevice,
        advertisement: AdvertisementData | None = None,
        *,
        client_factory: Callable[..., BleakClient] = BleakClient,
    ) -> None:
        if _MAC_RE.match(device.address):
            self.address: str | None = device.address
            self.uuid: str | None = None
        else:
            # CoreBluetooth hides MAC addresses behind a per-host UUID.
            self.address = None
            self.uuid = device.address
        self.identifier = peripheral_identifier(self.address, self.uuid) or device.address
        self.local_name: str | None = device.name
        self.rssi: int | None = None
        self.connectable = True
        self._device = device
        self._client_factory = client_factory
        self._client: BleakClient | None = None
        self._state = "disconnected"
        self._disconnect_callback: Callable[[], None] | None = None
        self.update(device, advertisement)

    @property
    def state(self) -> str:
        return self._state

    def update(self, device: BLEDevice, advertisement: AdvertisementData | None) -> None:
        self._device = device
        if advertisement is not None:
            self.rssi = advertisement.rssi
            self.local_name = advertisement.local_name or device.name or self.local_name

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callback = callback

    async def connect(self) -> None:
        self._client = self._client_factory(
            self._device,
            disconnected_callback=self._handle_disconnect,
        )
        self._state = "connecting"
        try:
            await self._client.connect()
        except BleakError as exc:
            self._state = "disconnected"
            raise translate_error(exc) from exc
        except BaseException:
            self._state = "disconnected"
            raise
        self._state = "connected"

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            self._state = "disconnected"
            return
        self._state = "disconnecting"
        try:
            await client.disconnect()
        except BleakError as exc:
            raise translate_error(exc) from exc
        finally:
            self._state = "disconnected"

    async def discover_characteristics(self) -> list[CharacteristicHandle]:
        if self._client is None:
            raise TransportError(f"{self.identifier} is not connected")
        try:
            services = self._client.services
        except BleakError as exc:
            raise translate_error(exc) from exc
        return [
            BleakCharacteristic(self._client, characteristic, service.uuid)
            for service in services
            for characteristic in service.characteristics
        ]

    def _handle_disconnect(self, _: BleakClient) -> None:
        self._state = "disconnected"
        if self._disconnect_callback is not None:
            self._disconnect_callback()


class BleakDiscovery:
    """Continuous bleak scan reporting discoveries and misses to a listener.

    bleak has no "device gone" signal, so a peripheral that has not
    advertised for `miss_after_s` while disconnected is reported as missed.
    """

    def __init__(
        self,
        *,
        miss_after_s: float = 30.0,
        sweep_interval_s: float = 5.0,
        scanner_factory: Callable[..., BleakScanner] = BleakScanner,
    ) -> None:
        self.miss_after_s = miss_after_s
        self.sweep_interval_s = sweep_interval_s
        self._scanner_factory = scanner_factory
        self._scanner: BleakScanner | None = None
        self._listener: DiscoveryListener | None = None
        self._sweep_handle: asyncio.TimerHandle | None = None
        self._peripherals: dict[str, BleakPeripheral] = {}
        self._last_seen: dict[str, float] = {}

    async def start(self, listener: DiscoveryListener) -> None:
        self._listener = listener
        self._scanner = self._scanner_factory(detection_callback=self._on_detection)
        try:
            await self._scanner.start()
        except BleakError as exc:
            self._scanner = None
            listener.on_state_change("poweredOff")
            listener.on_error(translate_error(exc))
            return
        listener.on_state_change("poweredOn")
        self._arm_sweep()

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.timers.cancel(self._sweep_handle)
        self._sweep_handle = None
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            try:
                await scanner.stop()
            except BleakError as exc:
                LOGGER.debug("Stopping scanner failed: %s", exc)
        self._peripherals.clear()
        self._last_seen.clear()

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        peripheral = self._peripherals.get(device.address.lower())
        if peripheral is None:
            peripheral = BleakPeripheral(device, advertisement)
            self._peripherals[device.address.lower()] = peripheral
        else:
            peripheral.update(device, advertisement)
        self._last_seen[device.address.lower()] = time.monotonic()
        if self._listener is not None:
            self._listener.on_discover(peripheral)

    def _arm_sweep(self) -> None:
        if self._listener is None or self._scanner is None:
            return
        self._sweep_handle = self._listener.timers.call_later(self.sweep_interval_s, self._tick)

    def _tick(self) -> None:
        self._sweep_handle = None
        self.sweep(time.monotonic())
        self._arm_sweep()

    def sweep(self, now: float) -> list[str]:
        missed: list[str] = []
        for key, seen in list(self._last_seen.items()):
            peripheral = self._peripherals[key]
            if now - seen < self.miss_after_s or peripheral.state != "disconnected":
                continue
            del self._last_seen[key]
            del self._peripherals[key]
            missed.append(peripheral.identifier)
            if self._listener is not None:
                self._listener.on_miss(peripheral.identifier)
        return missed
