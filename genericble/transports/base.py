"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from genericble.core.timers import TimerRegistry

PERIPHERAL_STATES = ("disconnected", "connecting", "connected", "disconnecting")


class CharacteristicHandle(Protocol):
    uuid: str
    name: str | None
    type: str | None
    service_uuid: str | None
    properties: tuple[str, ...]

    async def read(self) -> bytes:
        """Read the current characteristic value."""

    async def write(self, data: bytes, without_response: bool = False) -> None:
        """Write a value, optionally as a write command without response."""

    async def subscribe(self, callback: Callable[[bytes], None]) -> None:
        """Start notifications; `callback` receives every notified value."""

    async def unsubscribe(self) -> None:
        """Stop notifications."""


class PeripheralHandle(Protocol):
    identifier: str
    address: str | None
    uuid: str | None
    local_name: str | None
    rssi: int | None
    connectable: bool

    @property
    def state(self) -> str:
        """One of PERIPHERAL_STATES."""

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """Register the callback invoked when the link drops."""

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def discover_characteristics(self) -> list[CharacteristicHandle]:
        """Discover all services and characteristics."""


class DiscoveryListener(Protocol):
    timers: TimerRegistry

    def on_discover(self, peripheral: PeripheralHandle) -> None:
        ...

    def on_miss(self, identifier: str) -> None:
        ...

    def on_state_change(self, state: str) -> None:
        ...

    def on_error(self, error: Exception) -> None:
        ...


class Discovery(Protocol):
    async def start(self, listener: DiscoveryListener) -> None:
        """Begin scanning and report peripherals to `listener`."""

    async def stop(self) -> None:
        ...
