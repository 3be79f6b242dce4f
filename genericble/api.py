"""Client facade over a `BleContext`.

Callers start and stop discovery, register devices, and queue reads, writes
and subscriptions here. `read`, `write` and `watch` wait for the next
connect cycle of the device and return its outcome.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from genericble.core.config_loader import LoadedDevices, load_devices
from genericble.core.context import BleContext
from genericble.core.errors import (
    AdapterError,
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
    ConnectTimeoutError,
    DisconnectTimeoutError,
    DiscoveryTimeoutError,
    GenericBleError,
    MissingPeripheralError,
    NoMatchingCharacteristicError,
    NotConnectedError,
    OperationTimeoutError,
    PeripheralBusyError,
    QueueFullError,
    SubscriptionError,
    TransportError,
)
from genericble.core.model import (
    CharacteristicConfig,
    DeviceConfig,
    DeviceDetail,
    DeviceSummary,
    EventKind,
    SessionEvent,
    SessionState,
)
from genericble.core.session import PeripheralSession, UuidFilter
from genericble.core.settings import Settings
from genericble.transports.base import Discovery
from genericble.transports.ble_gatt import BleakDiscovery

__all__ = [
    "GenericBleError",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
    "TransportError",
    "AdapterError",
    "SubscriptionError",
    "OperationTimeoutError",
    "ConnectTimeoutError",
    "DiscoveryTimeoutError",
    "DisconnectTimeoutError",
    "NoMatchingCharacteristicError",
    "NotConnectedError",
    "QueueFullError",
    "MissingPeripheralError",
    "PeripheralBusyError",
    "CharacteristicConfig",
    "DeviceConfig",
    "DeviceDetail",
    "DeviceSummary",
    "EventKind",
    "SessionEvent",
    "SessionState",
    "Settings",
    "Client",
]

_FAILURE_EVENTS = frozenset({EventKind.ERROR, EventKind.TIMEOUT})


class Client:
    """Public client for interacting with genericble core capabilities.

    A `Client` wraps a `BleContext` (discovery, device registry, sessions and
    the operation scheduler). Devices without a configuration are registered
    on first use with an empty allow-list, muted notifications, and a
    characteristic catalog taken from an initial detail query.
    """

    def __init__(
        self,
        *,
        discovery: Discovery | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._context = BleContext(
            discovery=discovery if discovery is not None else BleakDiscovery(),
            settings=settings or Settings.from_env(),
        )

    @property
    def context(self) -> BleContext:
        return self._context

    async def __aenter__(self) -> Client:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        await self._context.start()

    async def stop(self) -> None:
        await self._context.stop()

    async def reset(self) -> None:
        await self._context.reset()

    def load_devices(self, paths: Iterable[Path] | None = None) -> LoadedDevices:
        loaded = load_devices(paths)
        for config in loaded.devices.values():
            self._context.register(config)
        return loaded

    def register(self, config: DeviceConfig) -> PeripheralSession:
        return self._context.register(config)

    def unregister(self, identifier: str) -> bool:
        return self._context.unregister(identifier)

    def add_listener(self, identifier: str, listener: Callable[[SessionEvent], None]) -> Callable[[], None]:
        return self._context.get_session(identifier).add_listener(listener)

    def list_devices(self) -> list[DeviceSummary]:
        return self._context.list_devices()

    async def scan(self, seconds: float) -> list[DeviceSummary]:
        await self.start()
        await asyncio.sleep(seconds)
        return self.list_devices()

    async def device_detail(self, identifier: str) -> DeviceDetail | None:
        return await self._context.device_detail(identifier)

    def enqueue_write(self, identifier: str, values: Mapping[str, Any]) -> bool:
        return self._context.enqueue_write(identifier, dict(values))

    def enqueue_read(self, identifier: str, uuids: UuidFilter = None) -> bool:
        return self._context.enqueue_read(identifier, uuids)

    def enqueue_subscribe(self, identifier: str, uuids: UuidFilter = None, period_ms: int = 0) -> bool:
        return self._context.enqueue_subscribe(identifier, uuids, period_ms)

    async def read(
        self,
        identifier: str,
        uuids: UuidFilter = None,
        *,
        timeout_s: float = 30.0,
    ) -> dict[str, bytes]:
        session = await self._session_for(identifier)
        results: list[dict[str, bytes]] = []

        def _collect(event: SessionEvent) -> None:
            if event.kind is EventKind.READ:
                results.append(event.data)

        await self._run_cycle(
            session,
            lambda: session.enqueue_read(uuids),
            f"No readable characteristic on {identifier} for {uuids!r}",
            timeout_s,
            _collect,
        )
        if not results:
            raise NotConnectedError(f"No values were read from {identifier}")
        return results[-1]

    async def write(
        self,
        identifier: str,
        values: Mapping[str, Any],
        *,
        timeout_s: float = 30.0,
    ) -> None:
        session = await self._session_for(identifier)
        await self._run_cycle(
            session,
            lambda: session.enqueue_write(values),
            f"No writable characteristic on {identifier} in {sorted(values)}",
            timeout_s,
        )

    async def watch(
        self,
        identifier: str,
        on_data: Callable[[str, bytes], None],
        uuids: UuidFilter = None,
        *,
        period_ms: int = 0,
        cycles: int | None = None,
        timeout_s: float = 60.0,
    ) -> None:
        """Subscribe repeatedly, passing each notification to `on_data`.

        Runs `cycles` connect/listen/disconnect cycles, or until cancelled
        when `cycles` is None.
        """
        session = await self._session_for(identifier)

        def _forward(event: SessionEvent) -> None:
            if event.kind is EventKind.DATA:
                on_data(event.uuid, event.data)

        remaining = cycles
        while remaining is None or remaining > 0:
            await self._run_cycle(
                session,
                lambda: session.enqueue_subscribe(uuids, period_ms),
                f"No notifiable characteristic on {identifier} for {uuids!r}",
                timeout_s,
                _forward,
            )
            if remaining is not None:
                remaining -= 1

    async def _session_for(self, identifier: str) -> PeripheralSession:
        try:
            session = self._context.get_session(identifier)
        except MissingPeripheralError:
            session = self._context.register(
                DeviceConfig(identifier=identifier, mute_notifications=True)
            )
        if not session.catalog:
            detail = await self._context.device_detail(identifier)
            if detail is None:
                raise MissingPeripheralError(f"{identifier} has not been discovered")
        return session

    async def _run_cycle(
        self,
        session: PeripheralSession,
        enqueue: Callable[[], bool],
        rejection: str,
        timeout_s: float,
        listener: Callable[[SessionEvent], None] | None = None,
    ) -> None:
        failures: list[BaseException] = []

        def _watch(event: SessionEvent) -> None:
            if event.kind in _FAILURE_EVENTS and event.error is not None:
                failures.append(event.error)
            if listener is not None:
                listener(event)

        remove = session.add_listener(_watch)
        try:
            if not enqueue():
                raise NoMatchingCharacteristicError(rejection)
            await asyncio.wait_for(self._context.scheduler.submit(session), timeout_s)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"{session.identifier}: no result within {timeout_s} seconds"
            ) from exc
        finally:
            remove()
        if failures:
            raise failures[0]
