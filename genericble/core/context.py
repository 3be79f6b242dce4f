"""Process-scoped context owning the registry, sessions, timers and scheduler."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from genericble.core.codec import normalize_identifier
from genericble.core.errors import AdapterError, MissingPeripheralError
from genericble.core.model import DeviceConfig, DeviceDetail, DeviceSummary, SessionState
from genericble.core.registry import DeviceRegistry, summarize
from genericble.core.scheduler import OperationScheduler
from genericble.core.session import PeripheralSession, UuidFilter
from genericble.core.settings import Settings
from genericble.core.timers import TimerRegistry
from genericble.transports.base import Discovery, PeripheralHandle

LOGGER = logging.getLogger(__name__)


class BleContext:
    """Everything one process needs to drive a set of configured peripherals.

    Acts as the discovery listener: advertisements refresh the device
    registry, registry evictions mark sessions missing, and adapter failures
    put every session into the error state and stop automatic reconnection
    until `reset()`.
    """

    def __init__(
        self,
        *,
        discovery: Discovery | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.discovery = discovery
        self.timers = TimerRegistry()
        self.sessions: dict[str, PeripheralSession] = {}
        self.adapter_state: str | None = None
        self.registry = DeviceRegistry(
            self.timers,
            ttl_s=self.settings.registry_ttl_s,
            check_period_s=self.settings.registry_check_period_s,
            on_evict=self._on_evict,
            on_found=self._on_found,
            clock=clock,
        )
        self.scheduler = OperationScheduler(
            self.registry,
            self.timers,
            sessions=lambda: list(self.sessions.values()),
            settings=self.settings,
            on_adapter_failure=self._on_adapter_failure,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.registry.start()
        self.scheduler.start()
        if self.discovery is not None:
            LOGGER.info("Starting BLE discovery")
            await self.discovery.start(self)

    async def stop(self) -> None:
        self._started = False
        if self.discovery is not None:
            LOGGER.info("Stopping BLE discovery")
            await self.discovery.stop()
        await self.scheduler.stop()
        self.registry.stop()
        self.timers.cancel_all()

    async def reset(self) -> None:
        """Cancel every timer, forget all peripherals and restart from a clean slate."""
        LOGGER.info("Resetting BLE context")
        await self.stop()
        self.registry.clear()
        for session in self.sessions.values():
            session.reset()
        self.scheduler.resume()
        await self.start()

    # Session registration

    def register(self, config: DeviceConfig) -> PeripheralSession:
        identifier = normalize_identifier(config.identifier)
        if identifier in self.sessions:
            self.unregister(identifier)
        session = PeripheralSession(config, timers=self.timers, settings=self.settings)
        self.sessions[identifier] = session
        LOGGER.debug("Registered %s", identifier)
        return session

    def unregister(self, identifier: str) -> bool:
        session = self.sessions.pop(normalize_identifier(identifier), None)
        if session is None:
            return False
        self.scheduler.cancel(session)
        session.close()
        LOGGER.debug("Unregistered %s", session.identifier)
        return True

    def get_session(self, identifier: str) -> PeripheralSession:
        session = self.sessions.get(normalize_identifier(identifier))
        if session is None:
            raise MissingPeripheralError(f"{identifier} is not a configured device")
        return session

    # Consumer requests

    def enqueue_write(self, identifier: str, values: dict[str, object]) -> bool:
        return self._accepted(self.get_session(identifier).enqueue_write(values))

    def enqueue_read(self, identifier: str, uuids: UuidFilter = None) -> bool:
        return self._accepted(self.get_session(identifier).enqueue_read(uuids))

    def enqueue_subscribe(self, identifier: str, uuids: UuidFilter = None, period_ms: int = 0) -> bool:
        return self._accepted(self.get_session(identifier).enqueue_subscribe(uuids, period_ms))

    def _accepted(self, accepted: bool) -> bool:
        if accepted:
            self.scheduler.wake()
        return accepted

    # Administrative queries

    def list_devices(self) -> list[DeviceSummary]:
        return [summarize(p) for p in self.registry.peripherals()]

    async def device_detail(self, identifier: str) -> DeviceDetail | None:
        identifier = normalize_identifier(identifier)
        if self.registry.lookup(identifier) is None:
            return None
        session = self.sessions.get(identifier)
        transient = session is None
        if session is None:
            session = PeripheralSession(
                DeviceConfig(identifier=identifier, mute_notifications=True),
                timers=self.timers,
                settings=self.settings,
            )
        try:
            return await self.scheduler.submit(session, force_connect=True)
        finally:
            if transient:
                session.close()

    # Discovery listener

    def on_discover(self, peripheral: PeripheralHandle) -> None:
        self.registry.on_discovered(peripheral)

    def on_miss(self, identifier: str) -> None:
        self.registry.on_missed(identifier)

    def on_state_change(self, state: str) -> None:
        LOGGER.info("Bluetooth adapter state: %s", state)
        self.adapter_state = state
        if state == "poweredOn":
            self.scheduler.unpause()
        else:
            self.scheduler.pause()

    def on_error(self, error: Exception) -> None:
        LOGGER.error("BLE discovery error: %s", error)
        if isinstance(error, AdapterError):
            self.scheduler.halt(error)
            self._on_adapter_failure(error)

    def _on_evict(self, identifier: str) -> None:
        session = self.sessions.get(identifier)
        if session is not None:
            session.mark_missing()

    def _on_found(self, identifier: str) -> None:
        session = self.sessions.get(identifier)
        if session is not None:
            session.mark_found()

    def _on_adapter_failure(self, error: AdapterError) -> None:
        for session in self.sessions.values():
            if session.state is not SessionState.ERROR:
                session.fail(error)
