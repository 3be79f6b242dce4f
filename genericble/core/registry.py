"""Time-bounded cache of peripherals currently visible to the transport."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from genericble.core.codec import normalize_identifier
from genericble.core.model import DeviceSummary
from genericble.core.timers import TimerRegistry
from genericble.transports.base import PeripheralHandle

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_S = 10 * 60
DEFAULT_CHECK_PERIOD_S = 60


def summarize(peripheral: PeripheralHandle) -> DeviceSummary:
    address = peripheral.address
    return DeviceSummary(
        identifier=normalize_identifier(peripheral.identifier),
        local_name=peripheral.local_name,
        address=None if not address or address == "unknown" else address,
        uuid=peripheral.uuid,
        rssi=peripheral.rssi,
    )


class DeviceRegistry:
    """Maps identifiers to live peripheral handles; entries expire after inactivity.

    `on_evict` is called with the identifier of every entry that leaves the
    cache (expiry, miss, or a non-connectable advertisement); `on_found` is
    called whenever an entry is recorded or refreshed.
    """

    def __init__(
        self,
        timers: TimerRegistry,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        check_period_s: float = DEFAULT_CHECK_PERIOD_S,
        on_evict: Callable[[str], None] | None = None,
        on_found: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timers = timers
        self.ttl_s = ttl_s
        self.check_period_s = check_period_s
        self.on_evict = on_evict
        self.on_found = on_found
        self._clock = clock
        self._entries: dict[str, tuple[PeripheralHandle, float]] = {}
        self._sweep_handle: asyncio.TimerHandle | None = None

    def start(self) -> None:
        if self._sweep_handle is None and self.check_period_s > 0:
            self._sweep_handle = self._timers.call_later(self.check_period_s, self._sweep)

    def stop(self) -> None:
        self._timers.cancel(self._sweep_handle)
        self._sweep_handle = None

    def on_discovered(self, peripheral: PeripheralHandle) -> None:
        if not peripheral.identifier:
            return
        identifier = normalize_identifier(peripheral.identifier)
        if not peripheral.connectable:
            self.evict(identifier)
            return
        self._entries[identifier] = (peripheral, self._clock() + self.ttl_s)
        if self.on_found is not None:
            self.on_found(identifier)

    def on_missed(self, identifier: str) -> None:
        self.evict(normalize_identifier(identifier))

    def evict(self, identifier: str) -> bool:
        identifier = normalize_identifier(identifier)
        if self._entries.pop(identifier, None) is None:
            return False
        LOGGER.debug("Evicted %s from device registry", identifier)
        if self.on_evict is not None:
            self.on_evict(identifier)
        return True

    def lookup(self, identifier: str) -> PeripheralHandle | None:
        identifier = normalize_identifier(identifier)
        entry = self._entries.get(identifier)
        if entry is None:
            return None
        peripheral, expires_at = entry
        if expires_at <= self._clock():
            self.evict(identifier)
            return None
        return peripheral

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.lookup(identifier) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def peripherals(self) -> list[PeripheralHandle]:
        now = self._clock()
        return [p for p, expires_at in self._entries.values() if expires_at > now]

    def clear(self) -> None:
        self.stop()
        self._entries.clear()

    def _sweep(self) -> None:
        self._sweep_handle = None
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for identifier in expired:
            self.evict(identifier)
        self.start()
