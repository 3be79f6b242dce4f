"""Peripheral session: one configured device's connection lifecycle and I/O."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable, Mapping
from functools import partial
from typing import Any

from genericble.core.codec import normalize_identifier, normalize_uuid, parse_uuid_filter, to_bytes
from genericble.core.errors import (
    AdapterError,
    ConnectTimeoutError,
    DisconnectTimeoutError,
    DiscoveryTimeoutError,
    GenericBleError,
    InvalidTransitionError,
    NoMatchingCharacteristicError,
    NotConnectedError,
    OperationTimeoutError,
    QueueFullError,
    SubscriptionError,
    TransportError,
)
from genericble.core.model import (
    ALLOWED_TRANSITIONS,
    STATUS_EVENTS,
    Capabilities,
    CharacteristicConfig,
    CharacteristicDescriptor,
    CharacteristicInfo,
    DeviceConfig,
    EventKind,
    OperationKind,
    OperationRequest,
    SessionEvent,
    SessionState,
)
from genericble.core.queues import PendingQueues
from genericble.core.settings import Settings
from genericble.core.timers import TimerRegistry
from genericble.transports.base import CharacteristicHandle, PeripheralHandle

LOGGER = logging.getLogger(__name__)

DEVICE_NAME_UUID = "2a00"

UuidFilter = str | Iterable[str] | None
Listener = Callable[[SessionEvent], None]

_STATE_EVENTS = {
    SessionState.DISCONNECTED: EventKind.DISCONNECTED,
    SessionState.CONNECTING: EventKind.CONNECTING,
    SessionState.DISCOVERING: EventKind.DISCOVERING,
    SessionState.CONNECTED: EventKind.CONNECTED,
    SessionState.DISCONNECTING: EventKind.DISCONNECTING,
    SessionState.MISSING: EventKind.MISSING,
    SessionState.ERROR: EventKind.ERROR,
}


class PeripheralSession:
    """Persistent logical handle to one configured peripheral.

    State changes only through `_transition`, which enforces
    `ALLOWED_TRANSITIONS`. Live characteristic descriptors exist only while
    the session is CONNECTED; the catalog (allow-list plus whatever the last
    discovery reported) survives reconnects and drives request filtering.
    """

    def __init__(
        self,
        config: DeviceConfig,
        *,
        timers: TimerRegistry,
        settings: Settings | None = None,
    ) -> None:
        self.config = config
        self.identifier = normalize_identifier(config.identifier)
        self.settings = settings or Settings()
        self._timers = timers
        self.queues = PendingQueues(self.settings.max_requests)
        self.characteristics: list[CharacteristicDescriptor] = []
        self.catalog: dict[str, CharacteristicConfig] = {}
        self.status: EventKind | None = None
        self.last_error: BaseException | None = None
        self._allow_list = frozenset(normalize_uuid(c.uuid) for c in config.characteristics)
        self._state = SessionState.DISCONNECTED
        self._listeners: list[Listener] = []
        self._handle: PeripheralHandle | None = None
        self._discovered: list[CharacteristicHandle] = []
        self._connect_task: asyncio.Task[None] | None = None
        self._lock_owner: object | None = None
        self._session_timers: set[asyncio.TimerHandle] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self.closed = False
        self._seed_catalog()

    def __repr__(self) -> str:
        return f"PeripheralSession({self.identifier}, state={self._state.value})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mute_notifications(self) -> bool:
        return self.config.mute_notifications

    @property
    def operation_timeout_ms(self) -> int:
        if self.config.operation_timeout_ms is not None:
            return self.config.operation_timeout_ms
        return self.settings.connection_timeout_ms

    @property
    def listening_period_ms(self) -> int:
        if self.config.listening_period_ms is not None:
            return self.config.listening_period_ms
        return self.settings.notification_window_ms

    @property
    def _timeout_s(self) -> float:
        return self.operation_timeout_ms / 1000

    # Locking

    @property
    def locked(self) -> bool:
        return self._lock_owner is not None

    def try_lock(self, owner: object) -> bool:
        if self._lock_owner is not None and self._lock_owner is not owner:
            return False
        self._lock_owner = owner
        return True

    def unlock(self, owner: object) -> None:
        if self._lock_owner is owner:
            self._lock_owner = None

    # Events

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def emit(self, kind: EventKind, **details: Any) -> SessionEvent:
        event = SessionEvent(identifier=self.identifier, kind=kind, state=self._state, **details)
        if kind in STATUS_EVENTS:
            self.status = kind
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Listener failed on %s event for %s", kind.value, self.identifier)
        return event

    def announce_state(self) -> SessionEvent:
        return self.emit(_STATE_EVENTS[self._state])

    def _transition(self, new_state: SessionState) -> None:
        if new_state is self._state:
            return
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"{self.identifier}: {self._state.value} -> {new_state.value} is not allowed"
            )
        LOGGER.debug("%s: %s -> %s", self.identifier, self._state.value, new_state.value)
        if new_state is not SessionState.CONNECTED:
            self._invalidate_characteristics()
        self._state = new_state

    # Registry feedback

    def mark_missing(self) -> None:
        if self._state is SessionState.DISCONNECTED:
            self._transition(SessionState.MISSING)
        self.emit(EventKind.MISSING)

    def mark_found(self) -> None:
        if self._state is SessionState.MISSING:
            self._transition(SessionState.DISCONNECTED)
            self.emit(EventKind.DISCONNECTED)

    def fail(self, error: BaseException) -> None:
        LOGGER.error("%s entered error state: %s", self.identifier, error)
        self.last_error = error
        self._transition(SessionState.ERROR)
        self.emit(EventKind.ERROR, error=error)

    # Pending requests

    def has_pending_work(self) -> bool:
        return len(self.queues) > 0 or not self.mute_notifications

    def enqueue_write(self, values: Mapping[str, Any]) -> bool:
        normalized = {normalize_uuid(k): v for k, v in values.items()}
        if not normalized:
            return False
        targets = self._match_catalog(normalized, lambda c: c.any_write)
        if not targets:
            LOGGER.debug("%s: no writable characteristic in %s", self.identifier, sorted(normalized))
            return False
        payloads = tuple((c.uuid, to_bytes(normalized[c.uuid], c.length)) for c in targets)
        request = OperationRequest(
            kind=OperationKind.WRITE,
            target_uuids=frozenset(uuid for uuid, _ in payloads),
            payloads=payloads,
        )
        return self._push(request)

    def enqueue_read(self, uuids: UuidFilter = None) -> bool:
        targets = self._match_catalog(uuids, lambda c: c.readable)
        if not targets:
            LOGGER.debug("%s: no readable characteristic for %r", self.identifier, uuids)
            return False
        request = OperationRequest(
            kind=OperationKind.READ,
            target_uuids=frozenset(c.uuid for c in targets),
        )
        return self._push(request)

    def enqueue_subscribe(self, uuids: UuidFilter = None, period_ms: int = 0) -> bool:
        if period_ms < 0:
            raise ValueError(f"period_ms must be non-negative, got {period_ms}")
        targets = self._match_catalog(uuids, lambda c: c.notifiable)
        if not targets:
            LOGGER.debug("%s: no notifiable characteristic for %r", self.identifier, uuids)
            return False
        request = OperationRequest(
            kind=OperationKind.SUBSCRIBE,
            target_uuids=frozenset(c.uuid for c in targets),
            period_ms=period_ms,
        )
        return self._push(request)

    def _push(self, request: OperationRequest) -> bool:
        try:
            self.queues.push(request)
        except QueueFullError as exc:
            LOGGER.warning("%s: rejected %s request: %s", self.identifier, request.kind.value, exc)
            return False
        return True

    # Connection lifecycle

    async def ensure_connected(self, handle: PeripheralHandle | None = None) -> SessionState:
        """Connect if needed and return the resulting state.

        Idempotent: a connected session returns at once, and a connect already
        in flight is awaited for at most `Settings.connect_wait_s`. Callers
        must treat any result other than CONNECTED as a failure.
        """
        if self._state is SessionState.CONNECTED:
            return self._state

        in_flight = self._connect_task is not None and not self._connect_task.done()
        if not in_flight:
            if handle is None or self._state is not SessionState.DISCONNECTED:
                return self._state
            self._connect_task = asyncio.ensure_future(self._connect(handle))
            await self._connect_task
            return self._state

        try:
            await self._timers.guard(
                asyncio.shield(self._connect_task),
                self.settings.connect_wait_s,
                OperationTimeoutError,
                f"{self.identifier}: gave up waiting for connect in progress",
            )
        except OperationTimeoutError as exc:
            LOGGER.debug("%s", exc)
        return self._state

    async def _connect(self, handle: PeripheralHandle) -> None:
        self._handle = handle
        handle.on_disconnect(self._on_transport_disconnect)
        self._transition(SessionState.CONNECTING)
        self.emit(EventKind.CONNECTING)
        try:
            await self._timers.guard(
                handle.connect(),
                self._timeout_s,
                ConnectTimeoutError,
                f"Connect to {self.identifier} timed out after {self.operation_timeout_ms} ms",
            )
            if self._state is not SessionState.CONNECTING:
                return
            self._transition(SessionState.DISCOVERING)
            self.emit(EventKind.DISCOVERING)
            found = await self._timers.guard(
                handle.discover_characteristics(),
                self._timeout_s,
                DiscoveryTimeoutError,
                f"Discovery on {self.identifier} timed out after {self.operation_timeout_ms} ms",
            )
        except AdapterError as exc:
            self.fail(exc)
            return
        except OperationTimeoutError as exc:
            LOGGER.warning("%s", exc)
            phase = "discovery" if isinstance(exc, DiscoveryTimeoutError) else "connect"
            await self._abort(handle)
            self.emit(EventKind.TIMEOUT, phase=phase, error=exc)
            return
        except TransportError as exc:
            LOGGER.warning("Connecting %s failed: %s", self.identifier, exc)
            self.last_error = exc
            await self._abort(handle)
            self.emit(EventKind.ERROR, error=exc)
            return
        except BaseException:
            self._settle()
            raise

        if self._state is not SessionState.DISCOVERING:
            return
        self._discovered = list(found)
        self.characteristics = [
            self._describe(h) for h in self._discovered if self._allowed(normalize_uuid(h.uuid))
        ]
        self._refresh_catalog()
        self._transition(SessionState.CONNECTED)
        LOGGER.info("Connected to %s (%d characteristics)", self.identifier, len(self.characteristics))
        self.emit(EventKind.CONNECTED)

    async def _abort(self, handle: PeripheralHandle) -> None:
        if self._state is SessionState.CONNECTING:
            self._transition(SessionState.DISCONNECTED)
        elif self._state is SessionState.DISCOVERING:
            await self.disconnect(handle)

    def _settle(self) -> None:
        if self._state in (SessionState.CONNECTING, SessionState.DISCOVERING):
            self._transition(SessionState.DISCONNECTED)
            self.emit(EventKind.DISCONNECTED)

    def _on_transport_disconnect(self) -> None:
        if self._state in (SessionState.CONNECTED, SessionState.DISCOVERING):
            LOGGER.info("%s dropped the connection", self.identifier)
            self._transition(SessionState.DISCONNECTED)
            self.emit(EventKind.DISCONNECTED)

    async def disconnect(self, handle: PeripheralHandle | None = None) -> None:
        handle = handle or self._handle
        if self._state in (SessionState.CONNECTED, SessionState.DISCOVERING):
            self._transition(SessionState.DISCONNECTING)
            self.emit(EventKind.DISCONNECTING)
            timed_out: DisconnectTimeoutError | None = None
            try:
                if handle is not None:
                    await self._timers.guard(
                        handle.disconnect(),
                        self._timeout_s,
                        DisconnectTimeoutError,
                        f"Disconnect from {self.identifier} timed out after "
                        f"{self.operation_timeout_ms} ms",
                    )
            except DisconnectTimeoutError as exc:
                LOGGER.warning("%s; treating it as disconnected", exc)
                timed_out = exc
            except TransportError as exc:
                LOGGER.warning("Disconnecting %s failed: %s", self.identifier, exc)
            finally:
                if self._state is SessionState.DISCONNECTING:
                    self._transition(SessionState.DISCONNECTED)
                    self.emit(EventKind.DISCONNECTED)
            if timed_out is not None:
                self.emit(EventKind.TIMEOUT, phase="disconnect", error=timed_out)
            return

        if (
            handle is not None
            and handle.state != "disconnected"
            and self._state not in (SessionState.CONNECTING, SessionState.DISCONNECTING)
        ):
            try:
                await self._timers.guard(handle.disconnect(), self._timeout_s, DisconnectTimeoutError)
            except TransportError as exc:
                LOGGER.debug("Defensive disconnect of %s failed: %s", self.identifier, exc)

    # Characteristic I/O

    async def write(self, values: Mapping[str, Any]) -> None:
        normalized = {normalize_uuid(k): v for k, v in values.items()}
        if not normalized or not self._match_catalog(normalized, lambda c: c.any_write):
            raise NoMatchingCharacteristicError(
                f"{self.identifier}: no writable characteristic in {sorted(normalized)}"
            )
        await self._require_connected()
        targets = self._match_descriptors(normalized, lambda c: c.any_write)
        if not targets:
            raise NoMatchingCharacteristicError(
                f"{self.identifier}: none of {sorted(normalized)} is writable on the device"
            )
        results = await asyncio.gather(
            *(self._write_one(d, to_bytes(normalized[d.uuid], self._length(d.uuid))) for d in targets),
            return_exceptions=True,
        )
        _raise_first(results)

    async def _write_one(self, descriptor: CharacteristicDescriptor, data: bytes) -> None:
        without_response = not descriptor.capabilities.writable
        await self._timers.guard(
            descriptor.handle.write(data, without_response),
            self._timeout_s,
            OperationTimeoutError,
            f"Write to {self.identifier}/{descriptor.uuid} timed out",
        )
        LOGGER.debug("Wrote %s to %s/%s", data.hex(), self.identifier, descriptor.uuid)

    async def read(self, uuids: UuidFilter = None) -> dict[str, bytes] | None:
        if not self._match_catalog(uuids, lambda c: c.readable):
            return None
        await self._require_connected()
        targets = self._match_descriptors(uuids, lambda c: c.readable)
        if not targets:
            return None
        await self.unsubscribe()
        results = await asyncio.gather(
            *(
                self._timers.guard(
                    d.handle.read(),
                    self._timeout_s,
                    OperationTimeoutError,
                    f"Read from {self.identifier}/{d.uuid} timed out",
                )
                for d in targets
            ),
            return_exceptions=True,
        )
        _raise_first(results)
        return {d.uuid: bytes(value) for d, value in zip(targets, results)}

    async def subscribe(self, uuids: UuidFilter = None, period_ms: int = 0) -> list[str]:
        """Subscribe to matching characteristics; return the UUIDs newly subscribed.

        With `period_ms > 0` the subscription ends automatically after that
        long and the session re-announces its connection state.
        """
        if not self._match_catalog(uuids, lambda c: c.notifiable):
            raise NoMatchingCharacteristicError(
                f"{self.identifier}: no notifiable characteristic for {uuids!r}"
            )
        await self._require_connected()
        targets = [d for d in self._match_descriptors(uuids, lambda c: c.notifiable) if not d.subscribed]
        subscribed: list[str] = []
        for descriptor in targets:
            callback = partial(self._on_notification, descriptor.uuid)
            try:
                await self._timers.guard(
                    descriptor.handle.subscribe(callback),
                    self._timeout_s,
                    OperationTimeoutError,
                    f"Subscribe to {self.identifier}/{descriptor.uuid} timed out",
                )
            except TransportError as exc:
                raise SubscriptionError(
                    f"Subscribing to {self.identifier}/{descriptor.uuid} failed: {exc}"
                ) from exc
            descriptor.subscribed = True
            subscribed.append(descriptor.uuid)
        if period_ms > 0 and subscribed:
            self._arm(period_ms / 1000, self._expire_subscription, frozenset(subscribed))
        return subscribed

    async def unsubscribe(self, uuids: UuidFilter = None) -> list[str]:
        wanted = parse_uuid_filter(uuids)
        targets = [
            d for d in self.characteristics if d.subscribed and (not wanted or d.uuid in wanted)
        ]
        errors: list[BaseException] = []
        for descriptor in targets:
            descriptor.subscribed = False
            try:
                await self._timers.guard(
                    descriptor.handle.unsubscribe(),
                    self._timeout_s,
                    OperationTimeoutError,
                    f"Unsubscribe from {self.identifier}/{descriptor.uuid} timed out",
                )
            except TransportError as exc:
                errors.append(
                    SubscriptionError(
                        f"Unsubscribing from {self.identifier}/{descriptor.uuid} failed: {exc}"
                    )
                )
        if errors:
            raise errors[0]
        return [d.uuid for d in targets]

    def _on_notification(self, uuid: str, data: bytes) -> None:
        self.emit(EventKind.DATA, uuid=uuid, data=bytes(data))

    def _expire_subscription(self, uuids: frozenset[str]) -> None:
        self._spawn(self._finish_subscription(uuids))

    async def _finish_subscription(self, uuids: frozenset[str]) -> None:
        try:
            await self.unsubscribe(uuids)
        except GenericBleError as exc:
            LOGGER.warning("%s", exc)
        self.announce_state()

    async def _require_connected(self) -> None:
        state = await self.ensure_connected()
        if state is not SessionState.CONNECTED:
            raise NotConnectedError(f"{self.identifier} is {state.value}, not connected")

    # Administrative detail

    def services(self) -> dict[str, tuple[CharacteristicInfo, ...]]:
        grouped: dict[str, list[CharacteristicInfo]] = {}
        for handle in self._discovered:
            info = CharacteristicInfo(
                uuid=normalize_uuid(handle.uuid),
                name=handle.name,
                type=handle.type,
                properties=tuple(handle.properties),
            )
            grouped.setdefault(normalize_uuid(handle.service_uuid or ""), []).append(info)
        return {service: tuple(chars) for service, chars in grouped.items()}

    async def read_device_name(self) -> str | None:
        for handle in self._discovered:
            if normalize_uuid(handle.uuid) != DEVICE_NAME_UUID or "read" not in handle.properties:
                continue
            try:
                data = await self._timers.guard(handle.read(), self._timeout_s, OperationTimeoutError)
            except TransportError as exc:
                LOGGER.debug("Could not read device name of %s: %s", self.identifier, exc)
                return None
            return bytes(data).decode("utf-8", errors="replace")
        return None

    # Reset and teardown

    def reset(self) -> None:
        """Return to a clean DISCONNECTED session, dropping locks, timers and requests."""
        self._cancel_session_timers()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        self._lock_owner = None
        self.last_error = None
        self.queues.clear()
        if self._state is not SessionState.DISCONNECTED:
            self._transition(SessionState.DISCONNECTED)
        self._invalidate_characteristics()
        self._handle = None

    def close(self) -> None:
        self.closed = True
        self.reset()
        self._listeners.clear()

    # Internals

    def _seed_catalog(self) -> None:
        for item in self.config.characteristics:
            uuid = normalize_uuid(item.uuid)
            self.catalog[uuid] = CharacteristicConfig(
                uuid=uuid,
                name=item.name,
                type_tag=item.type_tag,
                capabilities=item.capabilities,
                length=item.length,
            )

    def _refresh_catalog(self) -> None:
        for descriptor in self.characteristics:
            configured = self.catalog.get(descriptor.uuid)
            self.catalog[descriptor.uuid] = CharacteristicConfig(
                uuid=descriptor.uuid,
                name=(configured.name if configured and configured.name else descriptor.display_name),
                type_tag=descriptor.type_tag,
                capabilities=descriptor.capabilities,
                length=configured.length if configured else 1,
            )

    def _allowed(self, uuid: str) -> bool:
        return not self._allow_list or uuid in self._allow_list

    def _describe(self, handle: CharacteristicHandle) -> CharacteristicDescriptor:
        uuid = normalize_uuid(handle.uuid)
        configured = self.catalog.get(uuid)
        return CharacteristicDescriptor(
            uuid=uuid,
            display_name=handle.name or (configured.name if configured else None) or uuid,
            type_tag=handle.type,
            capabilities=Capabilities.from_properties(handle.properties),
            handle=handle,
            service_uuid=handle.service_uuid,
        )

    def _length(self, uuid: str) -> int:
        configured = self.catalog.get(uuid)
        return configured.length if configured else 1

    def _match_catalog(
        self, uuids: UuidFilter, predicate: Callable[[Capabilities], bool]
    ) -> list[CharacteristicConfig]:
        wanted = parse_uuid_filter(uuids)
        return [
            c
            for uuid, c in self.catalog.items()
            if predicate(c.capabilities) and (not wanted or uuid in wanted)
        ]

    def _match_descriptors(
        self, uuids: UuidFilter, predicate: Callable[[Capabilities], bool]
    ) -> list[CharacteristicDescriptor]:
        wanted = parse_uuid_filter(uuids)
        return [
            d
            for d in self.characteristics
            if predicate(d.capabilities) and (not wanted or d.uuid in wanted)
        ]

    def _invalidate_characteristics(self) -> None:
        self._cancel_session_timers()
        self.characteristics = []
        self._discovered = []

    def _arm(self, delay_s: float, callback: Callable[..., None], *args: Any) -> None:
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._session_timers.discard(handle)
            callback(*args)

        handle = self._timers.call_later(delay_s, _fire)
        self._session_timers.add(handle)

    def _cancel_session_timers(self) -> None:
        for handle in list(self._session_timers):
            self._timers.cancel(handle)
        self._session_timers.clear()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _raise_first(results: list[Any]) -> None:
    for result in results:
        if isinstance(result, BaseException):
            raise result
