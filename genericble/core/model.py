"""Core data models used across sessions, scheduler, API, and CLI."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from genericble.transports.base import CharacteristicHandle


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    MISSING = "missing"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISCONNECTED: frozenset(
        {SessionState.CONNECTING, SessionState.MISSING, SessionState.ERROR}
    ),
    SessionState.CONNECTING: frozenset(
        {SessionState.DISCOVERING, SessionState.DISCONNECTED, SessionState.ERROR}
    ),
    SessionState.DISCOVERING: frozenset(
        {
            SessionState.CONNECTED,
            SessionState.DISCONNECTING,
            SessionState.DISCONNECTED,
            SessionState.ERROR,
        }
    ),
    SessionState.CONNECTED: frozenset(
        {SessionState.DISCONNECTING, SessionState.DISCONNECTED, SessionState.ERROR}
    ),
    SessionState.DISCONNECTING: frozenset({SessionState.DISCONNECTED, SessionState.ERROR}),
    SessionState.MISSING: frozenset({SessionState.DISCONNECTED, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.DISCONNECTED}),
}

ACTIVE_STATES = frozenset(
    {SessionState.CONNECTING, SessionState.DISCOVERING, SessionState.CONNECTED}
)


class EventKind(enum.Enum):
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    MISSING = "missing"
    ERROR = "error"
    DATA = "data"
    READ = "read"


STATUS_EVENTS = frozenset(
    {
        EventKind.CONNECTING,
        EventKind.DISCOVERING,
        EventKind.CONNECTED,
        EventKind.DISCONNECTING,
        EventKind.DISCONNECTED,
        EventKind.TIMEOUT,
        EventKind.MISSING,
        EventKind.ERROR,
    }
)


class OperationKind(enum.Enum):
    READ = "read"
    WRITE = "write"
    SUBSCRIBE = "subscribe"


@dataclass(frozen=True)
class Capabilities:
    readable: bool = False
    writable: bool = False
    write_without_response: bool = False
    notifiable: bool = False

    @classmethod
    def from_properties(cls, properties: tuple[str, ...] | list[str]) -> Capabilities:
        props = {p.strip() for p in properties}
        return cls(
            readable="read" in props,
            writable="write" in props,
            write_without_response="writeWithoutResponse" in props
            or "write-without-response" in props,
            notifiable=bool(props & {"notify", "indicate"}),
        )

    @property
    def any_write(self) -> bool:
        return self.writable or self.write_without_response

    def properties(self) -> tuple[str, ...]:
        props: list[str] = []
        if self.readable:
            props.append("read")
        if self.writable:
            props.append("write")
        if self.write_without_response:
            props.append("writeWithoutResponse")
        if self.notifiable:
            props.append("notify")
        return tuple(props)


@dataclass(frozen=True)
class CharacteristicConfig:
    uuid: str
    name: str | None = None
    type_tag: str | None = None
    capabilities: Capabilities = Capabilities()
    length: int = 1


@dataclass(frozen=True)
class DeviceConfig:
    identifier: str
    name: str | None = None
    characteristics: tuple[CharacteristicConfig, ...] = ()
    mute_notifications: bool = False
    operation_timeout_ms: int | None = None
    listening_period_ms: int | None = None


@dataclass
class CharacteristicDescriptor:
    """A discovered characteristic, valid only while its session is connected."""

    uuid: str
    display_name: str
    type_tag: str | None
    capabilities: Capabilities
    handle: CharacteristicHandle
    service_uuid: str | None = None
    subscribed: bool = False


@dataclass(frozen=True)
class OperationRequest:
    kind: OperationKind
    target_uuids: frozenset[str]
    payloads: tuple[tuple[str, bytes], ...] = ()
    period_ms: int = 0

    @property
    def values(self) -> dict[str, bytes]:
        return dict(self.payloads)


@dataclass(frozen=True)
class SessionEvent:
    identifier: str
    kind: EventKind
    state: SessionState
    phase: str | None = None
    uuid: str | None = None
    data: Any = None
    error: BaseException | None = None


@dataclass(frozen=True)
class DeviceSummary:
    identifier: str
    local_name: str | None
    address: str | None
    uuid: str | None
    rssi: int | None


@dataclass(frozen=True)
class CharacteristicInfo:
    uuid: str
    name: str | None
    type: str | None
    properties: tuple[str, ...]


@dataclass(frozen=True)
class DeviceDetail:
    summary: DeviceSummary
    services: dict[str, tuple[CharacteristicInfo, ...]] = field(default_factory=dict)
