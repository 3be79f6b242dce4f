"""Environment-style configuration knobs."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields

from genericble.core.errors import ConfigValidationError

ENV_PREFIX = "GENERIC_BLE_"


@dataclass(frozen=True)
class Settings:
    connection_timeout_ms: int = 5000
    max_connections: int = 1
    operation_interval_ms: int = 50
    notification_window_ms: int = 5000
    max_requests: int = 10
    registry_ttl_s: int = 10 * 60
    registry_check_period_s: int = 60
    connect_poll_attempts: int = 10
    connect_poll_interval_ms: int = 500
    rescan_interval_ms: int = 500

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigValidationError(
                    f"{item.name} must be a non-negative integer, got {value!r}"
                )
        if self.max_connections < 1:
            raise ConfigValidationError("max_connections must be at least 1")
        if self.max_requests < 1:
            raise ConfigValidationError("max_requests must be at least 1")

    @property
    def connect_wait_s(self) -> float:
        return self.connect_poll_attempts * self.connect_poll_interval_ms / 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values: dict[str, int] = {}
        for item in fields(cls):
            key = ENV_PREFIX + item.name.upper()
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                continue
            try:
                values[item.name] = int(raw.strip())
            except ValueError as exc:
                raise ConfigValidationError(f"{key} must be an integer, got {raw!r}") from exc
        return cls(**values)
