"""Process-wide registry of every timer the library arms."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from genericble.core.errors import OperationTimeoutError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class TimerRegistry:
    """Owns asyncio timer handles so a reset can cancel all of them at once."""

    def __init__(self) -> None:
        self._handles: set[asyncio.TimerHandle] = set()
        self._sleepers: set[asyncio.Future[None]] = set()

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, handle: object) -> bool:
        return handle in self._handles

    def call_later(self, delay_s: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._handles.discard(handle)
            callback(*args)

        handle = loop.call_later(max(delay_s, 0.0), _fire)
        self._handles.add(handle)
        return handle

    def cancel(self, handle: asyncio.TimerHandle | None) -> None:
        if handle is None:
            return
        handle.cancel()
        self._handles.discard(handle)

    def cancel_all(self) -> None:
        count = len(self._handles)
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        for sleeper in list(self._sleepers):
            if not sleeper.done():
                sleeper.cancel()
        self._sleepers.clear()
        LOGGER.debug("Cancelled %d outstanding timers", count)

    async def sleep(self, delay_s: float) -> None:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        handle = self.call_later(delay_s, _wake)
        self._sleepers.add(waiter)
        try:
            await waiter
        finally:
            self._sleepers.discard(waiter)
            self.cancel(handle)

    async def guard(
        self,
        awaitable: Awaitable[T],
        timeout_s: float,
        error_cls: type[OperationTimeoutError] = OperationTimeoutError,
        message: str = "Operation timed out",
    ) -> T:
        """Await `awaitable`, raising `error_cls` if it outlives `timeout_s`."""
        task = asyncio.ensure_future(awaitable)
        expired = False

        def _expire() -> None:
            nonlocal expired
            if not task.done():
                expired = True
                task.cancel()

        handle = self.call_later(timeout_s, _expire)
        try:
            return await task
        except asyncio.CancelledError:
            if expired:
                raise error_cls(message) from None
            raise
        finally:
            self.cancel(handle)
