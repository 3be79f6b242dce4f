from __future__ import annotations

import asyncio

import pytest

from genericble.core.errors import ConnectTimeoutError
from genericble.core.timers import TimerRegistry


def test_fired_timer_leaves_registry() -> None:
    async def scenario() -> None:
        timers = TimerRegistry()
        fired: list[int] = []
        timers.call_later(0.01, fired.append, 1)
        assert len(timers) == 1
        await asyncio.sleep(0.05)
        assert fired == [1]
        assert len(timers) == 0

    asyncio.run(scenario())


def test_cancel_all_cancels_timers_and_sleepers() -> None:
    async def scenario() -> None:
        timers = TimerRegistry()
        fired: list[int] = []
        timers.call_later(0.01, fired.append, 1)
        sleeper = asyncio.ensure_future(timers.sleep(10))
        await asyncio.sleep(0)
        timers.cancel_all()
        with pytest.raises(asyncio.CancelledError):
            await sleeper
        await asyncio.sleep(0.03)
        assert fired == []
        assert len(timers) == 0

    asyncio.run(scenario())


def test_guard_raises_given_error_on_expiry() -> None:
    async def scenario() -> None:
        timers = TimerRegistry()
        with pytest.raises(ConnectTimeoutError, match="too slow"):
            await timers.guard(asyncio.sleep(1), 0.02, ConnectTimeoutError, "too slow")
        assert len(timers) == 0

    asyncio.run(scenario())


def test_guard_returns_result_and_disarms() -> None:
    async def scenario() -> None:
        timers = TimerRegistry()

        async def value() -> int:
            return 42

        assert await timers.guard(value(), 1.0) == 42
        assert len(timers) == 0

    asyncio.run(scenario())


def test_guard_propagates_outer_cancellation() -> None:
    async def scenario() -> None:
        timers = TimerRegistry()
        task = asyncio.ensure_future(timers.guard(asyncio.sleep(10), 5.0))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(timers) == 0

    asyncio.run(scenario())
