"""Bounded-concurrency scheduler of connect/operate/disconnect cycles."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from genericble.core.errors import (
    AdapterError,
    GenericBleError,
    MissingPeripheralError,
    NotConnectedError,
    OperationTimeoutError,
    PeripheralBusyError,
)
from genericble.core.model import DeviceDetail, EventKind, OperationKind, SessionState
from genericble.core.registry import DeviceRegistry, summarize
from genericble.core.session import PeripheralSession
from genericble.core.settings import Settings
from genericble.core.timers import TimerRegistry
from genericble.transports.base import PeripheralHandle

LOGGER = logging.getLogger(__name__)


@dataclass
class SchedulerTask:
    session: PeripheralSession
    force_connect: bool
    future: asyncio.Future[Any]

    @property
    def identifier(self) -> str:
        return self.session.identifier


class OperationScheduler:
    """Sole owner of connection admission.

    Runs `Settings.max_connections` workers over one FIFO task queue, so at
    most that many sessions are ever connecting or connected. When the queue
    goes idle a rescan is armed that re-submits every visible session with
    work to do.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        timers: TimerRegistry,
        *,
        sessions: Callable[[], Iterable[PeripheralSession]],
        settings: Settings | None = None,
        on_adapter_failure: Callable[[AdapterError], None] | None = None,
    ) -> None:
        self._registry = registry
        self._timers = timers
        self._sessions = sessions
        self.settings = settings or Settings()
        self.on_adapter_failure = on_adapter_failure
        self.halted = False
        self.halt_reason: BaseException | None = None
        self.paused = False
        self._queue: asyncio.Queue[SchedulerTask] = asyncio.Queue()
        self._pending: dict[str, SchedulerTask] = {}
        self._owners: dict[str, SchedulerTask] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._active = 0
        self._running = False
        self._rescan_handle: asyncio.TimerHandle | None = None

    @property
    def concurrency(self) -> int:
        return self.settings.max_connections

    @property
    def running(self) -> bool:
        return self._running

    @property
    def idle(self) -> bool:
        return self._queue.empty() and self._active == 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.ensure_future(self._worker(index)) for index in range(self.concurrency)
        ]
        LOGGER.debug("Scheduler started with %d workers", self.concurrency)
        self._arm_rescan()

    async def stop(self) -> None:
        self._running = False
        self._timers.cancel(self._rescan_handle)
        self._rescan_handle = None
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        while not self._queue.empty():
            task = self._queue.get_nowait()
            task.future.cancel()
            self._queue.task_done()
        self._pending.clear()
        self._owners.clear()
        self._active = 0

    def submit(self, session: PeripheralSession, *, force_connect: bool = False) -> asyncio.Future[Any]:
        """Queue a cycle for `session` and return a future for its outcome.

        A session already waiting in the queue is not queued twice; the
        existing future is returned instead.
        """
        queued = self._pending.get(session.identifier)
        if queued is not None and queued.session is session:
            queued.force_connect = queued.force_connect or force_connect
            return queued.future
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        task = SchedulerTask(session=session, force_connect=force_connect, future=future)
        self._pending[session.identifier] = task
        self._queue.put_nowait(task)
        return future

    def cancel(self, session: PeripheralSession) -> bool:
        """Withdraw the queued task of `session`, if it has one waiting."""
        queued = self._pending.get(session.identifier)
        if queued is None or queued.session is not session:
            return False
        del self._pending[session.identifier]
        queued.future.cancel()
        LOGGER.debug("Cancelled queued task for %s", session.identifier)
        return True

    def wake(self) -> None:
        """Run a rescan now instead of waiting for the idle timer."""
        if self._running and not self.halted and not self.paused and self.idle:
            self._timers.cancel(self._rescan_handle)
            self._rescan()

    def pause(self) -> None:
        """Stop rescanning while the adapter is not powered on."""
        self.paused = True
        self._timers.cancel(self._rescan_handle)
        self._rescan_handle = None

    def unpause(self) -> None:
        self.paused = False
        self._arm_rescan()

    def halt(self, reason: BaseException) -> None:
        LOGGER.error("Automatic reconnection disabled: %s", reason)
        self.halted = True
        self.halt_reason = reason
        self._timers.cancel(self._rescan_handle)
        self._rescan_handle = None

    def resume(self) -> None:
        self.halted = False
        self.halt_reason = None

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            if self._pending.get(task.identifier) is task:
                del self._pending[task.identifier]
            self._active += 1
            try:
                result = await self._run(task)
            except asyncio.CancelledError:
                task.future.cancel()
                raise
            except GenericBleError as exc:
                LOGGER.warning("Task for %s failed: %s", task.identifier, exc)
                _settle(task.future, exc)
            except Exception as exc:
                LOGGER.exception("Task for %s failed unexpectedly", task.identifier)
                _settle(task.future, exc)
            else:
                if not task.future.done():
                    task.future.set_result(result)
            finally:
                self._active -= 1
                self._queue.task_done()
                if self.idle:
                    self._arm_rescan()

    async def _run(self, task: SchedulerTask) -> DeviceDetail | None:
        session = task.session
        if session.closed or task.future.cancelled():
            return None
        peripheral = self._registry.lookup(session.identifier)
        if peripheral is None:
            raise MissingPeripheralError(f"{session.identifier} is not in the device registry")
        if not task.force_connect and not session.has_pending_work():
            return None
        if not self._claim(task):
            raise PeripheralBusyError(f"{session.identifier} is in use by another task")

        try:
            state = await session.ensure_connected(peripheral)
            if state is not SessionState.CONNECTED:
                if state is SessionState.ERROR and isinstance(session.last_error, AdapterError):
                    self._adapter_failed(session.last_error)
                raise NotConnectedError(f"{session.identifier} is {state.value}, not connected")
            detail = await self._describe(session, peripheral) if task.force_connect else None
            await self._drain(session)
            await self._listen(session)
            return detail
        finally:
            await session.disconnect(peripheral)
            self._release(task)

    def _claim(self, task: SchedulerTask) -> bool:
        owner = self._owners.get(task.identifier)
        if owner is not None and owner is not task:
            return False
        if not task.session.try_lock(task):
            return False
        self._owners[task.identifier] = task
        return True

    def _release(self, task: SchedulerTask) -> None:
        task.session.unlock(task)
        if self._owners.get(task.identifier) is task:
            del self._owners[task.identifier]

    async def _describe(self, session: PeripheralSession, peripheral: PeripheralHandle) -> DeviceDetail:
        name = await session.read_device_name()
        if name:
            peripheral.local_name = name
        return DeviceDetail(summary=summarize(peripheral), services=session.services())

    async def _drain(self, session: PeripheralSession) -> None:
        interval_s = self.settings.operation_interval_ms / 1000
        while session.state is SessionState.CONNECTED:
            write = session.queues.pop(OperationKind.WRITE)
            read = session.queues.pop(OperationKind.READ)
            if write is None and read is None:
                return
            if write is not None:
                try:
                    await session.write(write.values)
                except GenericBleError as exc:
                    _report(session, exc, "write")
            if read is not None:
                try:
                    values = await session.read(read.target_uuids)
                except GenericBleError as exc:
                    _report(session, exc, "read")
                else:
                    if values is not None:
                        session.emit(EventKind.READ, data=values)
            await self._timers.sleep(interval_s)

    async def _listen(self, session: PeripheralSession) -> None:
        requests = session.queues.drain(OperationKind.SUBSCRIBE)
        if session.state is not SessionState.CONNECTED:
            return
        notifiable = any(d.capabilities.notifiable for d in session.characteristics)
        if not requests and (session.mute_notifications or not notifiable):
            return

        window_ms = session.listening_period_ms
        subscribed: list[str] = []
        try:
            if requests:
                for request in requests:
                    subscribed += await session.subscribe(request.target_uuids, request.period_ms)
                    window_ms = max(window_ms, request.period_ms)
            else:
                subscribed += await session.subscribe()
            if subscribed:
                LOGGER.debug("Listening to %s for %d ms", session.identifier, window_ms)
                await self._timers.sleep(window_ms / 1000)
        except GenericBleError as exc:
            _report(session, exc, "subscribe")
        finally:
            if subscribed and session.state is SessionState.CONNECTED:
                try:
                    await session.unsubscribe(subscribed)
                except GenericBleError as exc:
                    LOGGER.warning("%s", exc)

    def _adapter_failed(self, error: AdapterError) -> None:
        self.halt(error)
        if self.on_adapter_failure is not None:
            self.on_adapter_failure(error)

    def _arm_rescan(self) -> None:
        if not self._running or self.halted or self.paused or self._rescan_handle is not None:
            return
        self._rescan_handle = self._timers.call_later(
            self.settings.rescan_interval_ms / 1000, self._rescan
        )

    def _rescan(self) -> None:
        self._rescan_handle = None
        if not self._running or self.halted or self.paused:
            return
        submitted = 0
        for session in self._sessions():
            if session.state is SessionState.ERROR or not session.has_pending_work():
                continue
            if self._registry.lookup(session.identifier) is None:
                continue
            self.submit(session).add_done_callback(_consume)
            submitted += 1
        if not submitted:
            self._arm_rescan()


def _report(session: PeripheralSession, error: GenericBleError, operation: str) -> None:
    LOGGER.warning("%s on %s failed: %s", operation, session.identifier, error)
    if isinstance(error, OperationTimeoutError):
        session.emit(EventKind.TIMEOUT, phase=operation, error=error)
    else:
        session.emit(EventKind.ERROR, error=error)


def _settle(future: asyncio.Future[Any], error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)


def _consume(future: asyncio.Future[Any]) -> None:
    # Failures were already logged by the worker.
    if not future.cancelled():
        future.exception()
