"""Bounded per-session queues of pending read/write/subscribe requests."""

from __future__ import annotations

from collections import deque

from genericble.core.errors import QueueFullError
from genericble.core.model import OperationKind, OperationRequest

MAX_REQUESTS = 10


class PendingQueues:
    def __init__(self, max_requests: int = MAX_REQUESTS) -> None:
        self.max_requests = max_requests
        self._queues: dict[OperationKind, deque[OperationRequest]] = {
            kind: deque() for kind in OperationKind
        }

    def push(self, request: OperationRequest) -> None:
        queue = self._queues[request.kind]
        if len(queue) >= self.max_requests:
            raise QueueFullError(
                f"{request.kind.value} queue is full ({self.max_requests} pending requests)"
            )
        queue.append(request)

    def pop(self, kind: OperationKind) -> OperationRequest | None:
        queue = self._queues[kind]
        return queue.popleft() if queue else None

    def drain(self, kind: OperationKind) -> list[OperationRequest]:
        queue = self._queues[kind]
        drained = list(queue)
        queue.clear()
        return drained

    def length(self, kind: OperationKind) -> int:
        return len(self._queues[kind])

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def clear(self) -> None:
        for queue in self._queues.values():
            queue.clear()
