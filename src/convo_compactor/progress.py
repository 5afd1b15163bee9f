from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger

from convo_compactor.models import utc_now


class EventType(StrEnum):
    PROGRESS = "progress"
    LOG = "log"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED)


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    workspace_id: str
    conversation_id: str
    session_id: str
    kind: str
    status: str
    step: str | None = None
    progress: int = 0
    chunks_processed: int = 0
    chunks_total: int = 0
    message: str | None = None
    error: str | None = None
    artifact_id: str | None = None
    timestamp: str = field(default_factory=utc_now)


ProgressCallback = Callable[[ProgressEvent], None]


class QueueSubscription:
    """Bounded per-subscriber buffer. When full, the oldest event is dropped
    so the publisher never waits on a slow reader."""

    def __init__(self, bus: ProgressBus, maxsize: int, session_id: str | None):
        self._bus = bus
        self._maxsize = max(1, maxsize)
        self._session_id = session_id
        self._events: deque[ProgressEvent] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
        self.dropped = 0
        self._unsubscribe = bus.subscribe(self._offer)

    def _offer(self, event: ProgressEvent) -> None:
        if self._session_id is not None and event.session_id != self._session_id:
            return
        if len(self._events) >= self._maxsize:
            self._events.popleft()
            self.dropped += 1
        self._events.append(event)
        self._wakeup.set()
        if self._session_id is not None and event.type.is_terminal:
            self.close()

    def pending(self) -> int:
        return len(self._events)

    def get_nowait(self) -> ProgressEvent | None:
        return self._events.popleft() if self._events else None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._wakeup.set()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            while self._events:
                yield self._events.popleft()
            if self._closed:
                return
            self._wakeup.clear()
            await self._wakeup.wait()


class ProgressBus:
    """Synchronous fan-out of session events; no buffering, no replay.

    Only the most recent ``terminal_history`` finished session ids are kept
    for de-duplicating terminal events.
    """

    def __init__(self, terminal_history: int = 1024) -> None:
        self._subscribers: list[ProgressCallback] = []
        self._terminal_history = max(1, terminal_history)
        self._terminated: OrderedDict[str, None] = OrderedDict()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 100, *, session_id: str | None = None) -> QueueSubscription:
        return QueueSubscription(self, maxsize, session_id)

    def publish(self, event: ProgressEvent) -> bool:
        """Deliver ``event`` to current subscribers. Returns False when a
        terminal event for the same session was already delivered."""
        if event.type.is_terminal:
            if event.session_id in self._terminated:
                logger.debug(f"Dropping duplicate terminal event {event.type} for session {event.session_id}")
                return False
            self._terminated[event.session_id] = None
            while len(self._terminated) > self._terminal_history:
                self._terminated.popitem(last=False)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as ex:
                logger.warning(f"Progress subscriber failed on {event.type} for session {event.session_id}: {ex}")
        return True
