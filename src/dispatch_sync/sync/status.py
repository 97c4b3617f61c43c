"""Engine status and its transition stream."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from dispatch_sync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class SyncStatusKind(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    OK = "ok"
    ERROR = "error"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of what the engine is doing.

    ``circuit_breaker_open`` means "waiting to retry" and carries the
    remaining cooldown; ``error`` means the last cycle failed and automatic
    syncs are still allowed.
    """

    kind: SyncStatusKind
    message: str | None = None
    seconds_remaining: float | None = None
    at: datetime = field(default_factory=utcnow)

    @classmethod
    def idle(cls) -> SyncStatus:
        return cls(SyncStatusKind.IDLE)

    @classmethod
    def syncing(cls) -> SyncStatus:
        return cls(SyncStatusKind.SYNCING)

    @classmethod
    def ok(cls, message: str | None = None) -> SyncStatus:
        return cls(SyncStatusKind.OK, message)

    @classmethod
    def error(cls, message: str) -> SyncStatus:
        return cls(SyncStatusKind.ERROR, message)

    @classmethod
    def circuit_breaker_open(cls, seconds_remaining: float) -> SyncStatus:
        return cls(
            SyncStatusKind.CIRCUIT_BREAKER_OPEN,
            f"Waiting {seconds_remaining:.0f}s before retrying",
            seconds_remaining=seconds_remaining,
        )


_CLOSED = object()


class StatusSubscription:
    """Async iterator over status transitions for one subscriber."""

    def __init__(self, stream: StatusStream) -> None:
        self._stream = stream
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    def _push(self, item: object) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> AsyncIterator[SyncStatus]:
        return self

    async def __anext__(self) -> SyncStatus:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        assert isinstance(item, SyncStatus)
        return item

    def close(self) -> None:
        self._stream._unsubscribe(self)
        self._push(_CLOSED)


class StatusStream:
    """Current status plus fan-out of every transition to subscribers."""

    def __init__(self) -> None:
        self._current = SyncStatus.idle()
        self._subscribers: list[StatusSubscription] = []
        self._closed = False

    @property
    def current(self) -> SyncStatus:
        return self._current

    def publish(self, status: SyncStatus) -> None:
        self._current = status
        logger.debug("Sync status: %s %s", status.kind, status.message or "")
        for subscriber in list(self._subscribers):
            subscriber._push(status)

    def subscribe(self) -> StatusSubscription:
        """Subscribe to future transitions. Closed streams end immediately."""
        subscription = StatusSubscription(self)
        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: StatusSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def close(self) -> None:
        self._closed = True
        for subscriber in list(self._subscribers):
            subscriber.close()
