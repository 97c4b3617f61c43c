"""Realtime subscription lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from dispatch_sync.dto.broadcast import ChangeEvent
from dispatch_sync.realtime.applier import RemoteChangeApplier
from dispatch_sync.realtime.parser import BroadcastEventParser
from dispatch_sync.sync.entity_state import ApplyOutcome

logger = logging.getLogger(__name__)


class BroadcastChannel(Protocol):
    async def connect(self) -> None: ...

    def messages(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class RealtimeConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


_SKIPPED = frozenset(
    {
        ApplyOutcome.SKIPPED_ECHO,
        ApplyOutcome.SKIPPED_LOCAL_PENDING,
        ApplyOutcome.SKIPPED_STALE,
    }
)


@dataclass
class RealtimeStats:
    applied: int = 0
    deleted: int = 0
    skipped: int = 0
    ignored: int = 0
    malformed: int = 0

    def record(self, outcome: ApplyOutcome) -> None:
        if outcome == ApplyOutcome.APPLIED:
            self.applied += 1
        elif outcome == ApplyOutcome.DELETED:
            self.deleted += 1
        elif outcome in _SKIPPED:
            self.skipped += 1
        else:
            self.ignored += 1


class RealtimeManager:
    """
    Owns the broadcast subscription for one session.

    At most one listen task exists at a time. Stopping cancels the task,
    waits for it, and closes the channel before any new subscription is
    made. While the network is down no reconnect is attempted; once it is
    restored the manager resubscribes only if the subscription had dropped.

    Usage:
        manager = RealtimeManager(channel_factory, applier, current_user=lambda: uid)
        await manager.start_listening()
        ...
        await manager.stop_listening()
    """

    def __init__(
        self,
        channel_factory: Callable[[], BroadcastChannel],
        applier: RemoteChangeApplier,
        *,
        current_user: Callable[[], str | None],
        parser: BroadcastEventParser | None = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        max_reconnect_attempts: int = 10,
        on_event: Callable[[ChangeEvent, ApplyOutcome], None] | None = None,
        enabled: bool = True,
    ) -> None:
        """
        Args:
            channel_factory: Creates a fresh, unconnected channel per subscription
            applier: Applies decoded events to the local store
            current_user: Returns the signed-in user id, or None
            parser: Message parser (a default one is created if omitted)
            reconnect_delay: Base delay of the exponential reconnect backoff
            max_reconnect_delay: Upper bound on a single reconnect delay
            max_reconnect_attempts: Consecutive failed attempts before giving up
                (0 = unlimited)
            on_event: Called after every applied or skipped event
            enabled: When False, start_listening never subscribes
        """
        self._channel_factory = channel_factory
        self._applier = applier
        self._current_user = current_user
        self._parser = parser or BroadcastEventParser()
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._on_event = on_event
        self._enabled = enabled

        self._state = RealtimeConnectionState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._channel: BroadcastChannel | None = None
        self._network_available = True
        self._wanted = False
        self._lock = asyncio.Lock()
        self.stats = RealtimeStats()

    @property
    def state(self) -> RealtimeConnectionState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def network_available(self) -> bool:
        return self._network_available

    async def start_listening(self) -> bool:
        """Subscribe if a user is signed in. Idempotent.

        Returns:
            True if a listen task is running afterwards
        """
        async with self._lock:
            if not self._enabled:
                return False
            if self._current_user() is None:
                logger.debug("Not starting realtime without a signed-in user")
                return False
            self._wanted = True
            if self.is_listening:
                return True
            if not self._network_available:
                self._state = RealtimeConnectionState.DEGRADED
                return False
            self._start_task()
            return True

    async def stop_listening(self) -> None:
        """Cancel the subscription and wait until the channel is closed."""
        async with self._lock:
            self._wanted = False
            await self._stop_task()
            self._state = RealtimeConnectionState.IDLE

    async def handle_network_lost(self) -> None:
        async with self._lock:
            self._network_available = False
            await self._stop_task()
            if self._wanted:
                self._state = RealtimeConnectionState.DEGRADED

    async def handle_network_restored(self) -> None:
        """Resubscribe once if the subscription had dropped."""
        async with self._lock:
            self._network_available = True
            if not self._wanted or self.is_listening:
                return
            if self._current_user() is None:
                return
            logger.info("Network restored, resubscribing to realtime")
            self._start_task()

    def _start_task(self) -> None:
        self._state = RealtimeConnectionState.CONNECTING
        self._task = asyncio.create_task(self._listen_loop())

    async def _stop_task(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # The listen loop closes its channel on exit; this covers a task
        # cancelled before its first await.
        if self._channel is not None:
            channel = self._channel
            self._channel = None
            await channel.close()

    async def _listen_loop(self) -> None:
        attempts = 0
        while True:
            channel = self._channel_factory()
            self._channel = channel
            self._state = RealtimeConnectionState.CONNECTING
            try:
                await channel.connect()
                self._state = RealtimeConnectionState.CONNECTED
                attempts = 0
                async for message in channel.messages():
                    await self._handle_message(message)
                logger.info("Realtime channel ended")
            except asyncio.CancelledError:
                raise
            except ConnectionError as e:
                logger.warning("Realtime channel dropped: %s", e)
            except Exception:
                logger.warning("Realtime channel failed", exc_info=True)
            finally:
                if self._channel is channel:
                    self._channel = None
                await channel.close()

            if not self._network_available:
                self._state = RealtimeConnectionState.DEGRADED
                return

            attempts += 1
            if self._max_reconnect_attempts and attempts > self._max_reconnect_attempts:
                logger.error(
                    "Giving up on realtime after %d reconnect attempts",
                    self._max_reconnect_attempts,
                )
                self._state = RealtimeConnectionState.DEGRADED
                return

            delay = min(self._reconnect_delay * (2 ** (attempts - 1)), self._max_reconnect_delay)
            self._state = RealtimeConnectionState.DEGRADED
            logger.info("Reconnecting to realtime in %.1fs (attempt %d)", delay, attempts)
            await asyncio.sleep(delay)

    async def _handle_message(self, message: dict[str, Any]) -> None:
        event = self._parser.parse(message)
        if event is None:
            self.stats.malformed += 1
            return
        try:
            outcome = await self._applier.apply(event)
        except Exception:
            logger.error("Failed to apply %s on %s", event.operation, event.table, exc_info=True)
            return
        self.stats.record(outcome)
        if self._on_event is not None:
            self._on_event(event, outcome)
