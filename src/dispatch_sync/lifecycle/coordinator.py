"""Starts and stops sync and realtime with app and session state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from dispatch_sync.realtime.manager import RealtimeManager
from dispatch_sync.remote.compat import CompatStatus
from dispatch_sync.sync.orchestrator import SyncEngine

logger = logging.getLogger(__name__)


class CompatCheck(Protocol):
    async def check(self) -> CompatStatus: ...


EngineFactory = Callable[[str], SyncEngine]
RealtimeFactory = Callable[[SyncEngine], RealtimeManager]


class LifecyclePhase(StrEnum):
    STOPPED = "stopped"
    ACTIVE = "active"


@dataclass
class Session:
    """Per-user engine and realtime subscription."""

    user_id: str
    engine: SyncEngine
    realtime: RealtimeManager


class LifecycleCoordinator:
    """
    Runs the sync subsystem only while the app is in the foreground AND a
    user is signed in.

    Entering ``active`` sets the current user, optionally checks client
    compatibility, recovers exhausted failures, runs one sync and then starts
    realtime listening. Entering ``stopped`` cancels that activation, stops
    realtime and pauses the engine; a sync already in flight is allowed to
    finish. Network loss and recovery are tracked independently: coming back
    online while active requests a catch-up sync.

    All inputs are serialized, so rapid foreground/background toggles never
    leave two activations running.

    Usage:
        coordinator = LifecycleCoordinator(make_engine, make_realtime)
        await coordinator.set_authenticated(user_id)
        await coordinator.set_foreground(True)
        ...
        await coordinator.shutdown()
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        realtime_factory: RealtimeFactory,
        compat: CompatCheck | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._realtime_factory = realtime_factory
        self._compat = compat

        self._foreground = False
        self._user_id: str | None = None
        self._network_reachable = True
        self._phase = LifecyclePhase.STOPPED
        self._session: Session | None = None
        self._activation_task: asyncio.Task[None] | None = None
        self._compat_status: CompatStatus | None = None
        self._lock = asyncio.Lock()

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    @property
    def is_active(self) -> bool:
        return self._phase == LifecyclePhase.ACTIVE

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def compat_status(self) -> CompatStatus | None:
        return self._compat_status

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def set_foreground(self, foreground: bool) -> None:
        async with self._lock:
            self._foreground = foreground
            await self._reconcile()

    async def set_authenticated(self, user_id: str | None) -> None:
        """Sign a user in (``user_id``) or out (``None``)."""
        async with self._lock:
            if user_id != self._user_id and self._session is not None:
                await self._deactivate()
                await self._dispose_session()
            self._user_id = user_id
            await self._reconcile()

    async def set_network_reachable(self, reachable: bool) -> None:
        async with self._lock:
            was_reachable = self._network_reachable
            self._network_reachable = reachable
            session = self._session
            if session is None or reachable == was_reachable:
                return
            if not reachable:
                logger.info("Network lost")
                await session.realtime.handle_network_lost()
                return
            logger.info("Network restored")
            if self.is_active:
                session.engine.request_sync()
            await session.realtime.handle_network_restored()

    async def wait_for_activation(self) -> None:
        """Wait until the current activation (sync, then realtime) has finished."""
        task = self._activation_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop everything and dispose the session. Returns once fully stopped."""
        async with self._lock:
            await self._deactivate()
            await self._dispose_session()
            self._foreground = False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _reconcile(self) -> None:
        should_run = self._foreground and self._user_id is not None
        if should_run and self._phase == LifecyclePhase.STOPPED:
            await self._activate()
        elif not should_run and self._phase == LifecyclePhase.ACTIVE:
            await self._deactivate()

    async def _activate(self) -> None:
        assert self._user_id is not None
        if self._compat_status is not None and self._compat_status.blocks_sync:
            logger.error("Sync disabled: client version is no longer supported")
            return

        session = self._session
        if session is None:
            engine = self._engine_factory(self._user_id)
            session = Session(self._user_id, engine, self._realtime_factory(engine))
            self._session = session
            if not self._network_reachable:
                await session.realtime.handle_network_lost()

        session.engine.resume()
        self._phase = LifecyclePhase.ACTIVE
        logger.info("Sync active for user %s", session.user_id)
        self._activation_task = asyncio.create_task(self._run_activation(session))

    async def _run_activation(self, session: Session) -> None:
        engine = session.engine
        engine.set_current_user(session.user_id)
        try:
            if self._compat is not None:
                status = await self._compat.check()
                self._compat_status = status
                if status.blocks_sync:
                    logger.error(
                        "Sync disabled: update required (minimum version %s)", status.min_version
                    )
                    engine.pause()
                    self._phase = LifecyclePhase.STOPPED
                    return

            await engine.auto_recover_failed_entities()
            report = await engine.sync()
            if report.error is not None:
                logger.warning("Initial sync failed: %s", report.error.message)
            await session.realtime.start_listening()
        except asyncio.CancelledError:
            logger.debug("Activation cancelled")
            raise
        except Exception:
            logger.error("Activation failed", exc_info=True)

    async def _deactivate(self) -> None:
        task = self._activation_task
        self._activation_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._session is not None:
            await self._session.realtime.stop_listening()
            self._session.engine.pause()
        if self._phase == LifecyclePhase.ACTIVE:
            logger.info("Sync stopped")
        self._phase = LifecyclePhase.STOPPED

    async def _dispose_session(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        await session.realtime.stop_listening()
        await session.engine.shutdown()
        logger.info("Disposed sync session for user %s", session.user_id)
