"""Assembly of a lifecycle coordinator from configuration."""

from __future__ import annotations

from collections.abc import Callable

from dispatch_sync.config import SyncConfig
from dispatch_sync.lifecycle.coordinator import LifecycleCoordinator
from dispatch_sync.realtime.applier import RemoteChangeApplier
from dispatch_sync.realtime.channel import RealtimeChannel
from dispatch_sync.realtime.manager import RealtimeManager
from dispatch_sync.remote.client import RemoteClient
from dispatch_sync.remote.compat import AppCompatChecker
from dispatch_sync.storage.base import LocalStore
from dispatch_sync.sync.orchestrator import SyncEngine


def create_coordinator(
    config: SyncConfig,
    store: LocalStore,
    remote: RemoteClient,
    *,
    access_token: Callable[[], str | None],
) -> LifecycleCoordinator:
    """
    Wire engine, realtime and compatibility check for one app process.

    Args:
        config: Loaded configuration
        store: Initialized local store
        remote: Remote client (its bearer token is managed by the caller)
        access_token: Returns the current session token for channel joins
    """
    realtime_settings = config.realtime

    def make_engine(user_id: str) -> SyncEngine:
        return SyncEngine(
            store,
            remote,
            settings=config.sync,
            breaker_settings=config.circuit_breaker,
        )

    def make_realtime(engine: SyncEngine) -> RealtimeManager:
        def make_channel() -> RealtimeChannel:
            return RealtimeChannel(
                config.remote.url,
                config.remote.anon_key,
                realtime_settings.channel,
                access_token=access_token(),
                heartbeat_seconds=realtime_settings.heartbeat_seconds,
            )

        def current_user() -> str | None:
            return engine.current_user_id

        return RealtimeManager(
            make_channel,
            RemoteChangeApplier(engine.tracker, current_user),
            current_user=current_user,
            reconnect_delay=realtime_settings.reconnect_delay,
            max_reconnect_delay=realtime_settings.max_reconnect_delay,
            max_reconnect_attempts=realtime_settings.max_reconnect_attempts,
            enabled=realtime_settings.enabled,
        )

    compat = None
    if config.app.check_compat:
        compat = AppCompatChecker(
            remote, platform=config.app.platform, client_version=config.app.version
        )
    return LifecycleCoordinator(make_engine, make_realtime, compat)
