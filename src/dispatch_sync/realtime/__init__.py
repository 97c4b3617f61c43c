"""Realtime change propagation over the broadcast channel."""

from dispatch_sync.realtime.applier import RemoteChangeApplier
from dispatch_sync.realtime.channel import ChannelClosedError, ChannelState, RealtimeChannel
from dispatch_sync.realtime.manager import (
    BroadcastChannel,
    RealtimeConnectionState,
    RealtimeManager,
    RealtimeStats,
)
from dispatch_sync.realtime.parser import BroadcastEventParser

__all__ = [
    "BroadcastChannel",
    "BroadcastEventParser",
    "ChannelClosedError",
    "ChannelState",
    "RealtimeChannel",
    "RealtimeConnectionState",
    "RealtimeManager",
    "RealtimeStats",
    "RemoteChangeApplier",
]
