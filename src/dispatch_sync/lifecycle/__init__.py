"""Lifecycle coordination of the sync subsystem."""

from dispatch_sync.lifecycle.coordinator import (
    LifecycleCoordinator,
    LifecyclePhase,
    Session,
)
from dispatch_sync.lifecycle.factory import create_coordinator

__all__ = ["LifecycleCoordinator", "LifecyclePhase", "Session", "create_coordinator"]
