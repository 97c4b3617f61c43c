"""dispatch-sync - local-first sync engine for multi-device record management."""

from dispatch_sync.core.records import (
    Activity,
    ActivityAssignment,
    Listing,
    Note,
    Property,
    SyncableRecord,
    TaskAssignment,
    TaskItem,
    User,
)
from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata
from dispatch_sync.lifecycle.coordinator import LifecycleCoordinator
from dispatch_sync.realtime.manager import RealtimeManager
from dispatch_sync.remote.client import RemoteClient
from dispatch_sync.remote.errors import SyncError, SyncErrorKind
from dispatch_sync.storage.base import LocalStore
from dispatch_sync.storage.memory_store import InMemoryStore
from dispatch_sync.storage.sqlite_store import SQLiteStore
from dispatch_sync.sync.orchestrator import SyncEngine

__version__ = "0.4.0"

__all__ = [
    "Activity",
    "ActivityAssignment",
    "EntitySyncState",
    "InMemoryStore",
    "LifecycleCoordinator",
    "Listing",
    "LocalStore",
    "Note",
    "Property",
    "RealtimeManager",
    "RemoteClient",
    "SQLiteStore",
    "SyncEngine",
    "SyncError",
    "SyncErrorKind",
    "SyncMetadata",
    "SyncableRecord",
    "TaskAssignment",
    "TaskItem",
    "User",
    "__version__",
]
