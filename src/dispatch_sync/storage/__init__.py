"""Local persistence for synced records."""

from dispatch_sync.storage.base import LocalStore
from dispatch_sync.storage.memory_store import InMemoryStore
from dispatch_sync.storage.sqlite_store import SQLiteStore

__all__ = ["InMemoryStore", "LocalStore", "SQLiteStore"]
