"""Remote backend access."""

from dispatch_sync.remote.client import RemoteBackend, RemoteClient
from dispatch_sync.remote.compat import AppCompatChecker, CompatStatus
from dispatch_sync.remote.errors import RemoteError, SyncError, SyncErrorKind

__all__ = [
    "AppCompatChecker",
    "CompatStatus",
    "RemoteBackend",
    "RemoteClient",
    "RemoteError",
    "SyncError",
    "SyncErrorKind",
]
