"""Sync orchestration: upload, download, retry and failure suppression."""

from dispatch_sync.sync.batch_result import BatchSyncResult, CycleReport
from dispatch_sync.sync.circuit_breaker import BreakerState, CircuitBreaker
from dispatch_sync.sync.entity_state import ApplyOutcome, EntityStateTracker
from dispatch_sync.sync.locks import KeyedLock
from dispatch_sync.sync.orchestrator import SyncEngine
from dispatch_sync.sync.retry import RetryPolicy
from dispatch_sync.sync.status import StatusStream, SyncStatus, SyncStatusKind

__all__ = [
    "ApplyOutcome",
    "BatchSyncResult",
    "BreakerState",
    "CircuitBreaker",
    "CycleReport",
    "EntityStateTracker",
    "KeyedLock",
    "RetryPolicy",
    "StatusStream",
    "SyncEngine",
    "SyncStatus",
    "SyncStatusKind",
]
