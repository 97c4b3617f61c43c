"""Retry budget and backoff for records rejected by the server."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for failed records.

    A record with ``retry_count`` failures waits ``base_delay * 2**retry_count``
    seconds (capped at ``max_delay``) before it is uploaded again. After
    ``max_retries`` failures it is left for the user to reset, or for
    :meth:`is_recoverable` once ``auto_recovery_cooldown`` has passed.
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    auto_recovery_cooldown: float = 3600.0

    def delay(self, retry_count: int) -> float:
        """Seconds to wait before the next attempt."""
        if retry_count <= 0:
            return 0.0
        return min(self.base_delay * (2**retry_count), self.max_delay)

    def is_exhausted(self, meta: SyncMetadata) -> bool:
        return meta.state == EntitySyncState.FAILED and meta.retry_count >= self.max_retries

    def is_due(self, meta: SyncMetadata, now: datetime) -> bool:
        """True if a failed record may be retried automatically at ``now``."""
        if meta.state != EntitySyncState.FAILED:
            return meta.state == EntitySyncState.PENDING
        if self.is_exhausted(meta):
            return False
        if meta.last_attempt_at is None:
            return True
        elapsed = (now - meta.last_attempt_at).total_seconds()
        return elapsed >= self.delay(meta.retry_count)

    def is_recoverable(self, meta: SyncMetadata, now: datetime) -> bool:
        """True if an exhausted record may be reset automatically."""
        if not self.is_exhausted(meta):
            return False
        if meta.last_reset_at is None:
            return True
        elapsed = (now - meta.last_reset_at).total_seconds()
        return elapsed >= self.auto_recovery_cooldown
