"""Per-record sync lifecycle metadata."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from dispatch_sync.utils.timeutils import format_timestamp, parse_timestamp


class EntitySyncState(StrEnum):
    """Where a record stands relative to the remote store."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


# States in which the local copy is authoritative over remote writes.
LOCALLY_AUTHORITATIVE = frozenset(
    {EntitySyncState.PENDING, EntitySyncState.SYNCING, EntitySyncState.FAILED}
)


@dataclass(frozen=True)
class SyncMetadata:
    """
    Sync bookkeeping attached to every syncable record.

    Instances are immutable; every transition returns a new value. A record
    is ``pending`` exactly when it carries local mutations the server has not
    acknowledged yet. ``dirty_fields`` names the remote columns touched since
    the last acknowledgment and drives field-level patch uploads.
    """

    state: EntitySyncState = EntitySyncState.PENDING
    retry_count: int = 0
    last_error: str | None = None
    dirty_fields: frozenset[str] = frozenset()
    local_revision: int = 0
    last_synced_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_reset_at: datetime | None = None

    @classmethod
    def remote(cls, server_updated_at: datetime | None = None) -> SyncMetadata:
        """Metadata for a row written from the server (download or realtime)."""
        return cls(state=EntitySyncState.SYNCED, last_synced_at=server_updated_at)

    @property
    def is_locally_authoritative(self) -> bool:
        return self.state in LOCALLY_AUTHORITATIVE

    @property
    def was_acknowledged(self) -> bool:
        """True once the server has accepted this record at least once."""
        return self.last_synced_at is not None

    def touched(self, fields: Iterable[str]) -> SyncMetadata:
        """Record a local mutation of the given columns."""
        return replace(
            self,
            state=EntitySyncState.PENDING,
            dirty_fields=self.dirty_fields | frozenset(fields),
            local_revision=self.local_revision + 1,
        )

    def in_flight(self, now: datetime) -> SyncMetadata:
        return replace(self, state=EntitySyncState.SYNCING, last_attempt_at=now)

    def acknowledged(self, server_updated_at: datetime | None) -> SyncMetadata:
        return replace(
            self,
            state=EntitySyncState.SYNCED,
            retry_count=0,
            last_error=None,
            dirty_fields=frozenset(),
            last_synced_at=server_updated_at or self.last_synced_at,
        )

    def rejected(self, error: str, now: datetime) -> SyncMetadata:
        return replace(
            self,
            state=EntitySyncState.FAILED,
            retry_count=self.retry_count + 1,
            last_error=error,
            last_attempt_at=now,
        )

    def requeued(self) -> SyncMetadata:
        return replace(self, state=EntitySyncState.PENDING)

    def reset(self, now: datetime) -> SyncMetadata:
        return replace(
            self,
            state=EntitySyncState.PENDING,
            retry_count=0,
            last_error=None,
            last_reset_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "dirty_fields": sorted(self.dirty_fields),
            "local_revision": self.local_revision,
            "last_synced_at": format_timestamp(self.last_synced_at),
            "last_attempt_at": format_timestamp(self.last_attempt_at),
            "last_reset_at": format_timestamp(self.last_reset_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncMetadata:
        return cls(
            state=EntitySyncState(data.get("state", EntitySyncState.PENDING)),
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            dirty_fields=frozenset(data.get("dirty_fields", ())),
            local_revision=int(data.get("local_revision", 0)),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
            last_reset_at=parse_timestamp(data.get("last_reset_at")),
        )
