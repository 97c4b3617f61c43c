"""Entity sync state transitions against the local store.

Every write that changes a record's sync state goes through
:class:`EntityStateTracker`. Local edits use :meth:`record_local_change`;
server-originated writes (downloads, realtime events) use
:meth:`apply_remote` or :meth:`apply_remote_row`, which never mark a record
pending. All of these hold the record's :class:`KeyedLock` so an upload
acknowledgment and a realtime write to the same record can never interleave.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata
from dispatch_sync.dto.registry import UPLOAD_ORDER, codec_for
from dispatch_sync.dto.rows import RowDecodeError
from dispatch_sync.remote.errors import SyncError
from dispatch_sync.storage.base import LocalStore
from dispatch_sync.sync.locks import KeyedLock
from dispatch_sync.sync.retry import RetryPolicy
from dispatch_sync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

_DIRTY_STATES = (EntitySyncState.PENDING, EntitySyncState.FAILED)


class ApplyOutcome(StrEnum):
    """What happened to a server-originated write."""

    APPLIED = "applied"
    DELETED = "deleted"
    SKIPPED_ECHO = "skipped_echo"
    SKIPPED_LOCAL_PENDING = "skipped_local_pending"
    SKIPPED_STALE = "skipped_stale"
    IGNORED = "ignored"


class EntityStateTracker:
    """Owns sync-state transitions for records in a :class:`LocalStore`."""

    def __init__(
        self,
        store: LocalStore,
        *,
        locks: KeyedLock | None = None,
        retry_policy: RetryPolicy | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._locks = locks or KeyedLock()
        self._retry = retry_policy or RetryPolicy()
        self._now = now

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def record_local_change(
        self,
        record: SyncableRecord,
        changed_fields: Iterable[str] | None = None,
    ) -> SyncableRecord:
        """
        Save a locally edited or created record and mark it pending.

        Args:
            record: The new version of the record. Its ``sync`` field is
                ignored; the stored metadata is carried forward.
            changed_fields: Remote column names that changed. Computed by
                diffing against the stored copy when omitted.

        Returns:
            The record as saved.
        """
        codec = codec_for(record.table)
        async with self._locks.hold(record.table, record.id):
            existing = await self._store.get(record.table, record.id)
            if changed_fields is not None:
                changed = frozenset(changed_fields)
                unknown = [name for name in changed if not codec.has_column(name)]
                if unknown:
                    raise ValueError(f"Unknown column(s) for {record.table}: {sorted(unknown)}")
            elif existing is not None:
                changed = codec.diff(existing, record)
            else:
                changed = codec.mutable_columns

            if existing is not None and not changed:
                return existing

            base = existing.sync if existing is not None else SyncMetadata()
            saved = record.with_sync(base.touched(changed))
            await self._store.save(saved)

        logger.debug("Local change %s/%s: %s", record.table, record.id, sorted(changed))
        return saved

    async def soft_delete(self, table: str, record_id: str) -> SyncableRecord | None:
        """Mark a record deleted locally. The row is kept until the server confirms."""
        codec = codec_for(table)
        if not codec.has_column("deleted_at"):
            raise ValueError(f"{table} does not support soft delete")
        existing = await self._store.get(table, record_id)
        if existing is None:
            return None
        return await self.record_local_change(
            replace(existing, deleted_at=self._now()), {"deleted_at"}
        )

    # ------------------------------------------------------------------
    # Upload candidates
    # ------------------------------------------------------------------

    async def dirty_records(self, table: str) -> list[SyncableRecord]:
        """Pending records plus failed ones whose backoff has elapsed."""
        now = self._now()
        records = await self._store.fetch(table, states=_DIRTY_STATES)
        return [record for record in records if self._retry.is_due(record.sync, now)]

    async def failed_records(self, table: str | None = None) -> list[SyncableRecord]:
        tables = (table,) if table else UPLOAD_ORDER
        failed: list[SyncableRecord] = []
        for name in tables:
            failed.extend(await self._store.fetch(name, states=(EntitySyncState.FAILED,)))
        return failed

    async def requeue_stale_in_flight(self) -> int:
        """Return records left ``syncing`` by an interrupted cycle to pending."""
        count = 0
        for table in UPLOAD_ORDER:
            for record in await self._store.fetch(table, states=(EntitySyncState.SYNCING,)):
                async with self._locks.hold(table, record.id):
                    current = await self._store.get(table, record.id)
                    if current is None or current.sync.state != EntitySyncState.SYNCING:
                        continue
                    await self._store.save(current.with_sync(current.sync.requeued()))
                    count += 1
        if count:
            logger.info("Requeued %d records left in flight", count)
        return count

    # ------------------------------------------------------------------
    # Upload transitions
    # ------------------------------------------------------------------

    async def mark_in_flight(self, record: SyncableRecord) -> SyncableRecord | None:
        """Move a record to ``syncing``. Returns the in-flight snapshot."""
        async with self._locks.hold(record.table, record.id):
            current = await self._store.get(record.table, record.id)
            if current is None or current.sync.state not in _DIRTY_STATES:
                return None
            snapshot = current.with_sync(current.sync.in_flight(self._now()))
            await self._store.save(snapshot)
            return snapshot

    async def acknowledge(
        self, snapshot: SyncableRecord, server_row: dict | None
    ) -> SyncableRecord | None:
        """
        Apply the server's acknowledgment of an upload.

        The server row replaces the local one. If the record was edited again
        while the upload was in flight it stays pending, keeping the newer
        local values and only the columns edited since the snapshot as dirty.
        """
        codec = codec_for(snapshot.table)
        server = None
        if server_row:
            try:
                server = codec.from_row(server_row)
            except RowDecodeError as e:
                logger.warning("Ignoring undecodable acknowledgment row: %s", e)
        server_updated_at = server.updated_at if server is not None else snapshot.updated_at

        async with self._locks.hold(snapshot.table, snapshot.id):
            current = await self._store.get(snapshot.table, snapshot.id)
            if current is None:
                logger.debug("Acknowledged %s/%s no longer exists locally", snapshot.table, snapshot.id)
                return None

            if current.sync.local_revision != snapshot.sync.local_revision:
                meta = replace(
                    current.sync,
                    state=EntitySyncState.PENDING,
                    dirty_fields=codec.diff(snapshot, current),
                    retry_count=0,
                    last_error=None,
                    last_synced_at=server_updated_at,
                )
                saved = current.with_sync(meta)
            else:
                base = server if server is not None else current
                saved = base.with_sync(current.sync.acknowledged(server_updated_at))
            await self._store.save(saved)
            return saved

    async def reject(self, snapshot: SyncableRecord, error: SyncError) -> SyncableRecord | None:
        """Record a record-level rejection (``failed``, retry count + 1)."""
        async with self._locks.hold(snapshot.table, snapshot.id):
            current = await self._store.get(snapshot.table, snapshot.id)
            if current is None:
                return None
            if current.sync.local_revision != snapshot.sync.local_revision:
                # Edited during flight; the new edit gets its own attempt.
                return current
            saved = current.with_sync(current.sync.rejected(error.message, self._now()))
            await self._store.save(saved)

        logger.warning(
            "Upload of %s/%s rejected (%s, attempt %d): %s",
            snapshot.table,
            snapshot.id,
            error.kind,
            saved.sync.retry_count,
            error.message,
        )
        return saved

    async def requeue(self, snapshot: SyncableRecord) -> None:
        """Return an in-flight record to pending after a transient failure."""
        async with self._locks.hold(snapshot.table, snapshot.id):
            current = await self._store.get(snapshot.table, snapshot.id)
            if current is None or current.sync.state != EntitySyncState.SYNCING:
                return
            await self._store.save(current.with_sync(current.sync.requeued()))

    # ------------------------------------------------------------------
    # Failed record recovery
    # ------------------------------------------------------------------

    async def reset_failed(self, tables: Iterable[str] | None = None) -> int:
        """Clear retry counters of failed records and return them to pending."""
        now = self._now()
        count = 0
        for table in tables or UPLOAD_ORDER:
            for record in await self._store.fetch(table, states=(EntitySyncState.FAILED,)):
                if await self._reset_one(record, now):
                    count += 1
        if count:
            logger.info("Reset %d failed records", count)
        return count

    async def auto_recover(self) -> int:
        """Reset exhausted records whose last reset is older than the cooldown."""
        now = self._now()
        count = 0
        for table in UPLOAD_ORDER:
            for record in await self._store.fetch(table, states=(EntitySyncState.FAILED,)):
                if self._retry.is_recoverable(record.sync, now) and await self._reset_one(
                    record, now
                ):
                    count += 1
        if count:
            logger.info("Auto-recovered %d failed records", count)
        return count

    async def _reset_one(self, record: SyncableRecord, now: datetime) -> bool:
        async with self._locks.hold(record.table, record.id):
            current = await self._store.get(record.table, record.id)
            if current is None or current.sync.state != EntitySyncState.FAILED:
                return False
            await self._store.save(current.with_sync(current.sync.reset(now)))
            return True

    # ------------------------------------------------------------------
    # Server-originated writes
    # ------------------------------------------------------------------

    async def apply_remote(
        self, record: SyncableRecord, *, own_echo: bool = False
    ) -> ApplyOutcome:
        """
        Write a server row locally with state ``synced``.

        Locally authoritative records (pending, syncing, failed) are never
        overwritten, and a row no newer than the local copy is skipped, which
        makes applying the same row twice a no-op. ``own_echo`` only changes
        how a skip is reported.
        """
        async with self._locks.hold(record.table, record.id):
            current = await self._store.get(record.table, record.id)
            if current is not None:
                if current.sync.is_locally_authoritative:
                    return _skipped(ApplyOutcome.SKIPPED_LOCAL_PENDING, own_echo)
                if current.updated_at >= record.updated_at:
                    return _skipped(ApplyOutcome.SKIPPED_STALE, own_echo)
            await self._store.save(record.with_sync(SyncMetadata.remote(record.updated_at)))
            return ApplyOutcome.APPLIED

    async def apply_remote_row(
        self,
        table: str,
        row: Mapping[str, Any],
        updated_at: datetime | None,
        *,
        own_echo: bool = False,
    ) -> ApplyOutcome:
        """
        Merge a possibly partial server row into the local copy.

        Only the columns present in ``row`` replace local values. When the
        row carries no ``updated_at`` the local timestamp is kept and the
        row is applied only if it changes a column, so a repeated event
        leaves the same state.

        Raises:
            RowDecodeError: If there is no local copy and ``row`` cannot be
                decoded on its own.
        """
        codec = codec_for(table)
        record_id = str(row["id"])
        async with self._locks.hold(table, record_id):
            current = await self._store.get(table, record_id)
            if current is None:
                await self._store.save(codec.from_row(row))
                return ApplyOutcome.APPLIED
            if current.sync.is_locally_authoritative:
                return _skipped(ApplyOutcome.SKIPPED_LOCAL_PENDING, own_echo)
            if updated_at is not None and current.updated_at >= updated_at:
                return _skipped(ApplyOutcome.SKIPPED_STALE, own_echo)

            merged = codec.merge_row(current, row)
            if updated_at is None and not codec.diff(current, merged):
                return _skipped(ApplyOutcome.SKIPPED_STALE, own_echo)
            await self._store.save(merged.with_sync(SyncMetadata.remote(merged.updated_at)))
            return ApplyOutcome.APPLIED

    async def apply_remote_delete(self, table: str, record_id: str) -> ApplyOutcome:
        """Hard-delete a record the server no longer has."""
        async with self._locks.hold(table, record_id):
            deleted = await self._store.delete(table, record_id)
        return ApplyOutcome.DELETED if deleted else ApplyOutcome.IGNORED

    async def delete_if_clean(self, table: str, record_id: str) -> bool:
        """Delete an orphaned record unless it carries local changes."""
        async with self._locks.hold(table, record_id):
            current = await self._store.get(table, record_id)
            if current is None or current.sync.is_locally_authoritative:
                return False
            if not current.sync.was_acknowledged:
                return False
            return await self._store.delete(table, record_id)


def _skipped(reason: ApplyOutcome, own_echo: bool) -> ApplyOutcome:
    return ApplyOutcome.SKIPPED_ECHO if own_echo else reason
