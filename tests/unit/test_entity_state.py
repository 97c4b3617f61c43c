"""Tests for EntityStateTracker transitions."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from dispatch_sync.core.enums import TaskStatus
from dispatch_sync.core.records import TaskAssignment, TaskItem
from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata
from dispatch_sync.dto.registry import codec_for
from dispatch_sync.remote.errors import SyncError, SyncErrorKind
from dispatch_sync.storage.memory_store import InMemoryStore
from dispatch_sync.sync.entity_state import ApplyOutcome, EntityStateTracker
from dispatch_sync.sync.retry import RetryPolicy

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

# ── Helpers ───────────────────────────────────────────────────────────────────


class _Now:
    def __init__(self) -> None:
        self.value = T0

    def __call__(self) -> datetime:
        return self.value


def _make_tracker(store: InMemoryStore, now: _Now | None = None, **retry: float) -> EntityStateTracker:
    return EntityStateTracker(
        store,
        retry_policy=RetryPolicy(**retry),  # type: ignore[arg-type]
        now=now or _Now(),
    )


def _synced_task(record_id: str = "t-1", *, minutes: int = 0, **fields: object) -> TaskItem:
    updated_at = T0 + timedelta(minutes=minutes)
    return TaskItem(
        id=record_id,
        title="Order sign",
        updated_at=updated_at,
        sync=SyncMetadata.remote(updated_at),
        **fields,  # type: ignore[arg-type]
    )


def _server_row(record: TaskItem, *, minutes: int, **changes: object) -> dict[str, object]:
    row = codec_for("tasks").to_row(record)
    row.update(changes)
    row["updated_at"] = (T0 + timedelta(minutes=minutes)).isoformat()
    return row


# ── Local changes ─────────────────────────────────────────────────────────────


class TestRecordLocalChange:
    async def test_new_record_dirty_on_every_mutable_column(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        saved = await tracker.record_local_change(TaskItem(title="Call seller"))

        assert saved.sync.state == EntitySyncState.PENDING
        assert saved.sync.dirty_fields == codec_for("tasks").mutable_columns
        assert saved.sync.local_revision == 1
        assert not saved.sync.was_acknowledged

    async def test_edit_marks_only_changed_columns(self, store: InMemoryStore) -> None:
        await store.save(_synced_task())
        tracker = _make_tracker(store)

        saved = await tracker.record_local_change(
            replace(_synced_task(), status=TaskStatus.COMPLETED, description="done")
        )

        assert saved.sync.dirty_fields == {"status", "description"}
        assert saved.sync.was_acknowledged

    async def test_clearing_a_field_is_a_change(self, store: InMemoryStore) -> None:
        await store.save(_synced_task(description="old"))
        tracker = _make_tracker(store)

        saved = await tracker.record_local_change(_synced_task(description=None))

        assert saved.sync.dirty_fields == {"description"}

    async def test_no_change_keeps_record(self, store: InMemoryStore) -> None:
        await store.save(_synced_task())
        tracker = _make_tracker(store)

        saved = await tracker.record_local_change(_synced_task())

        assert saved.sync.state == EntitySyncState.SYNCED

    async def test_explicit_fields_validated(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        with pytest.raises(ValueError, match="Unknown column"):
            await tracker.record_local_change(TaskItem(), {"not_a_column"})

    async def test_soft_delete(self, store: InMemoryStore) -> None:
        await store.save(_synced_task())
        now = _Now()
        tracker = _make_tracker(store, now)

        saved = await tracker.soft_delete("tasks", "t-1")

        assert saved is not None
        assert saved.deleted_at == T0
        assert saved.sync.dirty_fields == {"deleted_at"}

    async def test_soft_delete_missing_record(self, store: InMemoryStore) -> None:
        assert await _make_tracker(store).soft_delete("tasks", "nope") is None

    async def test_soft_delete_unsupported_table(self, store: InMemoryStore) -> None:
        await store.save(TaskAssignment(id="a-1", task_id="t-1", user_id="u-1"))
        with pytest.raises(ValueError, match="soft delete"):
            await _make_tracker(store).soft_delete("task_assignees", "a-1")


# ── Upload transitions ────────────────────────────────────────────────────────


class TestUploadTransitions:
    async def test_acknowledge_applies_server_row(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(_synced_task(description="mine"), {"description"})
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None
        assert snapshot.sync.state == EntitySyncState.SYNCING

        saved = await tracker.acknowledge(snapshot, _server_row(snapshot, minutes=5))

        assert saved is not None
        assert saved.sync.state == EntitySyncState.SYNCED
        assert saved.sync.dirty_fields == frozenset()
        assert saved.updated_at == T0 + timedelta(minutes=5)
        assert saved.sync.last_synced_at == saved.updated_at
        assert saved.description == "mine"

    async def test_edit_during_flight_stays_pending(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(replace(_synced_task(), title="a"), {"title"})
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None

        await tracker.record_local_change(replace(snapshot, description="typed meanwhile"))
        saved = await tracker.acknowledge(snapshot, _server_row(snapshot, minutes=5))

        assert saved is not None
        assert saved.sync.state == EntitySyncState.PENDING
        assert saved.sync.dirty_fields == {"description"}
        assert saved.description == "typed meanwhile"
        assert saved.sync.was_acknowledged

    async def test_acknowledge_of_deleted_record(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(TaskItem(title="x"))
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None
        await store.delete("tasks", local.id)

        assert await tracker.acknowledge(snapshot, None) is None

    async def test_mark_in_flight_skips_synced(self, store: InMemoryStore) -> None:
        await store.save(_synced_task())
        assert await _make_tracker(store).mark_in_flight(_synced_task()) is None

    async def test_reject_increments_retry(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(TaskItem(title="x"))
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None

        saved = await tracker.reject(snapshot, SyncError(SyncErrorKind.CONFLICT, "dup"))

        assert saved is not None
        assert saved.sync.state == EntitySyncState.FAILED
        assert saved.sync.retry_count == 1
        assert saved.sync.last_error == "dup"

    async def test_reject_after_new_edit_leaves_record_pending(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(TaskItem(title="x"))
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None
        await tracker.record_local_change(replace(snapshot, title="y"))

        saved = await tracker.reject(snapshot, SyncError(SyncErrorKind.CONFLICT))

        assert saved is not None
        assert saved.sync.state == EntitySyncState.PENDING
        assert saved.sync.retry_count == 0

    async def test_requeue_returns_to_pending(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        local = await tracker.record_local_change(TaskItem(title="x"))
        snapshot = await tracker.mark_in_flight(local)
        assert snapshot is not None

        await tracker.requeue(snapshot)

        current = await store.get("tasks", local.id)
        assert current is not None
        assert current.sync.state == EntitySyncState.PENDING
        assert current.sync.retry_count == 0

    async def test_requeue_stale_in_flight(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        for record_id in ("a", "b"):
            local = await tracker.record_local_change(TaskItem(id=record_id))
            await tracker.mark_in_flight(local)

        assert await tracker.requeue_stale_in_flight() == 2
        assert {r.id for r in await tracker.dirty_records("tasks")} == {"a", "b"}


# ── Retry & recovery ──────────────────────────────────────────────────────────


class TestFailedRecords:
    async def _fail(self, tracker: EntityStateTracker, record_id: str, times: int) -> None:
        for _ in range(times):
            current = await tracker.store.get("tasks", record_id)
            assert current is not None
            snapshot = current.with_sync(current.sync.in_flight(T0))
            await tracker.store.save(snapshot)
            await tracker.reject(snapshot, SyncError(SyncErrorKind.INVALID_DATA))

    async def test_dirty_records_respects_backoff(self, store: InMemoryStore) -> None:
        now = _Now()
        tracker = _make_tracker(store, now, base_delay=1.0)
        await tracker.record_local_change(TaskItem(id="t-1"))
        await self._fail(tracker, "t-1", 1)

        assert await tracker.dirty_records("tasks") == []
        now.value = T0 + timedelta(seconds=2)
        assert [r.id for r in await tracker.dirty_records("tasks")] == ["t-1"]

    async def test_exhausted_records_excluded(self, store: InMemoryStore) -> None:
        now = _Now()
        tracker = _make_tracker(store, now, max_retries=2, base_delay=0.0)
        await tracker.record_local_change(TaskItem(id="t-1"))
        await self._fail(tracker, "t-1", 2)

        now.value = T0 + timedelta(days=1)
        assert await tracker.dirty_records("tasks") == []
        assert [r.id for r in await tracker.failed_records()] == ["t-1"]

    async def test_reset_failed(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store, max_retries=2, base_delay=0.0)
        await tracker.record_local_change(TaskItem(id="t-1"))
        await self._fail(tracker, "t-1", 2)

        assert await tracker.reset_failed(["tasks"]) == 1
        current = await store.get("tasks", "t-1")
        assert current is not None
        assert current.sync.state == EntitySyncState.PENDING
        assert current.sync.retry_count == 0
        assert current.sync.last_reset_at == T0

    async def test_auto_recover_honours_cooldown(self, store: InMemoryStore) -> None:
        now = _Now()
        tracker = _make_tracker(
            store, now, max_retries=1, base_delay=0.0, auto_recovery_cooldown=3600.0
        )
        await tracker.record_local_change(TaskItem(id="t-1"))
        await self._fail(tracker, "t-1", 1)

        assert await tracker.auto_recover() == 1
        await self._fail(tracker, "t-1", 1)
        now.value = T0 + timedelta(minutes=30)
        assert await tracker.auto_recover() == 0
        now.value = T0 + timedelta(hours=1)
        assert await tracker.auto_recover() == 1


# ── Server-originated writes ──────────────────────────────────────────────────


class TestApplyRemote:
    async def test_new_record_applied(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        outcome = await tracker.apply_remote(_synced_task())
        assert outcome == ApplyOutcome.APPLIED
        current = await store.get("tasks", "t-1")
        assert current is not None
        assert current.sync.state == EntitySyncState.SYNCED

    async def test_applying_twice_is_noop(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await tracker.apply_remote(_synced_task(minutes=1))
        assert await tracker.apply_remote(_synced_task(minutes=1)) == ApplyOutcome.SKIPPED_STALE

    async def test_newer_row_replaces(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await tracker.apply_remote(_synced_task(minutes=1))
        newer = replace(_synced_task(minutes=2), title="Renamed")
        assert await tracker.apply_remote(newer) == ApplyOutcome.APPLIED
        current = await store.get("tasks", "t-1")
        assert current is not None
        assert current.title == "Renamed"

    async def test_older_row_skipped(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await tracker.apply_remote(_synced_task(minutes=5))
        assert await tracker.apply_remote(_synced_task(minutes=1)) == ApplyOutcome.SKIPPED_STALE

    async def test_pending_local_not_overwritten(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await store.save(_synced_task())
        await tracker.record_local_change(_synced_task(description="mine"))

        outcome = await tracker.apply_remote(replace(_synced_task(minutes=10), description="theirs"))

        assert outcome == ApplyOutcome.SKIPPED_LOCAL_PENDING
        current = await store.get("tasks", "t-1")
        assert current is not None
        assert current.description == "mine"
        assert current.sync.state == EntitySyncState.PENDING

    async def test_own_echo_reported_as_echo(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await tracker.record_local_change(TaskItem(id="t-1"))
        outcome = await tracker.apply_remote(_synced_task(minutes=10), own_echo=True)
        assert outcome == ApplyOutcome.SKIPPED_ECHO

    async def test_own_echo_newer_than_synced_copy_applied(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await store.save(_synced_task(minutes=1))
        outcome = await tracker.apply_remote(_synced_task(minutes=2), own_echo=True)
        assert outcome == ApplyOutcome.APPLIED

    async def test_remote_delete(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await store.save(_synced_task())
        assert await tracker.apply_remote_delete("tasks", "t-1") == ApplyOutcome.DELETED
        assert await tracker.apply_remote_delete("tasks", "t-1") == ApplyOutcome.IGNORED


class TestDeleteIfClean:
    async def test_synced_record_deleted(self, store: InMemoryStore) -> None:
        await store.save(_synced_task())
        assert await _make_tracker(store).delete_if_clean("tasks", "t-1")
        assert await store.get("tasks", "t-1") is None

    async def test_pending_record_kept(self, store: InMemoryStore) -> None:
        tracker = _make_tracker(store)
        await tracker.record_local_change(TaskItem(id="t-1"))
        assert not await tracker.delete_if_clean("tasks", "t-1")

    async def test_missing_record(self, store: InMemoryStore) -> None:
        assert not await _make_tracker(store).delete_if_clean("tasks", "nope")
