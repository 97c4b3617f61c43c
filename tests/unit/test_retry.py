"""Tests for retry backoff, per-record locks and the status stream."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata
from dispatch_sync.sync.locks import KeyedLock
from dispatch_sync.sync.retry import RetryPolicy
from dispatch_sync.sync.status import StatusStream, SyncStatus, SyncStatusKind

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _failed(retry_count: int, *, attempt_ago: float = 0.0, reset_ago: float | None = None) -> SyncMetadata:
    return SyncMetadata(
        state=EntitySyncState.FAILED,
        retry_count=retry_count,
        last_attempt_at=NOW - timedelta(seconds=attempt_ago),
        last_reset_at=None if reset_ago is None else NOW - timedelta(seconds=reset_ago),
    )


# ── RetryPolicy ───────────────────────────────────────────────────────────────


class TestRetryPolicy:
    def test_delay_doubles_and_caps(self) -> None:
        policy = RetryPolicy()
        assert policy.delay(0) == 0.0
        assert policy.delay(1) == 2.0
        assert policy.delay(3) == 8.0
        assert policy.delay(10) == 30.0

    def test_pending_is_due(self) -> None:
        assert RetryPolicy().is_due(SyncMetadata(), NOW)

    def test_synced_is_not_due(self) -> None:
        assert not RetryPolicy().is_due(SyncMetadata.remote(NOW), NOW)

    def test_failed_waits_for_backoff(self) -> None:
        policy = RetryPolicy()
        assert not policy.is_due(_failed(2, attempt_ago=3.0), NOW)
        assert policy.is_due(_failed(2, attempt_ago=4.0), NOW)

    def test_exhausted_never_due(self) -> None:
        policy = RetryPolicy(max_retries=5)
        meta = _failed(5, attempt_ago=3600.0)
        assert policy.is_exhausted(meta)
        assert not policy.is_due(meta, NOW)

    def test_recoverable_after_cooldown(self) -> None:
        policy = RetryPolicy(max_retries=5, auto_recovery_cooldown=3600.0)
        assert policy.is_recoverable(_failed(5), NOW)
        assert not policy.is_recoverable(_failed(5, reset_ago=60.0), NOW)
        assert policy.is_recoverable(_failed(5, reset_ago=3600.0), NOW)

    def test_not_exhausted_not_recoverable(self) -> None:
        assert not RetryPolicy().is_recoverable(_failed(1), NOW)


# ── KeyedLock ─────────────────────────────────────────────────────────────────


class TestKeyedLock:
    async def test_same_key_serialized(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("tasks", "t-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_different_keys_concurrent(self) -> None:
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("tasks", "t-1"):
                await asyncio.wait_for(entered.wait(), timeout=1.0)

        async def other() -> None:
            async with locks.hold("tasks", "t-2"):
                entered.set()

        await asyncio.gather(holder(), other())

    async def test_entries_released(self) -> None:
        locks = KeyedLock()
        async with locks.hold("tasks", "t-1"):
            assert locks.is_held("tasks", "t-1")
            assert len(locks) == 1
        assert not locks.is_held("tasks", "t-1")
        assert len(locks) == 0


# ── StatusStream ──────────────────────────────────────────────────────────────


class TestStatusStream:
    def test_initially_idle(self) -> None:
        assert StatusStream().current.kind == SyncStatusKind.IDLE

    async def test_subscribers_receive_transitions(self) -> None:
        stream = StatusStream()
        subscription = stream.subscribe()
        stream.publish(SyncStatus.syncing())
        stream.publish(SyncStatus.ok())
        stream.close()

        kinds = [status.kind async for status in subscription]
        assert kinds == [SyncStatusKind.SYNCING, SyncStatusKind.OK]
        assert stream.current.kind == SyncStatusKind.OK

    async def test_subscribe_after_close_ends_immediately(self) -> None:
        stream = StatusStream()
        stream.close()
        assert [status async for status in stream.subscribe()] == []

    async def test_closed_subscription_stops_receiving(self) -> None:
        stream = StatusStream()
        subscription = stream.subscribe()
        subscription.close()
        stream.publish(SyncStatus.syncing())
        assert [status async for status in subscription] == []

    def test_circuit_breaker_status_carries_remaining(self) -> None:
        status = SyncStatus.circuit_breaker_open(42.4)
        assert status.kind == SyncStatusKind.CIRCUIT_BREAKER_OPEN
        assert status.seconds_remaining == 42.4
        assert status.message == "Waiting 42s before retrying"
