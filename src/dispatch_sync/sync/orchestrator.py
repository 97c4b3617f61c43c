"""Push-then-pull sync orchestration."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime

from dispatch_sync.config import CircuitBreakerSettings, SyncSettings
from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.dto.registry import UPLOAD_ORDER, codec_for
from dispatch_sync.dto.rows import RecordCodec, RowDecodeError
from dispatch_sync.remote.client import RemoteBackend
from dispatch_sync.remote.errors import SyncError, SyncErrorKind
from dispatch_sync.storage.base import LocalStore
from dispatch_sync.sync.batch_result import BatchSyncResult, CycleReport
from dispatch_sync.sync.circuit_breaker import CircuitBreaker
from dispatch_sync.sync.entity_state import ApplyOutcome, EntityStateTracker
from dispatch_sync.sync.locks import KeyedLock
from dispatch_sync.sync.retry import RetryPolicy
from dispatch_sync.sync.status import StatusStream, SyncStatus
from dispatch_sync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    One sync engine per authenticated session.

    A cycle uploads dirty records table by table (parents first), then
    downloads rows newer than each table's watermark, then advances the
    watermarks. Cycles never overlap: a sync requested while one is running
    is folded into a single re-run of the in-flight cycle.

    Usage:
        engine = SyncEngine(store, remote)
        engine.set_current_user(user_id)
        report = await engine.sync()
        engine.request_sync()   # debounced, for bursts of local edits
        await engine.shutdown()
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        *,
        settings: SyncSettings | None = None,
        breaker_settings: CircuitBreakerSettings | None = None,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._remote = remote
        self._settings = settings or SyncSettings()
        self._now = now

        breaker = breaker_settings or CircuitBreakerSettings()
        self._breaker = CircuitBreaker(
            breaker.failure_threshold,
            breaker.initial_cooldown,
            breaker.max_cooldown,
            clock=clock,
        )
        self._retry = RetryPolicy(
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_base_delay,
            max_delay=self._settings.retry_max_delay,
            auto_recovery_cooldown=self._settings.auto_recovery_cooldown,
        )
        self._locks = KeyedLock()
        self._tracker = EntityStateTracker(
            store, locks=self._locks, retry_policy=self._retry, now=now
        )
        self._status = StatusStream()

        self._current_user_id: str | None = None
        self._cycle_task: asyncio.Task[CycleReport] | None = None
        self._rerun_requested = False
        self._full_requested = False
        self._debounce_task: asyncio.Task[None] | None = None
        self._in_flight: set[tuple[str, str]] = set()
        self._last_report: CycleReport | None = None
        self._paused = False
        self._closed = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def tracker(self) -> EntityStateTracker:
        return self._tracker

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def status_stream(self) -> StatusStream:
        return self._status

    @property
    def current_user_id(self) -> str | None:
        return self._current_user_id

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    @property
    def is_syncing(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    @property
    def is_paused(self) -> bool:
        return self._paused

    def current_status(self) -> SyncStatus:
        return self._status.current

    def set_current_user(self, user_id: str | None) -> None:
        self._current_user_id = user_id

    def is_in_flight(self, table: str, record_id: str) -> bool:
        return (table, record_id) in self._in_flight

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_sync(self) -> None:
        """Schedule an incremental sync after the debounce window.

        Safe to call repeatedly: each call restarts the window. Suppressed
        while the circuit breaker is open.
        """
        if self._closed or self._paused:
            return
        if self._breaker.is_blocking:
            self._publish_breaker_open()
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced_sync())

    async def _debounced_sync(self) -> None:
        await asyncio.sleep(self._settings.debounce_seconds)
        if self._closed or self._paused:
            return
        if not self._breaker.should_allow():
            self._publish_breaker_open()
            return
        await self._run_cycle(full=False)

    async def sync(self) -> CycleReport:
        """Run one push-then-pull cycle and return its report.

        Manual calls bypass the circuit breaker.
        """
        return await self._run_cycle(full=False)

    async def full_sync(self) -> CycleReport:
        """Cycle that re-downloads every table and removes orphaned records."""
        return await self._run_cycle(full=True)

    async def reset_failed_entities(self) -> int:
        """Return every failed record to pending and request a sync."""
        count = await self._tracker.reset_failed()
        self.request_sync()
        return count

    async def auto_recover_failed_entities(self) -> int:
        """Reset exhausted records whose last reset is older than the cooldown."""
        return await self._tracker.auto_recover()

    def pause(self) -> None:
        """Stop starting new syncs. An in-flight cycle is allowed to finish."""
        self._paused = True
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()

    def resume(self) -> None:
        self._paused = False

    async def shutdown(self) -> None:
        """Cancel pending requests and wait for the in-flight cycle."""
        self._closed = True
        debounce = self._debounce_task
        if debounce is not None and not debounce.done():
            debounce.cancel()
            try:
                await debounce
            except asyncio.CancelledError:
                pass
        if self._cycle_task is not None:
            await asyncio.gather(self._cycle_task, return_exceptions=True)
        self._status.close()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, *, full: bool) -> CycleReport:
        if self._closed:
            raise RuntimeError("Sync engine is shut down")
        if self.is_syncing:
            assert self._cycle_task is not None
            self._rerun_requested = True
            self._full_requested = self._full_requested or full
            logger.debug("Sync already in flight, queued a re-run")
        else:
            self._cycle_task = asyncio.create_task(self._cycle_loop(full))
        # Shielded so a cancelled caller never aborts a cycle mid-write.
        return await asyncio.shield(self._cycle_task)

    async def _cycle_loop(self, full: bool) -> CycleReport:
        while True:
            self._rerun_requested = False
            self._full_requested = False
            report = await self._execute_cycle(full=full)
            if not self._rerun_requested:
                return report
            full = self._full_requested

    async def _execute_cycle(self, *, full: bool) -> CycleReport:
        report = CycleReport(full=full, started_at=self._now())
        self._status.publish(SyncStatus.syncing())
        logger.info("Starting %s sync", "full" if full else "incremental")

        try:
            await self._tracker.requeue_stale_in_flight()
            upload_error = await self._upload_all(report)
            if upload_error is not None:
                raise upload_error
            watermarks = await self._download_all(report, full=full)
            if full:
                await self._reconcile_orphans(report)
            async with self._store.transaction():
                for table, value in watermarks.items():
                    await self._store.set_watermark(table, value)
        except SyncError as e:
            report.error = e
        except Exception as e:
            logger.error("Unexpected sync failure", exc_info=True)
            report.error = SyncError.from_exception(e)

        report.finished_at = self._now()
        self._last_report = report
        self._finish(report)
        return report

    def _finish(self, report: CycleReport) -> None:
        if report.error is not None:
            self._breaker.record_failure()
            logger.warning("Sync failed: %s", report.error.message)
            if self._breaker.is_blocking:
                self._publish_breaker_open()
            else:
                self._status.publish(SyncStatus.error(report.error.user_message))
            return

        self._breaker.record_success()
        failed = len(report.failed_records)
        logger.info(
            "Sync finished: %d uploaded, %d downloaded, %d failed",
            report.uploaded_count,
            report.downloaded_count,
            failed,
        )
        message = f"{failed} item(s) could not be synced" if failed else None
        self._status.publish(SyncStatus.ok(message))

    def _publish_breaker_open(self) -> None:
        remaining = self._breaker.remaining_cooldown
        logger.info("Automatic sync suppressed, circuit breaker open for %.0fs", remaining)
        self._status.publish(SyncStatus.circuit_breaker_open(remaining))

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def _upload_all(self, report: CycleReport) -> SyncError | None:
        """Upload every table in dependency order.

        Returns the first transient error, after which later tables are not
        attempted in this cycle.
        """
        for table in UPLOAD_ORDER:
            result = await self._upload_table(table)
            if result.total:
                report.uploads[table] = result
                logger.debug("Upload %s", result.summary)
            if result.transient_failures:
                return result.transient_failures[0][1]
        return None

    async def _upload_table(self, table: str) -> BatchSyncResult:
        result = BatchSyncResult(table=table)
        candidates = await self._tracker.dirty_records(table)
        if not candidates:
            return result

        codec = codec_for(table)
        ready: list[SyncableRecord] = []
        for record in candidates:
            if await self._has_unsynced_parent(codec, record):
                result.deferred.append(record.id)
            else:
                ready.append(record)

        semaphore = asyncio.Semaphore(self._settings.upload_concurrency)
        outcomes = await asyncio.gather(
            *(self._upload_one(codec, record, semaphore) for record in ready)
        )
        for record_id, error in outcomes:
            if error is None:
                result.succeeded.append(record_id)
            else:
                result.failed.append((record_id, error))
        return result

    async def _has_unsynced_parent(self, codec: RecordCodec, record: SyncableRecord) -> bool:
        """True if a referenced parent exists locally but never reached the server."""
        for parent_table, parent_id in codec.parent_keys(record):
            parent = await self._store.get(parent_table, parent_id)
            if parent is not None and not parent.sync.was_acknowledged:
                logger.debug(
                    "Deferring %s/%s until %s/%s is uploaded",
                    codec.table,
                    record.id,
                    parent_table,
                    parent_id,
                )
                return True
        return False

    async def _upload_one(
        self, codec: RecordCodec, record: SyncableRecord, semaphore: asyncio.Semaphore
    ) -> tuple[str, SyncError | None]:
        async with semaphore:
            snapshot = await self._tracker.mark_in_flight(record)
            if snapshot is None:
                return record.id, None
            key = (codec.table, snapshot.id)
            self._in_flight.add(key)
            try:
                server_row = await self._send(codec, snapshot)
            except asyncio.CancelledError:
                await self._tracker.requeue(snapshot)
                raise
            except Exception as e:
                error = SyncError.from_exception(e, table=codec.table)
                if error.is_record_level:
                    await self._tracker.reject(snapshot, error)
                else:
                    logger.info(
                        "Upload of %s/%s interrupted: %s", codec.table, snapshot.id, error.message
                    )
                    await self._tracker.requeue(snapshot)
                return snapshot.id, error
            finally:
                self._in_flight.discard(key)

            try:
                await self._tracker.acknowledge(snapshot, server_row)
            except RowDecodeError as e:
                error = SyncError(SyncErrorKind.DECODING_FAILED, str(e), table=codec.table)
                await self._tracker.reject(snapshot, error)
                return snapshot.id, error
            return snapshot.id, None

    async def _send(self, codec: RecordCodec, snapshot: SyncableRecord) -> dict | None:
        """One bounded round-trip: full row for new records, dirty columns otherwise."""
        async with asyncio.timeout(self._settings.request_timeout):
            if not snapshot.sync.was_acknowledged:
                return await self._remote.upsert(codec.table, codec.to_row(snapshot))
            fields = snapshot.sync.dirty_fields
            if not fields:
                return None
            return await self._remote.update(
                codec.table, snapshot.id, codec.to_patch(snapshot, fields)
            )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def _download_all(self, report: CycleReport, *, full: bool) -> dict[str, datetime]:
        """Download changed rows of every table. Returns the new watermarks."""
        watermarks: dict[str, datetime] = {}
        page_size = self._settings.download_page_size
        for table in UPLOAD_ORDER:
            codec = codec_for(table)
            since = None if full else await self._store.get_watermark(table)
            newest = since
            applied = 0
            offset = 0
            while True:
                try:
                    async with asyncio.timeout(self._settings.request_timeout):
                        rows = await self._remote.fetch_changed(
                            table, since, limit=page_size, offset=offset
                        )
                except Exception as e:
                    raise SyncError.from_exception(e, table=table) from e

                for row in rows:
                    try:
                        record = codec.from_row(row)
                    except RowDecodeError:
                        logger.warning("Skipping undecodable %s row: %r", table, row)
                        continue
                    if await self._tracker.apply_remote(record) == ApplyOutcome.APPLIED:
                        applied += 1
                    if newest is None or record.updated_at > newest:
                        newest = record.updated_at

                if len(rows) < page_size:
                    break
                offset += len(rows)

            report.downloaded[table] = applied
            if newest is not None and newest != since:
                watermarks[table] = newest
        return watermarks

    async def _reconcile_orphans(self, report: CycleReport) -> None:
        """Delete local records the server no longer has (children first)."""
        for table in reversed(UPLOAD_ORDER):
            try:
                async with asyncio.timeout(self._settings.request_timeout):
                    remote_ids = await self._remote.fetch_ids(table)
            except Exception as e:
                raise SyncError.from_exception(e, table=table) from e

            removed = 0
            for record_id in await self._store.all_ids(table) - remote_ids:
                if await self._tracker.delete_if_clean(table, record_id):
                    removed += 1
            if removed:
                logger.info("Removed %d orphaned %s", removed, table)
                report.orphans_removed[table] = removed
