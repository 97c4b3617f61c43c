"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from dispatch_sync.config import CircuitBreakerSettings, SyncSettings
from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.dto.enums import reset_unknown_variant_log
from dispatch_sync.dto.registry import codec_for
from dispatch_sync.remote.errors import RemoteError
from dispatch_sync.storage.memory_store import InMemoryStore
from dispatch_sync.sync.orchestrator import SyncEngine
from dispatch_sync.utils.timeutils import format_timestamp, parse_timestamp, utcnow


class FakeRemote:
    """
    In-memory stand-in for the PostgREST backend.

    Upserts and patches merge column by column into the stored row, and the
    server stamps ``updated_at`` from its own monotonic clock, like the real
    trigger does. Failures can be injected per call (``fail_next``) or per
    record (``reject``), and ``delay`` slows every round-trip.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.fail_next: list[BaseException] = []
        self.reject: dict[str, BaseException] = {}
        self.fetch_error: BaseException | None = None
        self.rpc_results: dict[str, Any] = {}
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []
        self.delay = 0.0
        self._clock = utcnow()

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return format_timestamp(self._clock)

    async def _respond(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    def _check_failure(self, record_id: str) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)
        if record_id in self.reject:
            raise self.reject[record_id]

    # ========== RemoteBackend ==========

    async def upsert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("upsert", table, dict(row)))
        await self._respond()
        self._check_failure(row["id"])
        stored = self.tables[table].get(row["id"], {})
        merged = {**stored, **row, "updated_at": self.tick()}
        self.tables[table][row["id"]] = merged
        return dict(merged)

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", table, dict(patch)))
        await self._respond()
        self._check_failure(record_id)
        stored = self.tables[table].get(record_id)
        if stored is None:
            raise RemoteError("Row not found", status_code=404, code="PGRST116")
        changes = {key: value for key, value in patch.items() if key != "id"}
        merged = {**stored, **changes, "updated_at": self.tick()}
        self.tables[table][record_id] = merged
        return dict(merged)

    async def fetch_changed(
        self, table: str, since: datetime | None, *, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        await self._respond()
        if self.fetch_error is not None:
            raise self.fetch_error
        rows = sorted(self.tables[table].values(), key=lambda r: (r["updated_at"], r["id"]))
        if since is not None:
            rows = [r for r in rows if parse_timestamp(r["updated_at"]) > since]
        return [dict(r) for r in rows[offset : offset + limit]]

    async def fetch_ids(self, table: str) -> set[str]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return set(self.tables[table])

    async def fetch_rows(
        self,
        table: str,
        *,
        filters: Mapping[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = list(self.tables[table].values())
        for key, condition in (filters or {}).items():
            value = condition.removeprefix("eq.")
            rows = [r for r in rows if str(r.get(key)) == value]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=direction == "desc")
        return [dict(r) for r in rows[:limit]]

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        self.rpc_calls.append((name, dict(params)))
        result = self.rpc_results.get(name)
        if isinstance(result, BaseException):
            raise result
        return result

    # ========== Server-side helpers ==========

    def seed(self, record: SyncableRecord) -> dict[str, Any]:
        """Store a record as if another device had uploaded it."""
        row = codec_for(record.table).to_row(record)
        row["updated_at"] = self.tick()
        self.tables[record.table][record.id] = row
        return dict(row)

    def server_edit(self, table: str, record_id: str, **changes: Any) -> dict[str, Any]:
        row = self.tables[table][record_id]
        row.update(changes)
        row["updated_at"] = self.tick()
        return dict(row)

    def server_delete(self, table: str, record_id: str) -> None:
        del self.tables[table][record_id]

    def uploads(self, table: str | None = None) -> list[tuple[str, str, dict[str, Any]]]:
        return [call for call in self.calls if table is None or call[1] == table]


class FakeChannel:
    """Broadcast channel fed from a queue. ``None`` ends the stream."""

    def __init__(self, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("refused")
        self.connected = True

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


class ChannelFactory:
    """Creates a fresh :class:`FakeChannel` per subscription and keeps them all."""

    def __init__(self) -> None:
        self.fail_connect = False
        self.created: list[FakeChannel] = []

    def __call__(self) -> FakeChannel:
        channel = FakeChannel(fail_connect=self.fail_connect)
        self.created.append(channel)
        return channel

    @property
    def latest(self) -> FakeChannel:
        return self.created[-1]


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_enum_warnings() -> None:
    reset_unknown_variant_log()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def channels() -> ChannelFactory:
    return ChannelFactory()


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Fast settings: tiny debounce, no retry backoff."""
    return SyncSettings(debounce_seconds=0.01, retry_base_delay=0.0, request_timeout=5.0)


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[InMemoryStore, None]:
    memory_store = InMemoryStore()
    await memory_store.initialize()
    yield memory_store
    await memory_store.close()


@pytest_asyncio.fixture
async def engine(
    store: InMemoryStore,
    remote: FakeRemote,
    sync_settings: SyncSettings,
    clock: FakeClock,
) -> AsyncGenerator[SyncEngine, None]:
    sync_engine = SyncEngine(
        store,
        remote,
        settings=sync_settings,
        breaker_settings=CircuitBreakerSettings(),
        clock=clock,
    )
    sync_engine.set_current_user("user-me")
    yield sync_engine
    await sync_engine.shutdown()
