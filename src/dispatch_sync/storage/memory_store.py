"""In-memory local store for tests and previews."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Collection, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.core.sync_state import EntitySyncState
from dispatch_sync.dto.registry import codec_for
from dispatch_sync.storage.base import LocalStore

_Tables = dict[str, dict[str, SyncableRecord]]


class InMemoryStore(LocalStore):
    """
    Dict-backed :class:`LocalStore`.

    Records are immutable, so the store keeps references rather than copies.
    A transaction works on a staged copy of the tables that only the owning
    task sees; it replaces the committed tables on success.
    """

    def __init__(self) -> None:
        self._tables: _Tables = {}
        self._watermarks: dict[str, datetime] = {}
        self._staged: _Tables | None = None
        self._staged_watermarks: dict[str, datetime] | None = None
        self._tx_owner: asyncio.Task[Any] | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def _in_own_transaction(self) -> bool:
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    def _view(self) -> tuple[_Tables, dict[str, datetime]]:
        if self._in_own_transaction():
            assert self._staged is not None and self._staged_watermarks is not None
            return self._staged, self._staged_watermarks
        return self._tables, self._watermarks

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[tuple[_Tables, dict[str, datetime]]]:
        if self._in_own_transaction():
            yield self._view()
            return
        async with self._write_lock:
            yield self._tables, self._watermarks

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_own_transaction():
            yield
            return
        async with self._write_lock:
            self._tx_owner = asyncio.current_task()
            self._staged = {table: dict(rows) for table, rows in self._tables.items()}
            self._staged_watermarks = dict(self._watermarks)
            try:
                yield
                self._tables = self._staged
                self._watermarks = self._staged_watermarks
            finally:
                self._tx_owner = None
                self._staged = None
                self._staged_watermarks = None

    async def get(self, table: str, record_id: str) -> SyncableRecord | None:
        tables, _ = self._view()
        return tables.get(table, {}).get(record_id)

    async def save(self, record: SyncableRecord) -> None:
        async with self._writing() as (tables, _):
            tables.setdefault(record.table, {})[record.id] = record

    async def save_many(self, records: Iterable[SyncableRecord]) -> None:
        async with self._writing() as (tables, _):
            for record in records:
                tables.setdefault(record.table, {})[record.id] = record

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._writing() as (tables, _):
            return tables.get(table, {}).pop(record_id, None) is not None

    async def fetch(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        updated_after: datetime | None = None,
        states: Collection[EntitySyncState] | None = None,
    ) -> list[SyncableRecord]:
        tables, _ = self._view()
        records = list(tables.get(table, {}).values())
        if states is not None:
            records = [r for r in records if r.sync.state in states]
        if updated_after is not None:
            records = [r for r in records if r.updated_at > updated_after]
        if where:
            codec = codec_for(table)
            records = [
                r
                for r in records
                if all(codec.to_row(r).get(key) == value for key, value in where.items())
            ]
        return sorted(records, key=lambda r: (r.updated_at, r.id))

    async def all_ids(self, table: str) -> set[str]:
        tables, _ = self._view()
        return set(tables.get(table, {}))

    async def get_watermark(self, table: str) -> datetime | None:
        _, watermarks = self._view()
        return watermarks.get(table)

    async def set_watermark(self, table: str, value: datetime) -> None:
        async with self._writing() as (_, watermarks):
            watermarks[table] = value

    async def clear_watermarks(self) -> None:
        async with self._writing() as (_, watermarks):
            watermarks.clear()
