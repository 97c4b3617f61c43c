"""SQLite-backed local store."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Collection, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata
from dispatch_sync.dto.registry import codec_for
from dispatch_sync.storage.base import LocalStore
from dispatch_sync.utils.timeutils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    table_name TEXT NOT NULL,
    id TEXT NOT NULL,
    row TEXT NOT NULL,
    sync_state TEXT NOT NULL,
    sync TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (table_name, id)
);
CREATE INDEX IF NOT EXISTS idx_records_state ON records(table_name, sync_state);
CREATE INDEX IF NOT EXISTS idx_records_updated ON records(table_name, updated_at);

CREATE TABLE IF NOT EXISTS watermarks (
    table_name TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteStore(LocalStore):
    """
    :class:`LocalStore` persisted in a single SQLite file.

    Each record is stored as its remote row (JSON) plus its sync metadata.
    The writer connection runs in WAL mode; a second connection serves
    readers so they only ever see committed transactions.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path).resolve()
        self._conn: aiosqlite.Connection | None = None
        self._read_conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._tx_owner: asyncio.Task[Any] | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open both connections and create the schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        await self._conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        await self._conn.executescript(SCHEMA)
        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self._conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        elif row["version"] > SCHEMA_VERSION:
            logger.warning(
                "Database %s has schema version %d, newer than supported %d",
                self._db_path,
                row["version"],
                SCHEMA_VERSION,
            )
        await self._conn.commit()

        self._read_conn = await aiosqlite.connect(self._db_path)
        self._read_conn.row_factory = aiosqlite.Row

    async def close(self) -> None:
        if self._read_conn:
            await self._read_conn.close()
            self._read_conn = None
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    def _in_own_transaction(self) -> bool:
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    def _ensure_read_conn(self) -> aiosqlite.Connection:
        """Reader connection, or the writer inside the caller's own transaction."""
        if self._in_own_transaction() or self._read_conn is None:
            return self._ensure_conn()
        return self._read_conn

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._in_own_transaction():
            yield self._ensure_conn()
            return
        async with self._write_lock:
            conn = self._ensure_conn()
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_own_transaction():
            yield
            return
        async with self._write_lock:
            conn = self._ensure_conn()
            self._tx_owner = asyncio.current_task()
            try:
                yield
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()
            finally:
                self._tx_owner = None

    # ========== Records ==========

    async def get(self, table: str, record_id: str) -> SyncableRecord | None:
        conn = self._ensure_read_conn()
        async with conn.execute(
            "SELECT * FROM records WHERE table_name = ? AND id = ?", (table, record_id)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(table, row) if row else None

    async def save(self, record: SyncableRecord) -> None:
        async with self._writing() as conn:
            await _upsert(conn, record)

    async def save_many(self, records: Iterable[SyncableRecord]) -> None:
        async with self._writing() as conn:
            for record in records:
                await _upsert(conn, record)

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._writing() as conn:
            cursor = await conn.execute(
                "DELETE FROM records WHERE table_name = ? AND id = ?", (table, record_id)
            )
            return cursor.rowcount > 0

    async def fetch(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        updated_after: datetime | None = None,
        states: Collection[EntitySyncState] | None = None,
    ) -> list[SyncableRecord]:
        clauses = ["table_name = ?"]
        params: list[Any] = [table]
        if states is not None:
            if not states:
                return []
            clauses.append(f"sync_state IN ({', '.join('?' for _ in states)})")
            params.extend(state.value for state in states)
        if updated_after is not None:
            clauses.append("updated_at > ?")
            params.append(format_timestamp(updated_after))
        for key, value in (where or {}).items():
            if not codec_for(table).has_column(key):
                raise ValueError(f"Unknown column {table}.{key}")
            if value is None:
                clauses.append(f"json_extract(row, '$.{key}') IS NULL")
            else:
                clauses.append(f"json_extract(row, '$.{key}') = ?")
                params.append(value)

        conn = self._ensure_read_conn()
        query = f"SELECT * FROM records WHERE {' AND '.join(clauses)} ORDER BY updated_at, id"
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_record(table, row) for row in rows]

    async def all_ids(self, table: str) -> set[str]:
        conn = self._ensure_read_conn()
        async with conn.execute(
            "SELECT id FROM records WHERE table_name = ?", (table,)
        ) as cursor:
            rows = await cursor.fetchall()
        return {row["id"] for row in rows}

    # ========== Watermarks ==========

    async def get_watermark(self, table: str) -> datetime | None:
        conn = self._ensure_read_conn()
        async with conn.execute(
            "SELECT value FROM watermarks WHERE table_name = ?", (table,)
        ) as cursor:
            row = await cursor.fetchone()
        return parse_timestamp(row["value"]) if row else None

    async def set_watermark(self, table: str, value: datetime) -> None:
        async with self._writing() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO watermarks (table_name, value) VALUES (?, ?)",
                (table, format_timestamp(value)),
            )

    async def clear_watermarks(self) -> None:
        async with self._writing() as conn:
            await conn.execute("DELETE FROM watermarks")


async def _upsert(conn: aiosqlite.Connection, record: SyncableRecord) -> None:
    row = codec_for(record.table).to_row(record)
    await conn.execute(
        """INSERT OR REPLACE INTO records
           (table_name, id, row, sync_state, sync, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            record.table,
            record.id,
            json.dumps(row),
            record.sync.state.value,
            json.dumps(record.sync.to_dict()),
            format_timestamp(record.updated_at),
        ),
    )


def _row_to_record(table: str, row: aiosqlite.Row) -> SyncableRecord:
    record = codec_for(table).from_row(json.loads(row["row"]))
    return record.with_sync(SyncMetadata.from_dict(json.loads(row["sync"])))
