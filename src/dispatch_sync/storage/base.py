"""Abstract base class for local record storage."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Collection, Iterable, Mapping
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any

from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.core.sync_state import EntitySyncState


class LocalStore(ABC):
    """
    Transactional local store shared by UI readers and the sync engine.

    Records are addressed by ``(table, id)``. Writes are serialized; a
    :meth:`transaction` groups several writes so readers never observe a
    partial result.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections and create the schema."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def get(self, table: str, record_id: str) -> SyncableRecord | None:
        ...

    @abstractmethod
    async def save(self, record: SyncableRecord) -> None:
        """Insert or replace a record."""
        ...

    @abstractmethod
    async def save_many(self, records: Iterable[SyncableRecord]) -> None:
        """Insert or replace several records atomically."""
        ...

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Hard-delete a record. Returns True if it existed."""
        ...

    @abstractmethod
    async def fetch(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        updated_after: datetime | None = None,
        states: Collection[EntitySyncState] | None = None,
    ) -> list[SyncableRecord]:
        """
        Fetch records of one table.

        Args:
            table: Remote table name
            where: Equality filters keyed by remote column name, compared
                against the encoded (row) value
            updated_after: Only records with a strictly newer ``updated_at``
            states: Only records in one of these sync states

        Returns:
            Matching records ordered by ``updated_at``
        """
        ...

    @abstractmethod
    async def all_ids(self, table: str) -> set[str]:
        ...

    @abstractmethod
    async def get_watermark(self, table: str) -> datetime | None:
        ...

    @abstractmethod
    async def set_watermark(self, table: str, value: datetime) -> None:
        ...

    @abstractmethod
    async def clear_watermarks(self) -> None:
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group writes issued by the current task into one atomic unit."""
        ...

    async def count_by_state(self, table: str) -> dict[EntitySyncState, int]:
        """Number of records per sync state."""
        counts = dict.fromkeys(EntitySyncState, 0)
        for record in await self.fetch(table):
            counts[record.sync.state] += 1
        return counts

    async def __aenter__(self) -> LocalStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
