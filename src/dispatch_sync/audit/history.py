"""Audit history queries and restore against the remote backend.

The audit schema is private; every read goes through public RPCs
(``get_entity_history``, ``get_recently_deleted``, ``restore_entity``).
Claim and status-change logs are plain tables read with filtered selects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from dispatch_sync.audit.models import AuditableEntity, AuditEntry, ClaimEvent, StatusChange
from dispatch_sync.remote.client import RemoteBackend
from dispatch_sync.remote.errors import RemoteError

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """A restore was refused by the server."""

    NO_DELETE_RECORD = "no_delete_record"
    NOT_AUTHORIZED = "not_authorized"
    ALREADY_EXISTS = "already_exists"
    FOREIGN_KEY_MISSING = "foreign_key_missing"
    UNIQUE_CONFLICT = "unique_conflict"
    UNKNOWN = "unknown"

    def __init__(self, reason: str, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.detail = detail

    @classmethod
    def from_message(cls, message: str) -> RestoreError:
        """Parse the server's error message into a typed error."""
        if message.startswith("FK_MISSING:"):
            entity = message.removeprefix("FK_MISSING:").strip() or "related item"
            return cls(
                cls.FOREIGN_KEY_MISSING,
                f"Cannot restore - the {entity} this was linked to no longer exists",
                entity,
            )
        if message.startswith("UNIQUE_CONFLICT:"):
            field = message.removeprefix("UNIQUE_CONFLICT:").strip() or "field"
            return cls(
                cls.UNIQUE_CONFLICT,
                f"Cannot restore - a record with this {field} already exists",
                field,
            )
        if "NO_DELETE_RECORD" in message:
            return cls(cls.NO_DELETE_RECORD, "No deleted record found to restore")
        if "NOT_AUTHORIZED" in message:
            return cls(cls.NOT_AUTHORIZED, "You are not authorized to restore this item")
        if "ALREADY_EXISTS" in message or "already exists" in message:
            return cls(cls.ALREADY_EXISTS, "This item already exists and cannot be restored")
        return cls(cls.UNKNOWN, message)


_RELATED = {
    AuditableEntity.TASK: AuditableEntity.TASK_ASSIGNEE,
    AuditableEntity.ACTIVITY: AuditableEntity.ACTIVITY_ASSIGNEE,
    AuditableEntity.LISTING: AuditableEntity.NOTE,
    AuditableEntity.PROPERTY: AuditableEntity.NOTE,
}


def _decode_entries(rows: Any) -> list[AuditEntry]:
    entries = []
    for row in rows or []:
        if not isinstance(row, Mapping):
            logger.warning("Skipping non-object audit row: %r", row)
            continue
        try:
            entries.append(AuditEntry.from_rpc_row(row))
        except ValueError as e:
            logger.warning("Skipping malformed audit row: %s", e)
    return entries


def _newest_first(entries: Iterable[Any]) -> list[Any]:
    return sorted(entries, key=lambda entry: entry.changed_at, reverse=True)


class AuditHistory:
    """
    Read-only access to the change log, plus restore of deleted entities.

    Usage:
        history = AuditHistory(remote)
        entries = await history.fetch_combined_history(AuditableEntity.TASK, task_id)
        for entry in entries:
            print(summarize(entry, names.get(entry.changed_by, "Someone")))
    """

    def __init__(self, remote: RemoteBackend) -> None:
        self._remote = remote

    async def fetch_history(
        self, entity_type: AuditableEntity, entity_id: str, limit: int = 50
    ) -> list[AuditEntry]:
        """History of one entity (or, for notes and assignments, of their parent)."""
        rows = await self._remote.rpc(
            "get_entity_history",
            {
                "p_entity_type": entity_type.value,
                "p_entity_id": entity_id,
                "p_limit": str(limit),
            },
        )
        return _newest_first(_decode_entries(rows))

    async def fetch_recently_deleted(
        self, entity_type: AuditableEntity | None = None, limit: int = 50
    ) -> list[AuditEntry]:
        params = {"p_limit": str(limit)}
        if entity_type is not None:
            params["p_entity_type"] = entity_type.value
        rows = await self._remote.rpc("get_recently_deleted", params)
        return _newest_first(_decode_entries(rows))

    async def fetch_combined_history(
        self, entity_type: AuditableEntity, entity_id: str, limit: int = 50
    ) -> list[AuditEntry]:
        """Entity history merged with its assignments (tasks, activities) or notes."""
        related = _RELATED.get(entity_type)
        if related is None:
            return await self.fetch_history(entity_type, entity_id, limit)

        primary, secondary = await asyncio.gather(
            self.fetch_history(entity_type, entity_id, limit),
            self.fetch_history(related, entity_id, limit),
        )
        return _newest_first(primary + secondary)[:limit]

    async def restore_entity(self, entity_type: AuditableEntity, entity_id: str) -> str:
        """Restore a deleted entity. Returns the restored id.

        Raises:
            RestoreError: If the server refused the restore.
        """
        try:
            result = await self._remote.rpc(
                "restore_entity",
                {"p_entity_type": entity_type.value, "p_entity_id": entity_id},
            )
        except RemoteError as e:
            # Transport failures are not restore refusals.
            if e.status_code is None:
                raise
            raise RestoreError.from_message(str(e).removeprefix("Server error: ")) from e
        logger.info("Restored %s %s", entity_type, entity_id)
        return str(result) if result else entity_id

    async def fetch_claim_events(self, parent_id: str, limit: int = 50) -> list[ClaimEvent]:
        rows = await self._remote.fetch_rows(
            "claim_events",
            filters={"parent_id": f"eq.{parent_id}"},
            order="performed_at.desc",
            limit=limit,
        )
        events = []
        for row in rows:
            try:
                events.append(ClaimEvent.from_row(row))
            except ValueError as e:
                logger.warning("Skipping malformed claim event: %s", e)
        return _newest_first(events)

    async def fetch_status_changes(self, entity_id: str, limit: int = 50) -> list[StatusChange]:
        rows = await self._remote.fetch_rows(
            "status_changes",
            filters={"parent_id": f"eq.{entity_id}"},
            order="changed_at.desc",
            limit=limit,
        )
        changes = []
        for row in rows:
            try:
                changes.append(StatusChange.from_row(row))
            except ValueError as e:
                logger.warning("Skipping malformed status change: %s", e)
        return _newest_first(changes)
