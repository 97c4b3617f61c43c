"""Audit log entries as returned by the history RPCs."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from dispatch_sync.core.enums import ClaimAction
from dispatch_sync.dto.enums import decode_enum
from dispatch_sync.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


class AuditAction(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"

    @classmethod
    def parse(cls, raw: Any) -> AuditAction:
        """Parse the RPC's upper-case action. Unknown actions read as updates."""
        try:
            return cls(str(raw).lower())
        except ValueError:
            logger.warning("Unknown audit action %r, treating as update", raw)
            return cls.UPDATE


_DISPLAY_NAMES = {
    "listing": "Listing",
    "property": "Property",
    "task": "Task",
    "user": "Realtor",
    "activity": "Activity",
    "task_assignee": "Task Assignment",
    "activity_assignee": "Activity Assignment",
    "note": "Note",
}

_TABLE_NAMES = {
    "listing": "listings",
    "property": "properties",
    "task": "tasks",
    "user": "users",
    "activity": "activities",
    "task_assignee": "task_assignees_log",
    "activity_assignee": "activity_assignees_log",
    "note": "notes_log",
}


class AuditableEntity(StrEnum):
    LISTING = "listing"
    PROPERTY = "property"
    TASK = "task"
    USER = "user"
    ACTIVITY = "activity"
    TASK_ASSIGNEE = "task_assignee"
    ACTIVITY_ASSIGNEE = "activity_assignee"
    NOTE = "note"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self.value]

    @property
    def table_name(self) -> str:
        """Audited table (log tables for relationship entities)."""
        return _TABLE_NAMES[self.value]

    @property
    def is_related_entity(self) -> bool:
        return self in (
            AuditableEntity.TASK_ASSIGNEE,
            AuditableEntity.ACTIVITY_ASSIGNEE,
            AuditableEntity.NOTE,
        )

    @classmethod
    def from_table(cls, table_name: str) -> AuditableEntity:
        for entity in cls:
            if entity.table_name == table_name:
                return entity
        logger.warning("Unknown audited table %r, treating as listing", table_name)
        return cls.LISTING


def _require_id(row: Mapping[str, Any], key: str) -> str:
    value = row.get(key)
    if not value:
        raise ValueError(f"Audit row is missing {key}")
    return str(value)


def _require_time(row: Mapping[str, Any], key: str) -> datetime:
    value = parse_timestamp(row.get(key))
    if value is None:
        raise ValueError(f"Audit row is missing {key}")
    return value


def _optional_str(value: Any) -> str | None:
    return str(value) if value else None


@dataclass(frozen=True)
class AuditEntry:
    """One row of the append-only change log."""

    id: str
    action: AuditAction
    changed_at: datetime
    changed_by: str | None
    entity_type: AuditableEntity
    entity_id: str
    old_row: dict[str, Any] | None = None
    new_row: dict[str, Any] | None = None

    @classmethod
    def from_rpc_row(cls, row: Mapping[str, Any]) -> AuditEntry:
        """Decode a ``get_entity_history`` / ``get_recently_deleted`` row.

        Raises:
            ValueError: If the id, record key or timestamp is missing.
        """
        old_row = row.get("old_row")
        new_row = row.get("new_row")
        return cls(
            id=_require_id(row, "audit_id"),
            action=AuditAction.parse(row.get("action")),
            changed_at=_require_time(row, "changed_at"),
            changed_by=_optional_str(row.get("changed_by")),
            entity_type=AuditableEntity.from_table(str(row.get("table_name", ""))),
            entity_id=_require_id(row, "record_pk"),
            old_row=dict(old_row) if isinstance(old_row, Mapping) else None,
            new_row=dict(new_row) if isinstance(new_row, Mapping) else None,
        )

    @property
    def row(self) -> dict[str, Any]:
        """The newest row image available."""
        return self.new_row or self.old_row or {}

    @property
    def display_title(self) -> str:
        row = self.row
        if self.entity_type in (AuditableEntity.LISTING, AuditableEntity.PROPERTY):
            return _non_empty(row.get("address")) or self.entity_type.display_name
        if self.entity_type in (AuditableEntity.TASK, AuditableEntity.ACTIVITY):
            return _non_empty(row.get("title")) or self.entity_type.display_name
        if self.entity_type == AuditableEntity.USER:
            return _non_empty(row.get("name")) or "Realtor"
        if self.entity_type == AuditableEntity.NOTE:
            content = _non_empty(row.get("content"))
            if content is None:
                return "Note"
            return content if len(content) <= 30 else content[:30] + "..."
        return "Assignment"


def _non_empty(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class ClaimEvent:
    """A claim or release of a task or activity."""

    id: str
    parent_type: str
    parent_id: str
    action: ClaimAction
    user_id: str
    performed_at: datetime
    reason: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ClaimEvent:
        return cls(
            id=_require_id(row, "id"),
            parent_type=str(row.get("parent_type", "")),
            parent_id=_require_id(row, "parent_id"),
            action=decode_enum(ClaimAction, row.get("action"), ClaimAction.CLAIMED, field="claim_events.action"),
            user_id=_require_id(row, "user_id"),
            performed_at=_require_time(row, "performed_at"),
            reason=_optional_str(row.get("reason")),
        )

    @property
    def changed_at(self) -> datetime:
        return self.performed_at


@dataclass(frozen=True)
class StatusChange:
    """A status transition of a task, activity or listing."""

    id: str
    entity_type: str
    entity_id: str
    new_status: str
    changed_by: str
    changed_at: datetime
    old_status: str | None = None
    reason: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> StatusChange:
        return cls(
            id=_require_id(row, "id"),
            entity_type=str(row.get("parent_type", "")),
            entity_id=_require_id(row, "parent_id"),
            new_status=str(row.get("new_status", "")),
            changed_by=_require_id(row, "changed_by"),
            changed_at=_require_time(row, "changed_at"),
            old_status=_optional_str(row.get("old_status")),
            reason=_optional_str(row.get("reason")),
        )
