"""Realtime broadcast payloads.

The server-side trigger publishes ``{table, type, record, old_record}`` for
every write and injects two bookkeeping keys into ``record`` (or
``old_record`` for deletes): ``_origin_user_id`` and ``_event_version``.
They are read here and stripped before domain decoding.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from dispatch_sync.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)

ORIGIN_USER_KEY = "_origin_user_id"
EVENT_VERSION_KEY = "_event_version"
METADATA_KEYS = frozenset({ORIGIN_USER_KEY, EVENT_VERSION_KEY})

CURRENT_EVENT_VERSION = 1


class ChangeOperation(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MalformedEventError(ValueError):
    """A broadcast payload lacks the fields needed to route it."""


def strip_metadata(row: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Copy of ``row`` without trigger-injected keys."""
    if row is None:
        return None
    return {key: value for key, value in row.items() if key not in METADATA_KEYS}


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded change notification for one row."""

    table: str
    operation: ChangeOperation
    record: dict[str, Any] | None
    old_record: dict[str, Any] | None
    origin_user_id: str | None = None
    event_version: int = CURRENT_EVENT_VERSION

    @property
    def is_delete(self) -> bool:
        return self.operation == ChangeOperation.DELETE

    @property
    def row(self) -> dict[str, Any] | None:
        """The row describing the record: ``old_record`` for deletes."""
        if self.is_delete:
            return self.old_record or self.record
        return self.record

    @property
    def record_id(self) -> str | None:
        row = self.row or {}
        value = row.get("id")
        return str(value) if value else None

    @property
    def updated_at(self) -> datetime | None:
        row = self.row or {}
        try:
            return parse_timestamp(row.get("updated_at"))
        except ValueError:
            return None

    @property
    def is_system_origin(self) -> bool:
        """Migrations and backfills carry no origin user."""
        return self.origin_user_id is None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChangeEvent:
        """Build an event from the trigger payload.

        Raises:
            MalformedEventError: If the table or operation is missing or invalid.
        """
        table = payload.get("table")
        if not isinstance(table, str) or not table:
            raise MalformedEventError("Broadcast payload has no table")

        raw_type = payload.get("type")
        try:
            operation = ChangeOperation(str(raw_type).upper())
        except ValueError:
            raise MalformedEventError(f"Unknown operation {raw_type!r} for {table}") from None

        record = payload.get("record")
        old_record = payload.get("old_record")
        record = record if isinstance(record, Mapping) else None
        old_record = old_record if isinstance(old_record, Mapping) else None

        source = old_record if operation == ChangeOperation.DELETE else record
        if source is None:
            source = record or old_record
        if source is None:
            raise MalformedEventError(f"{operation} on {table} carries no row")

        return cls(
            table=table,
            operation=operation,
            record=strip_metadata(record),
            old_record=strip_metadata(old_record),
            origin_user_id=_origin(source.get(ORIGIN_USER_KEY)),
            event_version=_version(source.get(EVENT_VERSION_KEY)),
        )


def _origin(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _version(raw: Any) -> int:
    if raw is None:
        return CURRENT_EVENT_VERSION
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid event version %r, treating as %d", raw, CURRENT_EVENT_VERSION)
        return CURRENT_EVENT_VERSION
