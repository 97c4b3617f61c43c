"""Translation between local records and remote table rows.

A :class:`RecordCodec` is declared once per table as a list of
:class:`Column` specs. Encoding always emits every column it is asked for,
with cleared values as an explicit ``None``: the remote store treats an
omitted key as "leave unchanged", so dropping a ``None`` would silently
turn a clear-to-null edit into a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, Generic, TypeVar

from dispatch_sync.core.records import SyncableRecord
from dispatch_sync.core.sync_state import SyncMetadata
from dispatch_sync.dto.enums import UnknownVariant, decode_enum, parse_variant
from dispatch_sync.utils.timeutils import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncableRecord)

# Columns the server assigns or maintains; never part of a local patch.
SERVER_MANAGED_COLUMNS = frozenset({"id", "created_at", "updated_at"})


class ColumnKind(StrEnum):
    TEXT = "text"
    TIMESTAMP = "timestamp"
    NUMBER = "number"
    INTEGER = "integer"
    ENUM = "enum"
    ENUM_LIST = "enum_list"


class RowDecodeError(ValueError):
    """A remote row is missing data that has no safe fallback."""


@dataclass(frozen=True)
class Column:
    """One remote column and the record attribute it maps to."""

    name: str
    kind: ColumnKind = ColumnKind.TEXT
    attr: str = ""
    enum: type[Enum] | None = None
    default: Any = None
    required: bool = False

    @property
    def attribute(self) -> str:
        return self.attr or self.name

    def encode(self, value: Any) -> Any:
        if value is None:
            return None
        if self.kind == ColumnKind.TIMESTAMP:
            return format_timestamp(value)
        if self.kind == ColumnKind.ENUM:
            return value.value
        if self.kind == ColumnKind.ENUM_LIST:
            return [item.value for item in value]
        return value

    def decode(self, raw: Any, table: str) -> Any:
        location = f"{table}.{self.name}"
        if self.kind == ColumnKind.ENUM:
            assert self.enum is not None
            return decode_enum(self.enum, raw, self.default, field=location)
        if self.kind == ColumnKind.ENUM_LIST:
            return self._decode_enum_list(raw, location)
        if raw is None:
            return self.default
        try:
            if self.kind == ColumnKind.TIMESTAMP:
                return parse_timestamp(raw)
            if self.kind == ColumnKind.NUMBER:
                return float(raw)
            if self.kind == ColumnKind.INTEGER:
                return int(raw)
        except (TypeError, ValueError):
            logger.warning("Malformed value %r in %s, using default", raw, location)
            return self.default
        return str(raw) if not isinstance(raw, str) else raw

    def _decode_enum_list(self, raw: Any, location: str) -> tuple[Any, ...]:
        assert self.enum is not None
        if not isinstance(raw, list | tuple):
            return tuple(self.default or ())
        values = []
        for item in raw:
            parsed = parse_variant(self.enum, item)
            if isinstance(parsed, UnknownVariant):
                logger.warning("Dropping unknown %s value %r in %s", parsed.enum_name, item, location)
                continue
            values.append(parsed)
        return tuple(values)


@dataclass(frozen=True)
class ParentRef:
    """A foreign key that must exist remotely before the child uploads."""

    column: str
    table: str


class RecordCodec(Generic[R]):
    """Bidirectional mapping for one remote table."""

    def __init__(
        self,
        table: str,
        record_type: type[R],
        columns: Iterable[Column],
        *,
        parents: Iterable[ParentRef] = (),
        parent_resolver: Callable[[R], list[tuple[str, str]]] | None = None,
    ) -> None:
        self.table = table
        self.record_type = record_type
        self.columns: tuple[Column, ...] = tuple(columns)
        self.parents: tuple[ParentRef, ...] = tuple(parents)
        self._parent_resolver = parent_resolver
        self._by_name = {column.name: column for column in self.columns}

        known = {f.name for f in fields(record_type)}
        missing = [c.attribute for c in self.columns if c.attribute not in known]
        if missing:
            raise ValueError(f"{record_type.__name__} has no attribute(s) {missing}")

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def mutable_columns(self) -> frozenset[str]:
        return frozenset(self.column_names) - SERVER_MANAGED_COLUMNS

    def has_column(self, name: str) -> bool:
        return name in self._by_name

    def to_row(self, record: R) -> dict[str, Any]:
        """Full remote row. Every column is present; cleared values are None."""
        return {column.name: column.encode(getattr(record, column.attribute)) for column in self.columns}

    def to_patch(self, record: R, changed: Iterable[str]) -> dict[str, Any]:
        """Row containing ``id`` plus only the changed columns."""
        patch: dict[str, Any] = {"id": record.id}
        for name in sorted(set(changed)):
            column = self._by_name.get(name)
            if column is None:
                logger.warning("Ignoring unknown column %s.%s in patch", self.table, name)
                continue
            if name in SERVER_MANAGED_COLUMNS:
                continue
            patch[name] = column.encode(getattr(record, column.attribute))
        return patch

    def from_row(self, row: Mapping[str, Any]) -> R:
        """Decode a remote row into a record marked as synced.

        Unknown keys are ignored and missing optional columns take their
        defaults. Other required timestamps fall back to ``updated_at``.

        Raises:
            RowDecodeError: If the row has no ``id`` or no valid ``updated_at``.
        """
        record_id = row.get("id")
        if not record_id:
            raise RowDecodeError(f"Row for {self.table} has no id")
        updated_at = self._updated_at(row)
        if updated_at is None:
            raise RowDecodeError(f"Row {self.table}/{record_id} has no valid updated_at")

        values: dict[str, Any] = {}
        for column in self.columns:
            if column.name not in row and column.kind not in (ColumnKind.ENUM, ColumnKind.ENUM_LIST):
                if column.required:
                    values[column.attribute] = updated_at
                continue
            value = column.decode(row.get(column.name), self.table)
            if value is None and column.required:
                value = updated_at
            values[column.attribute] = value

        record = self.record_type(**values)
        return record.with_sync(SyncMetadata.remote(record.updated_at))

    def merge_row(self, base: R, row: Mapping[str, Any]) -> R:
        """Overlay the columns present in ``row`` onto ``base``.

        Absent columns keep their values from ``base``, and so does any
        required column the row leaves empty, ``updated_at`` included.
        The sync metadata of ``base`` is carried over unchanged.
        """
        changes: dict[str, Any] = {}
        for name, raw in row.items():
            column = self._by_name.get(name)
            if column is None or name == "id":
                continue
            value = column.decode(raw, self.table)
            if value is None and column.required:
                continue
            changes[column.attribute] = value
        return replace(base, **changes)

    def _updated_at(self, row: Mapping[str, Any]) -> datetime | None:
        try:
            return parse_timestamp(row.get("updated_at"))
        except (TypeError, ValueError):
            logger.warning("Malformed updated_at %r in %s", row.get("updated_at"), self.table)
            return None

    def diff(self, old: R, new: R) -> frozenset[str]:
        """Mutable columns whose encoded values differ between two records."""
        changed = set()
        for column in self.columns:
            if column.name in SERVER_MANAGED_COLUMNS:
                continue
            if column.encode(getattr(old, column.attribute)) != column.encode(
                getattr(new, column.attribute)
            ):
                changed.add(column.name)
        return frozenset(changed)

    def parent_keys(self, record: R) -> list[tuple[str, str]]:
        """``(table, id)`` pairs this record references."""
        keys = []
        for parent in self.parents:
            value = getattr(record, self._by_name[parent.column].attribute)
            if value:
                keys.append((parent.table, value))
        if self._parent_resolver is not None:
            keys.extend(self._parent_resolver(record))
        return keys


BASE_COLUMNS: tuple[Column, ...] = (
    Column("id", required=True),
    Column("created_at", ColumnKind.TIMESTAMP, required=True),
    Column("updated_at", ColumnKind.TIMESTAMP, required=True),
)
SOFT_DELETE_COLUMN = Column("deleted_at", ColumnKind.TIMESTAMP)
