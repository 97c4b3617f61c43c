"""Codec declarations for every synced table."""

from __future__ import annotations

from dispatch_sync.core.enums import (
    DEFAULT_AUDIENCES,
    ActivityStatus,
    Audience,
    CreationSource,
    ListingStage,
    ListingStatus,
    ListingType,
    ParentType,
    Priority,
    PropertyType,
    TaskStatus,
    UserType,
)
from dispatch_sync.core.records import (
    Activity,
    ActivityAssignment,
    Listing,
    Note,
    Property,
    TaskAssignment,
    TaskItem,
    User,
)
from dispatch_sync.dto.rows import (
    BASE_COLUMNS,
    SOFT_DELETE_COLUMN,
    Column,
    ColumnKind,
    ParentRef,
    RecordCodec,
)

T = ColumnKind.TEXT
TS = ColumnKind.TIMESTAMP


class UnknownTableError(LookupError):
    """No codec is registered for the table."""


def _enum(name: str, enum: type, default: object) -> Column:
    return Column(name, ColumnKind.ENUM, enum=enum, default=default)


def _audiences() -> Column:
    return Column("audiences", ColumnKind.ENUM_LIST, enum=Audience, default=DEFAULT_AUDIENCES)


def _note_parent(note: Note) -> list[tuple[str, str]]:
    if not note.parent_id:
        return []
    table = {
        ParentType.LISTING: "listings",
        ParentType.TASK: "tasks",
        ParentType.ACTIVITY: "activities",
    }[note.parent_type]
    return [(table, note.parent_id)]


USER_CODEC = RecordCodec(
    "users",
    User,
    [
        *BASE_COLUMNS,
        Column("name", default=""),
        Column("email", default=""),
        _enum("user_type", UserType, UserType.ADMIN),
        Column("avatar_url"),
    ],
)

PROPERTY_CODEC = RecordCodec(
    "properties",
    Property,
    [
        *BASE_COLUMNS,
        SOFT_DELETE_COLUMN,
        Column("address", default=""),
        Column("unit"),
        Column("city", default=""),
        Column("province", default=""),
        Column("postal_code", default=""),
        Column("country", default="Canada"),
        _enum("property_type", PropertyType, PropertyType.RESIDENTIAL),
        Column("owned_by"),
    ],
    parents=[ParentRef("owned_by", "users")],
)

LISTING_CODEC = RecordCodec(
    "listings",
    Listing,
    [
        *BASE_COLUMNS,
        SOFT_DELETE_COLUMN,
        Column("address", default=""),
        Column("city", default=""),
        Column("province", default=""),
        Column("postal_code", default=""),
        Column("country", default="Canada"),
        Column("price", ColumnKind.NUMBER),
        Column("mls_number"),
        _enum("listing_type", ListingType, ListingType.SALE),
        _enum("status", ListingStatus, ListingStatus.DRAFT),
        _enum("stage", ListingStage, ListingStage.PENDING),
        Column("owned_by"),
        Column("property_id"),
        _enum("created_via", CreationSource, CreationSource.DISPATCH),
        Column("due_date", TS),
        Column("activated_at", TS),
        Column("closed_at", TS),
    ],
    parents=[ParentRef("owned_by", "users"), ParentRef("property_id", "properties")],
)

TASK_CODEC = RecordCodec(
    "tasks",
    TaskItem,
    [
        *BASE_COLUMNS,
        SOFT_DELETE_COLUMN,
        Column("title", default=""),
        Column("description"),
        Column("due_date", TS),
        _enum("priority", Priority, Priority.MEDIUM),
        _enum("status", TaskStatus, TaskStatus.OPEN),
        Column("declared_by"),
        Column("claimed_by"),
        Column("claimed_at", TS),
        Column("listing", attr="listing_id"),
        _enum("created_via", CreationSource, CreationSource.DISPATCH),
        _audiences(),
        Column("completed_at", TS),
    ],
    parents=[
        ParentRef("declared_by", "users"),
        ParentRef("claimed_by", "users"),
        ParentRef("listing", "listings"),
    ],
)

ACTIVITY_CODEC = RecordCodec(
    "activities",
    Activity,
    [
        *BASE_COLUMNS,
        SOFT_DELETE_COLUMN,
        Column("title", default=""),
        Column("description"),
        Column("due_date", TS),
        _enum("status", ActivityStatus, ActivityStatus.OPEN),
        Column("declared_by"),
        Column("listing", attr="listing_id"),
        _enum("created_via", CreationSource, CreationSource.DISPATCH),
        _audiences(),
        Column("duration_minutes", ColumnKind.INTEGER),
        Column("completed_at", TS),
    ],
    parents=[ParentRef("declared_by", "users"), ParentRef("listing", "listings")],
)

TASK_ASSIGNMENT_CODEC = RecordCodec(
    "task_assignees",
    TaskAssignment,
    [
        *BASE_COLUMNS,
        Column("task_id", default=""),
        Column("user_id", default=""),
        Column("assigned_by"),
        Column("assigned_at", TS, required=True),
    ],
    parents=[
        ParentRef("task_id", "tasks"),
        ParentRef("user_id", "users"),
        ParentRef("assigned_by", "users"),
    ],
)

ACTIVITY_ASSIGNMENT_CODEC = RecordCodec(
    "activity_assignees",
    ActivityAssignment,
    [
        *BASE_COLUMNS,
        Column("activity_id", default=""),
        Column("user_id", default=""),
        Column("assigned_by"),
        Column("assigned_at", TS, required=True),
    ],
    parents=[
        ParentRef("activity_id", "activities"),
        ParentRef("user_id", "users"),
        ParentRef("assigned_by", "users"),
    ],
)

NOTE_CODEC = RecordCodec(
    "notes",
    Note,
    [
        *BASE_COLUMNS,
        SOFT_DELETE_COLUMN,
        Column("content", default=""),
        Column("created_by"),
        _enum("parent_type", ParentType, ParentType.TASK),
        Column("parent_id", default=""),
        Column("edited_at", TS),
        Column("edited_by"),
        Column("deleted_by"),
    ],
    parents=[ParentRef("created_by", "users")],
    parent_resolver=_note_parent,
)

# Parents before children so foreign keys resolve on upload.
UPLOAD_ORDER: tuple[str, ...] = (
    "users",
    "properties",
    "listings",
    "tasks",
    "activities",
    "task_assignees",
    "activity_assignees",
    "notes",
)

_CODECS: dict[str, RecordCodec] = {
    codec.table: codec
    for codec in (
        USER_CODEC,
        PROPERTY_CODEC,
        LISTING_CODEC,
        TASK_CODEC,
        ACTIVITY_CODEC,
        TASK_ASSIGNMENT_CODEC,
        ACTIVITY_ASSIGNMENT_CODEC,
        NOTE_CODEC,
    )
}


def codec_for(table: str) -> RecordCodec:
    """Codec for a remote table name."""
    try:
        return _CODECS[table]
    except KeyError:
        raise UnknownTableError(table) from None


def is_synced_table(table: str) -> bool:
    return table in _CODECS
