"""Syncable record types.

Each record mirrors one row of a remote table. Records are frozen; local
mutations produce a new instance via :func:`dataclasses.replace` and go
through :class:`~dispatch_sync.sync.entity_state.EntityStateTracker` so the
sync metadata is updated alongside the domain fields.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import ClassVar, Self

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
from dispatch_sync.core.sync_state import SyncMetadata
from dispatch_sync.utils.timeutils import utcnow


def new_id() -> str:
    """Client-assigned record id, stable across offline creation and upload."""
    return str(uuid.uuid4())


@dataclass(frozen=True, kw_only=True)
class SyncableRecord:
    """Fields shared by every record participating in sync."""

    table: ClassVar[str] = ""

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: datetime | None = None
    sync: SyncMetadata = field(default_factory=SyncMetadata)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def with_sync(self, sync: SyncMetadata) -> Self:
        return replace(self, sync=sync)


@dataclass(frozen=True, kw_only=True)
class User(SyncableRecord):
    table: ClassVar[str] = "users"

    name: str = ""
    email: str = ""
    user_type: UserType = UserType.ADMIN
    avatar_url: str | None = None


@dataclass(frozen=True, kw_only=True)
class Property(SyncableRecord):
    table: ClassVar[str] = "properties"

    address: str = ""
    unit: str | None = None
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = "Canada"
    property_type: PropertyType = PropertyType.RESIDENTIAL
    owned_by: str | None = None


@dataclass(frozen=True, kw_only=True)
class Listing(SyncableRecord):
    table: ClassVar[str] = "listings"

    address: str = ""
    city: str = ""
    province: str = ""
    postal_code: str = ""
    country: str = "Canada"
    price: float | None = None
    mls_number: str | None = None
    listing_type: ListingType = ListingType.SALE
    status: ListingStatus = ListingStatus.DRAFT
    stage: ListingStage = ListingStage.PENDING
    owned_by: str | None = None
    property_id: str | None = None
    created_via: CreationSource = CreationSource.DISPATCH
    due_date: datetime | None = None
    activated_at: datetime | None = None
    closed_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class TaskItem(SyncableRecord):
    table: ClassVar[str] = "tasks"

    title: str = ""
    description: str | None = None
    due_date: datetime | None = None
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.OPEN
    declared_by: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    listing_id: str | None = None
    created_via: CreationSource = CreationSource.DISPATCH
    audiences: tuple[Audience, ...] = DEFAULT_AUDIENCES
    completed_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class Activity(SyncableRecord):
    table: ClassVar[str] = "activities"

    title: str = ""
    description: str | None = None
    due_date: datetime | None = None
    status: ActivityStatus = ActivityStatus.OPEN
    declared_by: str | None = None
    listing_id: str | None = None
    created_via: CreationSource = CreationSource.DISPATCH
    audiences: tuple[Audience, ...] = DEFAULT_AUDIENCES
    duration_minutes: int | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class Note(SyncableRecord):
    table: ClassVar[str] = "notes"

    content: str = ""
    created_by: str | None = None
    parent_type: ParentType = ParentType.TASK
    parent_id: str = ""
    edited_at: datetime | None = None
    edited_by: str | None = None
    deleted_by: str | None = None


@dataclass(frozen=True, kw_only=True)
class TaskAssignment(SyncableRecord):
    """A user assigned to a task. Removal is a hard delete on the server."""

    table: ClassVar[str] = "task_assignees"

    task_id: str = ""
    user_id: str = ""
    assigned_by: str | None = None
    assigned_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, kw_only=True)
class ActivityAssignment(SyncableRecord):
    table: ClassVar[str] = "activity_assignees"

    activity_id: str = ""
    user_id: str = ""
    assigned_by: str | None = None
    assigned_at: datetime = field(default_factory=utcnow)
