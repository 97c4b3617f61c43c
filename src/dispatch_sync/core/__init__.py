"""Core data structures for the sync engine."""

from dispatch_sync.core.enums import (
    ActivityStatus,
    Audience,
    ClaimAction,
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
    SyncableRecord,
    TaskAssignment,
    TaskItem,
    User,
    new_id,
)
from dispatch_sync.core.sync_state import EntitySyncState, SyncMetadata

__all__ = [
    "Activity",
    "ActivityAssignment",
    "ActivityStatus",
    "Audience",
    "ClaimAction",
    "CreationSource",
    "EntitySyncState",
    "Listing",
    "ListingStage",
    "ListingStatus",
    "ListingType",
    "Note",
    "ParentType",
    "Priority",
    "Property",
    "PropertyType",
    "SyncMetadata",
    "SyncableRecord",
    "TaskAssignment",
    "TaskItem",
    "TaskStatus",
    "User",
    "UserType",
    "new_id",
]
