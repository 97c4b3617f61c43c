"""Domain enumerations shared by local records and remote rows."""

from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELETED = "deleted"


class ActivityStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELETED = "deleted"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CreationSource(StrEnum):
    """Where a record was first created."""

    DISPATCH = "dispatch"
    SLACK = "slack"
    REALTOR_APP = "realtor_app"


class ListingStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PENDING = "pending"
    CLOSED = "closed"
    DELETED = "deleted"


class ListingStage(StrEnum):
    PENDING = "pending"
    WORKING_ON = "working_on"
    LIVE = "live"
    SOLD = "sold"
    RE_LIST = "re_list"
    DONE = "done"


class ListingType(StrEnum):
    SALE = "sale"
    LEASE = "lease"
    PRE_LISTING = "pre_listing"
    RENTAL = "rental"
    OTHER = "other"


class PropertyType(StrEnum):
    RESIDENTIAL = "residential"
    COMMERCIAL = "commercial"
    LAND = "land"
    MULTI_FAMILY = "multi_family"
    CONDO = "condo"
    OTHER = "other"


class UserType(StrEnum):
    REALTOR = "realtor"
    ADMIN = "admin"
    MARKETING = "marketing"
    EXEC = "exec"


class Audience(StrEnum):
    """Team a task or activity is visible to."""

    ADMIN = "admin"
    MARKETING = "marketing"


class ParentType(StrEnum):
    """Entity a note is attached to."""

    LISTING = "listing"
    TASK = "task"
    ACTIVITY = "activity"


class ClaimAction(StrEnum):
    CLAIMED = "claimed"
    RELEASED = "released"


DEFAULT_AUDIENCES: tuple[Audience, ...] = (Audience.ADMIN, Audience.MARKETING)
