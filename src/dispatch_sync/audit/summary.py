"""One-sentence summaries of audit entries.

Summaries are built at display time, once the actor's name is known:

    summarize(entry, "Alice", entry.entity_type)
    # "Alice changed status to In Progress"
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from dispatch_sync.audit.fields import label_for
from dispatch_sync.audit.models import (
    AuditAction,
    AuditableEntity,
    AuditEntry,
    ClaimEvent,
    StatusChange,
)
from dispatch_sync.core.enums import ClaimAction

UserLookup = Callable[[str], str | None]

SYSTEM_FIELDS = frozenset({"id", "sync_status", "pending_changes", "created_at", "updated_at"})
PRIORITY_FIELDS = ("status", "stage", "price", "assigned_to", "title", "name")
_STATE_FIELDS = frozenset({"status", "stage"})

_MISSING = object()


def summarize(
    entry: AuditEntry,
    actor_name: str,
    entity_type: AuditableEntity | None = None,
    *,
    user_lookup: UserLookup | None = None,
) -> str:
    """Build a human-readable sentence describing ``entry``.

    Args:
        entry: The audit entry
        actor_name: Display name of ``entry.changed_by``
        entity_type: Overrides ``entry.entity_type``
        user_lookup: Resolves a user id to a display name (assignments)
    """
    entity_type = entity_type or entry.entity_type
    if entity_type in (AuditableEntity.TASK_ASSIGNEE, AuditableEntity.ACTIVITY_ASSIGNEE):
        return _assignment_summary(entry, actor_name, user_lookup)
    if entity_type == AuditableEntity.NOTE:
        return _note_summary(entry, actor_name)

    noun = entity_type.display_name.lower()
    if entry.action == AuditAction.INSERT:
        return f"{actor_name} created this {noun}"
    if entry.action == AuditAction.DELETE:
        return f"{actor_name} deleted this {noun}"
    if entry.action == AuditAction.RESTORE:
        return f"{actor_name} restored this {noun}"
    return _update_summary(entry, actor_name)


def _assignment_summary(entry: AuditEntry, actor: str, user_lookup: UserLookup | None) -> str:
    row = entry.new_row or entry.old_row or {}
    assignee_id = _id_or_none(row.get("user_id"))
    assigned_by = _id_or_none(row.get("assigned_by"))
    assignee = user_lookup(assignee_id) if user_lookup and assignee_id else None
    self_assigned = assignee_id is not None and assignee_id == assigned_by

    if entry.action == AuditAction.INSERT:
        if self_assigned:
            return f"{actor} claimed this"
        return f"{actor} assigned {assignee}" if assignee else f"{actor} assigned someone"

    if entry.action == AuditAction.DELETE:
        actor_is_assignee = (
            entry.changed_by is not None and _id_or_none(entry.changed_by) == assignee_id
        )
        if actor_is_assignee or self_assigned:
            return f"{actor} removed themselves"
        return f"{actor} unassigned {assignee}" if assignee else f"{actor} unassigned someone"

    if entry.action == AuditAction.RESTORE:
        if assignee:
            return f"{actor} restored {assignee}'s assignment"
        return f"{actor} restored assignment"

    return f"{actor} updated assignment"


def _note_summary(entry: AuditEntry, actor: str) -> str:
    verb = {
        AuditAction.INSERT: "added",
        AuditAction.UPDATE: "edited",
        AuditAction.DELETE: "deleted",
        AuditAction.RESTORE: "restored",
    }[entry.action]
    return f"{actor} {verb} a note"


def changed_fields(old_row: Mapping[str, Any], new_row: Mapping[str, Any]) -> list[str]:
    """Non-system columns of ``new_row`` whose normalized value differs."""
    return [
        key
        for key in new_row
        if key not in SYSTEM_FIELDS
        and normalize_value(old_row.get(key)) != normalize_value(new_row.get(key))
    ]


def _update_summary(entry: AuditEntry, actor: str) -> str:
    if entry.old_row is None or entry.new_row is None:
        return f"{actor} made changes"

    changed = changed_fields(entry.old_row, entry.new_row)
    if not changed:
        return f"{actor} made changes"

    top = next((name for name in PRIORITY_FIELDS if name in changed), changed[0])
    if len(changed) == 1:
        return _single_field_summary(actor, top, entry.old_row, entry.new_row)

    labels = [label_for(name) for name in changed]
    if len(labels) == 2:
        return f"{actor} changed {labels[0]} and {labels[1]}"
    if len(labels) == 3:
        return f"{actor} changed {labels[0]}, {labels[1]}, and {labels[2]}"

    summary = _single_field_summary(actor, top, entry.old_row, entry.new_row)
    others = len(changed) - 1
    return f"{summary} and {others} other field{'' if others == 1 else 's'}"


def _single_field_summary(
    actor: str, field: str, old_row: Mapping[str, Any], new_row: Mapping[str, Any]
) -> str:
    label = label_for(field).lower()
    new_value = format_value(new_row.get(field, _MISSING), field)
    if field in _STATE_FIELDS:
        return f"{actor} changed {label} to {new_value}"
    old_value = format_value(old_row.get(field, _MISSING), field)
    return f"{actor} changed {label} from {old_value} to {new_value}"


def normalize_value(value: Any) -> str:
    """Comparable string form: nulls are empty, numbers fixed at 6 places."""
    if value is None or value is _MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return f"{float(value):.6f}"
    return str(value)


def format_value(value: Any, field: str) -> str:
    """Display form of a column value."""
    if value is _MISSING:
        return "none"
    raw = normalize_value(value)
    if field == "price" and raw:
        try:
            return f"${float(raw):,.0f}"
        except ValueError:
            return raw
    if field in _STATE_FIELDS and raw:
        return _title(raw)
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, float):
        return repr(value)
    return raw or "none"


def summarize_claim_event(event: ClaimEvent, actor_name: str) -> str:
    verb = "claimed" if event.action == ClaimAction.CLAIMED else "released"
    summary = f"{actor_name} {verb} this"
    if event.reason:
        summary += f" ({event.reason})"
    return summary


def summarize_status_change(change: StatusChange, actor_name: str) -> str:
    new_status = _title(change.new_status) if change.new_status else "none"
    if change.old_status:
        summary = f"{actor_name} changed status from {_title(change.old_status)} to {new_status}"
    else:
        summary = f"{actor_name} set status to {new_status}"
    if change.reason:
        summary += f" ({change.reason})"
    return summary


def _title(raw: str) -> str:
    return raw.replace("_", " ").title()


def _id_or_none(value: Any) -> str | None:
    return str(value).lower() if value else None
