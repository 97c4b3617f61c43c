"""Audit trail reconstruction."""

from dispatch_sync.audit.fields import FIELD_LABELS, label_for
from dispatch_sync.audit.history import AuditHistory, RestoreError
from dispatch_sync.audit.models import (
    AuditableEntity,
    AuditAction,
    AuditEntry,
    ClaimEvent,
    StatusChange,
)
from dispatch_sync.audit.summary import (
    summarize,
    summarize_claim_event,
    summarize_status_change,
)

__all__ = [
    "FIELD_LABELS",
    "AuditAction",
    "AuditEntry",
    "AuditHistory",
    "AuditableEntity",
    "ClaimEvent",
    "RestoreError",
    "StatusChange",
    "label_for",
    "summarize",
    "summarize_claim_event",
    "summarize_status_change",
]
