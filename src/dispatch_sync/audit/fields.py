"""Human-readable labels for audited columns."""

from __future__ import annotations

FIELD_LABELS: dict[str, str] = {
    # Listings
    "stage": "Status",
    "price": "Price",
    "assigned_to": "Assignment",
    "due_date": "Due date",
    "address": "Address",
    "mls_number": "MLS number",
    "owned_by": "Owner",
    "listing_date": "Listing date",
    "expiration_date": "Expiration date",
    "listing_type": "Listing type",
    "commission_rate": "Commission rate",
    "notes": "Notes",
    "real_dirt": "Real dirt",
    # Properties
    "owner_id": "Owner",
    "property_type": "Property type",
    "bedrooms": "Bedrooms",
    "bathrooms": "Bathrooms",
    "square_feet": "Square feet",
    "lot_size": "Lot size",
    "year_built": "Year built",
    # Tasks
    "title": "Title",
    "description": "Description",
    "status": "Status",
    "priority": "Priority",
    "completed_at": "Completed at",
    "listing_id": "Listing",
    "listing": "Listing",
    "property_id": "Property",
    # Activities
    "declared_by": "Created by",
    "activity_type": "Type",
    "outcome": "Outcome",
    "contact_method": "Contact method",
    "duration_minutes": "Duration",
    # Users
    "name": "Name",
    "email": "Email",
    "phone": "Phone",
    "license_number": "License number",
    "brokerage": "Brokerage",
    # Assignments
    "user_id": "Assignee",
    "assigned_by": "Assigned by",
    "assigned_at": "Assigned at",
    "task_id": "Task",
    "activity_id": "Activity",
    # Notes
    "content": "Note content",
    "parent_type": "Attached to",
    "parent_id": "Parent",
    "created_at": "Created at",
    "updated_at": "Updated at",
}


def label_for(field: str) -> str:
    """Label for a column; unknown columns are title-cased (``lock_box`` -> ``Lock Box``)."""
    label = FIELD_LABELS.get(field)
    if label is not None:
        return label
    return field.replace("_", " ").title()
