"""Timestamp helpers.

All timestamps handled by the engine are timezone-aware UTC. The remote
store returns ISO-8601 strings (``2026-01-15T10:00:00.123+00:00`` or with a
``Z`` suffix); local persistence stores the same canonical form so that
string ordering matches chronological ordering.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp. Returns None for None or empty input.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    return ensure_utc(datetime.fromisoformat(value))


def format_timestamp(value: datetime | None) -> str | None:
    """Canonical string form (UTC, microsecond precision)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")
