"""Tolerant enum decoding for remote rows.

Remote rows may carry enum values this client does not know yet (a newer
server, a manual data fix). Decoding never fails on those: callers get the
documented default for the column and a single warning per distinct value.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class UnknownVariant:
    """A raw value that matched no member of ``enum_name``."""

    enum_name: str
    raw: Any


_reported: set[tuple[str, str]] = set()
_reported_lock = threading.Lock()


def parse_variant(enum_cls: type[E], raw: Any) -> E | UnknownVariant:
    """Parse ``raw`` into ``enum_cls`` without raising."""
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except (ValueError, TypeError):
        return UnknownVariant(enum_name=enum_cls.__name__, raw=raw)


def decode_enum(enum_cls: type[E], raw: Any, default: E, *, field: str = "") -> E:
    """Decode a column value, falling back to ``default`` on unknown input.

    A missing value (None) silently maps to the default. Unrecognized values
    are logged once per ``(enum, value)`` pair for the life of the process.
    """
    if raw is None:
        return default
    result = parse_variant(enum_cls, raw)
    if isinstance(result, UnknownVariant):
        _report_unknown(result, default, field)
        return default
    return result


def _report_unknown(variant: UnknownVariant, default: Enum, field: str) -> None:
    key = (variant.enum_name, repr(variant.raw))
    with _reported_lock:
        if key in _reported:
            return
        _reported.add(key)
    logger.warning(
        "Unknown %s value %r%s, using %r",
        variant.enum_name,
        variant.raw,
        f" in {field}" if field else "",
        default.value,
    )


def reset_unknown_variant_log() -> None:
    """Forget which unknown values were already reported."""
    with _reported_lock:
        _reported.clear()
