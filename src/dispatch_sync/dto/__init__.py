"""Mapping between local records and remote rows."""

from dispatch_sync.dto.broadcast import ChangeEvent, ChangeOperation, MalformedEventError
from dispatch_sync.dto.enums import UnknownVariant, decode_enum, parse_variant
from dispatch_sync.dto.registry import (
    UPLOAD_ORDER,
    UnknownTableError,
    codec_for,
)
from dispatch_sync.dto.rows import Column, ColumnKind, RecordCodec, RowDecodeError

__all__ = [
    "UPLOAD_ORDER",
    "ChangeEvent",
    "ChangeOperation",
    "Column",
    "ColumnKind",
    "MalformedEventError",
    "RecordCodec",
    "RowDecodeError",
    "UnknownTableError",
    "UnknownVariant",
    "codec_for",
    "decode_enum",
    "parse_variant",
]
