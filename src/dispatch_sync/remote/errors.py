"""Error taxonomy for remote operations.

Every failure surfaced by the sync engine is a :class:`SyncError` with a
:class:`SyncErrorKind`. The kind decides how the engine reacts:

- transient kinds (network, timeout, 5xx, rate limiting) are retried on the
  next cycle and count towards the circuit breaker;
- record-level kinds (constraint violations, permission denied on a row,
  missing rows) mark only the offending record as failed.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any

import aiohttp


class RemoteError(Exception):
    """Error returned by the remote backend (HTTP status plus PostgREST code)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.details = details


class SyncErrorKind(StrEnum):
    NO_INTERNET = "no_internet"
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    NETWORK = "network"
    PERMISSION_DENIED = "permission_denied"
    FOREIGN_KEY = "foreign_key"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INVALID_DATA = "invalid_data"
    ENCODING_FAILED = "encoding_failed"
    DECODING_FAILED = "decoding_failed"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


TRANSIENT_KINDS = frozenset(
    {
        SyncErrorKind.NO_INTERNET,
        SyncErrorKind.CONNECTION_LOST,
        SyncErrorKind.TIMEOUT,
        SyncErrorKind.NETWORK,
        SyncErrorKind.SERVER_ERROR,
        SyncErrorKind.RATE_LIMITED,
        SyncErrorKind.UNKNOWN,
    }
)

_USER_MESSAGES = {
    SyncErrorKind.NO_INTERNET: "No internet connection",
    SyncErrorKind.CONNECTION_LOST: "Connection lost",
    SyncErrorKind.TIMEOUT: "Request timed out",
    SyncErrorKind.NETWORK: "Network error",
    SyncErrorKind.PERMISSION_DENIED: "You don't have permission to change this item",
    SyncErrorKind.FOREIGN_KEY: "A related item no longer exists",
    SyncErrorKind.CONFLICT: "This item conflicts with an existing one",
    SyncErrorKind.NOT_FOUND: "This item was deleted on another device",
    SyncErrorKind.INVALID_DATA: "The server rejected this item as invalid",
    SyncErrorKind.ENCODING_FAILED: "Could not prepare this item for upload",
    SyncErrorKind.DECODING_FAILED: "Could not read the server response",
    SyncErrorKind.SERVER_ERROR: "Server error",
    SyncErrorKind.RATE_LIMITED: "Too many requests, waiting before retrying",
    SyncErrorKind.UNKNOWN: "Sync failed",
}

# PostgREST / Postgres SQLSTATE codes
_CODE_KINDS = {
    "23503": SyncErrorKind.FOREIGN_KEY,
    "23505": SyncErrorKind.CONFLICT,
    "23502": SyncErrorKind.INVALID_DATA,
    "23514": SyncErrorKind.INVALID_DATA,
    "22P02": SyncErrorKind.INVALID_DATA,
    "42501": SyncErrorKind.PERMISSION_DENIED,
    "PGRST116": SyncErrorKind.NOT_FOUND,
    "PGRST204": SyncErrorKind.INVALID_DATA,
}


class SyncError(Exception):
    """A classified sync failure."""

    def __init__(
        self,
        kind: SyncErrorKind,
        message: str = "",
        *,
        table: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message or _USER_MESSAGES[kind])
        self.kind = kind
        self.table = table
        self.status_code = status_code
        self.code = code

    @property
    def message(self) -> str:
        return str(self)

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def is_record_level(self) -> bool:
        return not self.is_transient

    @property
    def user_message(self) -> str:
        if self.kind == SyncErrorKind.PERMISSION_DENIED and self.table:
            return f"You don't have permission to change {self.table}"
        if self.kind == SyncErrorKind.SERVER_ERROR and self.status_code:
            return f"Server error ({self.status_code})"
        return _USER_MESSAGES[self.kind]

    def __repr__(self) -> str:
        return f"SyncError(kind={self.kind.value!r}, message={str(self)!r})"

    @classmethod
    def from_exception(cls, exc: BaseException, *, table: str | None = None) -> SyncError:
        """Classify an arbitrary exception raised during a remote round-trip."""
        if isinstance(exc, SyncError):
            if exc.table is None and table is not None:
                exc.table = table
            return exc
        if isinstance(exc, RemoteError):
            return cls._from_remote(exc, table)
        if isinstance(exc, TimeoutError | asyncio.TimeoutError):
            return cls(SyncErrorKind.TIMEOUT, table=table)
        if isinstance(exc, aiohttp.ClientError):
            return cls(_classify_client_error(exc), str(exc), table=table)
        if isinstance(exc, TypeError) and "JSON serializable" in str(exc):
            return cls(SyncErrorKind.ENCODING_FAILED, str(exc), table=table)
        return cls(SyncErrorKind.UNKNOWN, str(exc) or type(exc).__name__, table=table)

    @classmethod
    def _from_remote(cls, exc: RemoteError, table: str | None) -> SyncError:
        status = exc.status_code
        message = str(exc)
        kind: SyncErrorKind | None = _CODE_KINDS.get(exc.code or "")
        if kind is None and "permission denied" in message.lower():
            kind = SyncErrorKind.PERMISSION_DENIED
        if kind is None:
            if status is None:
                cause = exc.__cause__
                if isinstance(cause, BaseException):
                    return cls.from_exception(cause, table=table)
                kind = SyncErrorKind.NETWORK
            elif status in (401, 403):
                kind = SyncErrorKind.PERMISSION_DENIED
            elif status == 404:
                kind = SyncErrorKind.NOT_FOUND
            elif status == 408:
                kind = SyncErrorKind.TIMEOUT
            elif status == 409:
                kind = SyncErrorKind.CONFLICT
            elif status == 429:
                kind = SyncErrorKind.RATE_LIMITED
            elif status >= 500:
                kind = SyncErrorKind.SERVER_ERROR
            elif 400 <= status < 500:
                kind = SyncErrorKind.INVALID_DATA
            else:
                kind = SyncErrorKind.UNKNOWN
        return cls(kind, message, table=table, status_code=status, code=exc.code)


def _classify_client_error(exc: aiohttp.ClientError) -> SyncErrorKind:
    if isinstance(exc, aiohttp.ClientConnectorError):
        return SyncErrorKind.NO_INTERNET
    if isinstance(exc, aiohttp.ServerDisconnectedError | aiohttp.ClientOSError):
        return SyncErrorKind.CONNECTION_LOST
    if isinstance(exc, aiohttp.ServerTimeoutError):
        return SyncErrorKind.TIMEOUT
    if isinstance(exc, aiohttp.ContentTypeError):
        return SyncErrorKind.DECODING_FAILED
    return SyncErrorKind.NETWORK
