"""Results of upload batches and whole sync cycles."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from dispatch_sync.remote.errors import SyncError


@dataclass
class BatchSyncResult:
    """Outcome of uploading one table's dirty records."""

    table: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, SyncError]] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.deferred)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    @property
    def transient_failures(self) -> list[tuple[str, SyncError]]:
        return [(record_id, error) for record_id, error in self.failed if error.is_transient]

    @property
    def record_failures(self) -> list[tuple[str, SyncError]]:
        return [(record_id, error) for record_id, error in self.failed if error.is_record_level]

    @property
    def summary(self) -> str:
        parts = [f"{len(self.succeeded)} succeeded"]
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        if self.deferred:
            parts.append(f"{len(self.deferred)} deferred")
        return f"{self.table}: " + ", ".join(parts)

    @property
    def error_summary(self) -> str | None:
        """Failure counts grouped by kind, e.g. ``"2 foreign_key, 1 timeout"``."""
        if not self.failed:
            return None
        counts = Counter(error.kind.value for _, error in self.failed)
        return ", ".join(f"{count} {kind}" for kind, count in counts.most_common())


@dataclass
class CycleReport:
    """What one sync cycle did."""

    full: bool
    started_at: datetime
    finished_at: datetime | None = None
    uploads: dict[str, BatchSyncResult] = field(default_factory=dict)
    downloaded: dict[str, int] = field(default_factory=dict)
    orphans_removed: dict[str, int] = field(default_factory=dict)
    error: SyncError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def uploaded_count(self) -> int:
        return sum(len(result.succeeded) for result in self.uploads.values())

    @property
    def failed_records(self) -> list[tuple[str, str, SyncError]]:
        return [
            (table, record_id, error)
            for table, result in self.uploads.items()
            for record_id, error in result.record_failures
        ]

    @property
    def downloaded_count(self) -> int:
        return sum(self.downloaded.values())

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
