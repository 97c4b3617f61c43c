"""Tests for the dispatch-sync CLI."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dispatch_sync.cli.main import app
from dispatch_sync.core.records import TaskItem
from dispatch_sync.storage.sqlite_store import SQLiteStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("DISPATCH_SYNC_DIR", str(tmp_path))
    monkeypatch.delenv("DISPATCH_SYNC_URL", raising=False)
    monkeypatch.delenv("DISPATCH_SYNC_ANON_KEY", raising=False)
    return tmp_path


def _seed_failed_task(db_path: Path) -> str:
    task = TaskItem(title="Order sign")
    failed = task.with_sync(
        task.sync.rejected("Server error: check violation", datetime(2026, 3, 1, tzinfo=UTC))
    )

    async def _seed() -> None:
        store = SQLiteStore(db_path)
        await store.initialize()
        try:
            await store.save(failed)
        finally:
            await store.close()

    asyncio.run(_seed())
    return task.id


# ── config ───────────────────────────────────────────────────────


class TestConfigShow:
    def test_creates_default_config(self, data_dir: Path) -> None:
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert (data_dir / "config.toml").exists()
        assert "[sync]" in result.stdout

    def test_json_masks_anon_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DISPATCH_SYNC_ANON_KEY", "abcdefghijklmnop")

        result = runner.invoke(app, ["config", "show", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["remote"]["anon_key"] == "abcdef..."
        assert data["sync"]["debounce_seconds"] == 0.5


# ── status / reset-failed ────────────────────────────────────────


class TestStatus:
    def test_empty_database(self) -> None:
        result = runner.invoke(app, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["tables"]["tasks"] == {
            "pending": 0,
            "syncing": 0,
            "synced": 0,
            "failed": 0,
        }
        assert data["failed"] == []

    def test_lists_failed_records(self, data_dir: Path) -> None:
        task_id = _seed_failed_task(data_dir / "dispatch.db")

        result = runner.invoke(app, ["status", "--json"])

        data = json.loads(result.stdout)
        assert data["tables"]["tasks"]["failed"] == 1
        assert data["failed"] == [
            {
                "table": "tasks",
                "id": task_id,
                "retries": 1,
                "error": "Server error: check violation",
            }
        ]


class TestResetFailed:
    def test_resets_failed_records(self, data_dir: Path) -> None:
        _seed_failed_task(data_dir / "dispatch.db")

        result = runner.invoke(app, ["reset-failed"])

        assert result.exit_code == 0
        assert "Reset 1 failed record(s)" in result.stdout

    def test_unknown_table(self) -> None:
        result = runner.invoke(app, ["reset-failed", "--table", "widgets"])
        assert result.exit_code == 1
        assert "Unknown table(s): widgets" in result.stdout


# ── remote commands ──────────────────────────────────────────────


class TestRemoteCommands:
    def test_sync_requires_remote(self) -> None:
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 1
        assert "Remote not configured" in result.stdout

    def test_history_rejects_unknown_entity(self) -> None:
        result = runner.invoke(app, ["history", "widget", "w-1"])
        assert result.exit_code == 1
        assert "Unknown entity type: widget" in result.stdout
