"""Tests for configuration loading, clamping and persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from dispatch_sync.config import (
    CircuitBreakerSettings,
    RealtimeSettings,
    RemoteSettings,
    SyncConfig,
    SyncSettings,
    get_dispatch_sync_dir,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DISPATCH_SYNC_DIR", "DISPATCH_SYNC_URL", "DISPATCH_SYNC_ANON_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_sync_defaults(self) -> None:
        settings = SyncSettings()
        assert settings.debounce_seconds == 0.5
        assert settings.max_retries == 5
        assert settings.retry_max_delay == 30.0
        assert settings.auto_recovery_cooldown == 3600.0

    def test_breaker_defaults(self) -> None:
        settings = CircuitBreakerSettings()
        assert (settings.failure_threshold, settings.initial_cooldown, settings.max_cooldown) == (
            3,
            30.0,
            300.0,
        )

    def test_paths_under_data_dir(self, tmp_path: Path) -> None:
        config = SyncConfig(data_dir=tmp_path)
        assert config.config_path == tmp_path / "config.toml"
        assert config.db_path == tmp_path / "dispatch.db"

    def test_data_dir_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("DISPATCH_SYNC_DIR", str(tmp_path))
        assert get_dispatch_sync_dir() == tmp_path

    def test_data_dir_default(self) -> None:
        assert get_dispatch_sync_dir() == Path.home() / ".dispatch-sync"


class TestClamping:
    def test_sync_values_clamped(self) -> None:
        settings = SyncSettings.from_dict(
            {"debounce_seconds": -5, "max_retries": "many", "upload_concurrency": 1000}
        )
        assert settings.debounce_seconds == 0.0
        assert settings.max_retries == 5
        assert settings.upload_concurrency == 32

    def test_max_cooldown_never_below_initial(self) -> None:
        settings = CircuitBreakerSettings.from_dict({"initial_cooldown": 600, "max_cooldown": 60})
        assert settings.max_cooldown == 600.0

    def test_empty_channel_falls_back(self) -> None:
        assert RealtimeSettings.from_dict({"channel": ""}).channel == "dispatch:broadcast"

    def test_remote_url_normalized(self) -> None:
        remote = RemoteSettings.from_dict({"url": "https://xyz.supabase.co/", "anon_key": "k"})
        assert remote.url == "https://xyz.supabase.co"
        assert remote.is_configured

    def test_remote_unconfigured_by_default(self) -> None:
        assert not RemoteSettings().is_configured


class TestPersistence:
    def test_load_creates_default_file(self, tmp_path: Path) -> None:
        config = SyncConfig.load(tmp_path / "config.toml")

        assert config.config_path.exists()
        assert config.data_dir == tmp_path
        assert config.to_dict() == SyncConfig(data_dir=tmp_path).to_dict()

    def test_round_trip(self, tmp_path: Path) -> None:
        config = SyncConfig(data_dir=tmp_path)
        config.remote.url = "https://xyz.supabase.co"
        config.remote.anon_key = 'key-with-"quote"'
        config.sync.debounce_seconds = 2.0
        config.realtime.enabled = False
        config.save()

        loaded = SyncConfig.load(config.config_path)

        assert loaded.to_dict() == config.to_dict()

    def test_env_overrides_not_persisted(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("DISPATCH_SYNC_URL", "https://env.supabase.co/")
        monkeypatch.setenv("DISPATCH_SYNC_ANON_KEY", "env-key")

        config = SyncConfig.load(tmp_path / "config.toml")

        assert config.remote.url == "https://env.supabase.co"
        assert config.remote.anon_key == "env-key"
        assert "env-key" not in config.config_path.read_text(encoding="utf-8")

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        SyncConfig(data_dir=tmp_path).save()
        assert [p.name for p in tmp_path.iterdir()] == ["config.toml"]
