"""Configuration for dispatch-sync.

Configuration is stored in ~/.dispatch-sync/config.toml and the local
database in ~/.dispatch-sync/dispatch.db. Every section is a dataclass with
``to_dict``/``from_dict``; ``from_dict`` clamps values into safe ranges so a
hand-edited file can never configure a zero timeout or a negative backoff.
"""

from __future__ import annotations

import logging
import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def get_dispatch_sync_dir() -> Path:
    """Get the data directory.

    Priority:
    1. DISPATCH_SYNC_DIR environment variable
    2. ~/.dispatch-sync/
    """
    env_dir = os.environ.get("DISPATCH_SYNC_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".dispatch-sync"


def _clamp(value: Any, default: float, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _clamp_int(value: Any, default: int, low: int, high: int) -> int:
    return int(_clamp(value, default, low, high))


def _toml_str(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class RemoteSettings:
    """Remote backend connection settings."""

    url: str = ""
    anon_key: str = ""
    request_timeout: float = 15.0
    page_size: int = 500

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.anon_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "anon_key": self.anon_key,
            "request_timeout": self.request_timeout,
            "page_size": self.page_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteSettings:
        return cls(
            url=str(data.get("url", "")).rstrip("/"),
            anon_key=str(data.get("anon_key", "")),
            request_timeout=_clamp(data.get("request_timeout"), 15.0, 1.0, 300.0),
            page_size=_clamp_int(data.get("page_size"), 500, 1, 1000),
        )


@dataclass
class SyncSettings:
    """Sync cycle tuning."""

    debounce_seconds: float = 0.5
    max_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    upload_concurrency: int = 4
    request_timeout: float = 30.0
    download_page_size: int = 500
    auto_recovery_cooldown: float = 3600.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "debounce_seconds": self.debounce_seconds,
            "max_retries": self.max_retries,
            "retry_base_delay": self.retry_base_delay,
            "retry_max_delay": self.retry_max_delay,
            "upload_concurrency": self.upload_concurrency,
            "request_timeout": self.request_timeout,
            "download_page_size": self.download_page_size,
            "auto_recovery_cooldown": self.auto_recovery_cooldown,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSettings:
        return cls(
            debounce_seconds=_clamp(data.get("debounce_seconds"), 0.5, 0.0, 10.0),
            max_retries=_clamp_int(data.get("max_retries"), 5, 0, 50),
            retry_base_delay=_clamp(data.get("retry_base_delay"), 1.0, 0.0, 60.0),
            retry_max_delay=_clamp(data.get("retry_max_delay"), 30.0, 0.0, 3600.0),
            upload_concurrency=_clamp_int(data.get("upload_concurrency"), 4, 1, 32),
            request_timeout=_clamp(data.get("request_timeout"), 30.0, 1.0, 600.0),
            download_page_size=_clamp_int(data.get("download_page_size"), 500, 1, 1000),
            auto_recovery_cooldown=_clamp(
                data.get("auto_recovery_cooldown"), 3600.0, 0.0, 7 * 86400.0
            ),
        )


@dataclass
class CircuitBreakerSettings:
    """Suppression of automatic syncs after consecutive failures."""

    failure_threshold: int = 3
    initial_cooldown: float = 30.0
    max_cooldown: float = 300.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_threshold": self.failure_threshold,
            "initial_cooldown": self.initial_cooldown,
            "max_cooldown": self.max_cooldown,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitBreakerSettings:
        initial = _clamp(data.get("initial_cooldown"), 30.0, 1.0, 3600.0)
        return cls(
            failure_threshold=_clamp_int(data.get("failure_threshold"), 3, 1, 100),
            initial_cooldown=initial,
            max_cooldown=max(initial, _clamp(data.get("max_cooldown"), 300.0, 1.0, 86400.0)),
        )


@dataclass
class RealtimeSettings:
    """Broadcast channel settings."""

    enabled: bool = True
    channel: str = "dispatch:broadcast"
    heartbeat_seconds: float = 25.0
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    max_reconnect_attempts: int = 10

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "channel": self.channel,
            "heartbeat_seconds": self.heartbeat_seconds,
            "reconnect_delay": self.reconnect_delay,
            "max_reconnect_delay": self.max_reconnect_delay,
            "max_reconnect_attempts": self.max_reconnect_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RealtimeSettings:
        return cls(
            enabled=bool(data.get("enabled", True)),
            channel=str(data.get("channel", "dispatch:broadcast")) or "dispatch:broadcast",
            heartbeat_seconds=_clamp(data.get("heartbeat_seconds"), 25.0, 5.0, 300.0),
            reconnect_delay=_clamp(data.get("reconnect_delay"), 1.0, 0.1, 60.0),
            max_reconnect_delay=_clamp(data.get("max_reconnect_delay"), 60.0, 1.0, 3600.0),
            max_reconnect_attempts=_clamp_int(data.get("max_reconnect_attempts"), 10, 0, 1000),
        )


@dataclass
class AppSettings:
    """Identity reported to the backend's version check."""

    platform: str = "python"
    version: str = "0.4.0"
    check_compat: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "version": self.version,
            "check_compat": self.check_compat,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppSettings:
        return cls(
            platform=str(data.get("platform", "python")),
            version=str(data.get("version", "0.4.0")),
            check_compat=bool(data.get("check_compat", True)),
        )


@dataclass
class SyncConfig:
    """Root configuration.

    Storage location: ~/.dispatch-sync/config.toml
    Database location: ~/.dispatch-sync/dispatch.db
    """

    data_dir: Path = field(default_factory=get_dispatch_sync_dir)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    realtime: RealtimeSettings = field(default_factory=RealtimeSettings)
    app: AppSettings = field(default_factory=AppSettings)
    version: str = "1.0"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "dispatch.db"

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "remote": self.remote.to_dict(),
            "sync": self.sync.to_dict(),
            "circuit_breaker": self.circuit_breaker.to_dict(),
            "realtime": self.realtime.to_dict(),
            "app": self.app.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, data_dir: Path | None = None) -> SyncConfig:
        return cls(
            data_dir=data_dir or get_dispatch_sync_dir(),
            remote=RemoteSettings.from_dict(data.get("remote", {})),
            sync=SyncSettings.from_dict(data.get("sync", {})),
            circuit_breaker=CircuitBreakerSettings.from_dict(data.get("circuit_breaker", {})),
            realtime=RealtimeSettings.from_dict(data.get("realtime", {})),
            app=AppSettings.from_dict(data.get("app", {})),
            version=str(data.get("version", "1.0")),
        )

    @classmethod
    def load(cls, config_path: Path | None = None) -> SyncConfig:
        """Load configuration from file, or create the default if it doesn't exist.

        ``DISPATCH_SYNC_URL`` and ``DISPATCH_SYNC_ANON_KEY`` override the
        remote section without being written back to disk.
        """
        if config_path is None:
            data_dir = get_dispatch_sync_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            config = cls.from_dict(data, data_dir=data_dir)
        else:
            config = cls(data_dir=data_dir)
            config.save()
            logger.info("Created default configuration at %s", config_path)

        env_url = os.environ.get("DISPATCH_SYNC_URL")
        if env_url:
            config.remote.url = env_url.rstrip("/")
        env_key = os.environ.get("DISPATCH_SYNC_ANON_KEY")
        if env_key:
            config.remote.anon_key = env_key
        return config

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        lines = [
            "# dispatch-sync configuration",
            "",
            f"version = {_toml_str(self.version)}",
        ]
        for section, values in self.to_dict().items():
            if not isinstance(values, dict):
                continue
            lines += ["", f"[{section}]"]
            for key, value in values.items():
                lines.append(f"{key} = {_toml_value(value)}")

        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(self.config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return _toml_str(str(value))

