"""Shared CLI helpers for configuration, resources and output."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from dispatch_sync.config import SyncConfig
from dispatch_sync.remote.client import RemoteClient
from dispatch_sync.storage.sqlite_store import SQLiteStore
from dispatch_sync.sync.orchestrator import SyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Resources opened during a command, closed before the event loop shuts down.
_open_resources: list[Any] = []


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async command, closing stores and HTTP sessions afterwards."""

    async def _with_cleanup() -> T:
        try:
            return await coro
        finally:
            for resource in reversed(_open_resources):
                try:
                    await resource.close()
                except Exception:
                    logger.debug("Failed to close %r during cleanup", resource, exc_info=True)
            _open_resources.clear()
            # Drain aiosqlite worker callbacks before asyncio.run() closes the loop.
            await asyncio.sleep(0)

    return asyncio.run(_with_cleanup())


def load_config() -> SyncConfig:
    return SyncConfig.load()


async def open_store(config: SyncConfig) -> SQLiteStore:
    store = SQLiteStore(config.db_path)
    await store.initialize()
    _open_resources.append(store)
    return store


async def open_remote(config: SyncConfig, token: str | None) -> RemoteClient:
    if not config.remote.is_configured:
        typer.secho(
            f"Remote not configured. Set url and anon_key in {config.config_path} "
            "or DISPATCH_SYNC_URL / DISPATCH_SYNC_ANON_KEY.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(1)
    remote = RemoteClient(
        config.remote.url,
        config.remote.anon_key,
        access_token=token,
        timeout=config.remote.request_timeout,
        page_size=config.remote.page_size,
    )
    await remote.connect()
    _open_resources.append(remote)
    return remote


async def open_engine(config: SyncConfig, token: str | None, user_id: str | None) -> SyncEngine:
    store = await open_store(config)
    remote = await open_remote(config, token)
    engine = SyncEngine(
        store,
        remote,
        settings=config.sync,
        breaker_settings=config.circuit_breaker,
    )
    engine.set_current_user(user_id)
    return engine


def output_result(data: dict[str, Any], as_json: bool = False) -> None:
    """Output result in appropriate format."""
    if as_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return
    if data.get("error"):
        typer.secho(f"Error: {data['error']}", fg=typer.colors.RED)
    for key, value in data.items():
        if key == "error" or isinstance(value, dict | list):
            continue
        typer.echo(f"{key.replace('_', ' ').capitalize()}: {value}")
