"""WebSocket channel for realtime broadcast messages (Phoenix protocol)."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode

import aiohttp

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"
JOIN_TIMEOUT = 10.0


class ChannelState(StrEnum):
    """Channel connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSED = "closed"


class ChannelClosedError(ConnectionError):
    """The socket closed or the server rejected the channel."""


class RealtimeChannel:
    """
    Private broadcast channel on the backend's realtime service.

    Usage:
        channel = RealtimeChannel(url, anon_key, "dispatch:broadcast", access_token=token)
        await channel.connect()
        async for payload in channel.messages():
            ...
        await channel.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        channel: str,
        *,
        access_token: str | None = None,
        heartbeat_seconds: float = 25.0,
    ) -> None:
        """
        Initialize the channel.

        Args:
            base_url: Project URL (http(s) is converted to ws(s))
            api_key: Public (anon) API key
            channel: Channel name without the ``realtime:`` prefix
            access_token: Bearer token authorizing the private channel
            heartbeat_seconds: Interval between heartbeats
        """
        if base_url.startswith("http://"):
            base_url = base_url.replace("http://", "ws://", 1)
        elif base_url.startswith("https://"):
            base_url = base_url.replace("https://", "wss://", 1)
        if not base_url.startswith(("ws://", "wss://")):
            raise ValueError("Invalid WebSocket URL scheme: must start with ws:// or wss://")

        query = urlencode({"apikey": api_key, "vsn": PROTOCOL_VERSION})
        self._url = f"{base_url.rstrip('/')}/realtime/v1/websocket?{query}"
        self._topic = f"realtime:{channel}"
        self._access_token = access_token
        self._heartbeat_seconds = heartbeat_seconds

        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._ref = 0
        self._join_ref: str | None = None
        self._state = ChannelState.DISCONNECTED

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def is_joined(self) -> bool:
        return self._state == ChannelState.JOINED

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _send(self, topic: str, event: str, payload: dict[str, Any]) -> str:
        if self._ws is None or self._ws.closed:
            raise ChannelClosedError("Socket is not open")
        ref = self._next_ref()
        await self._ws.send_str(
            json.dumps(
                {
                    "topic": topic,
                    "event": event,
                    "payload": payload,
                    "ref": ref,
                    "join_ref": self._join_ref,
                }
            )
        )
        return ref

    async def connect(self) -> None:
        """Open the socket and join the channel."""
        if self._state == ChannelState.JOINED:
            return
        self._state = ChannelState.CONNECTING

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        try:
            self._ws = await self._session.ws_connect(self._url)
            join_payload: dict[str, Any] = {
                "config": {"broadcast": {"self": False, "ack": False}, "private": True},
            }
            if self._access_token:
                join_payload["access_token"] = self._access_token
            self._join_ref = None
            ref = await self._send(self._topic, "phx_join", join_payload)
            self._join_ref = ref
            async with asyncio.timeout(JOIN_TIMEOUT):
                await self._await_join_reply(ref)
        except Exception as e:
            await self._teardown()
            self._state = ChannelState.DISCONNECTED
            if isinstance(e, ChannelClosedError):
                raise
            raise ChannelClosedError(f"Failed to join {self._topic}: {e}") from e

        self._state = ChannelState.JOINED
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Joined realtime channel %s", self._topic)

    async def _await_join_reply(self, ref: str) -> None:
        assert self._ws is not None
        while True:
            message = await self._ws.receive()
            if message.type != aiohttp.WSMsgType.TEXT:
                raise ChannelClosedError(f"Socket closed while joining ({message.type.name})")
            data = json.loads(message.data)
            if data.get("event") != "phx_reply" or data.get("ref") != ref:
                continue
            payload = data.get("payload") or {}
            if payload.get("status") != "ok":
                raise ChannelClosedError(f"Join rejected: {payload.get('response')!r}")
            return

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                await self._send("phoenix", "heartbeat", {})
            except (ChannelClosedError, ConnectionError, aiohttp.ClientError):
                logger.debug("Heartbeat failed, socket is closing")
                return

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield broadcast payloads until the socket closes.

        Raises:
            ChannelClosedError: When the socket closes, errors, or the server
                closes the channel.
        """
        if self._ws is None or self._state != ChannelState.JOINED:
            raise ChannelClosedError("Channel is not joined")

        while True:
            message = await self._ws.receive()
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(message.data)
                except ValueError:
                    logger.warning("Dropping non-JSON realtime frame")
                    continue
                event = data.get("event")
                if event == "broadcast" and data.get("topic") == self._topic:
                    payload = data.get("payload")
                    if isinstance(payload, dict):
                        yield payload
                elif event in ("phx_close", "phx_error") and data.get("topic") == self._topic:
                    self._state = ChannelState.DISCONNECTED
                    raise ChannelClosedError(f"Channel {event}")
            elif message.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                self._state = ChannelState.DISCONNECTED
                raise ChannelClosedError(f"Socket {message.type.name.lower()}")

    async def close(self) -> None:
        """Leave the channel and close the socket."""
        if self._ws is not None and not self._ws.closed and self._state == ChannelState.JOINED:
            try:
                await self._send(self._topic, "phx_leave", {})
            except (ChannelClosedError, ConnectionError, aiohttp.ClientError):
                logger.debug("Could not send phx_leave", exc_info=True)
        await self._teardown()
        self._state = ChannelState.CLOSED

    async def _teardown(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
