"""Decoding of broadcast channel messages into change events."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from dispatch_sync.dto.broadcast import CURRENT_EVENT_VERSION, ChangeEvent, MalformedEventError

logger = logging.getLogger(__name__)


class BroadcastEventParser:
    """
    Turns raw broadcast payloads into :class:`ChangeEvent` values.

    A broadcast arrives either as the trigger payload itself or wrapped in
    ``{"event", "type", "payload": {...}}``. Malformed messages produce
    ``None`` and a warning; events with a newer version than this client
    understands are processed best-effort and reported once per version.
    """

    def __init__(self) -> None:
        self._reported_versions: set[int] = set()
        self.malformed_count = 0

    def parse(self, message: Mapping[str, Any]) -> ChangeEvent | None:
        payload = _unwrap(message)
        if payload is None:
            self._malformed("Broadcast message without payload: %r", message)
            return None
        try:
            event = ChangeEvent.from_payload(payload)
        except MalformedEventError as e:
            self._malformed("Malformed broadcast event (%s)", e)
            return None

        if event.event_version > CURRENT_EVENT_VERSION:
            if event.event_version not in self._reported_versions:
                self._reported_versions.add(event.event_version)
                logger.warning(
                    "Broadcast event version %d is newer than supported %d, processing anyway",
                    event.event_version,
                    CURRENT_EVENT_VERSION,
                )
        return event

    def _malformed(self, message: str, *args: Any) -> None:
        self.malformed_count += 1
        logger.warning(message, *args)


def _unwrap(message: Mapping[str, Any]) -> Mapping[str, Any] | None:
    current: Any = message
    # Channel envelopes may nest once more around the trigger payload.
    for _ in range(3):
        if not isinstance(current, Mapping):
            return None
        if "table" in current:
            return current
        current = current.get("payload")
    return None
