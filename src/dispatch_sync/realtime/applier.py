"""Application of realtime change events to the local store."""

from __future__ import annotations

import logging
from collections.abc import Callable

from dispatch_sync.core.sync_state import EntitySyncState
from dispatch_sync.dto.broadcast import ChangeEvent
from dispatch_sync.dto.registry import is_synced_table
from dispatch_sync.dto.rows import RowDecodeError
from dispatch_sync.sync.entity_state import ApplyOutcome, EntityStateTracker

logger = logging.getLogger(__name__)


class RemoteChangeApplier:
    """
    Applies :class:`ChangeEvent` values through the tracker's remote path.

    Events originating from the current user are echoes of this device's own
    uploads; they are skipped when the local copy already reflects them.
    Events with no origin (migrations, backfills) are never echoes. Only the
    columns an event carries are merged into an existing local copy. Deletes
    are applied as hard deletes.

    Args:
        tracker: State tracker sharing the engine's per-record locks
        current_user: Callable returning the signed-in user id
    """

    def __init__(
        self,
        tracker: EntityStateTracker,
        current_user: Callable[[], str | None],
    ) -> None:
        self._tracker = tracker
        self._current_user = current_user

    def is_own_echo(self, event: ChangeEvent) -> bool:
        if event.is_system_origin:
            return False
        user_id = self._current_user()
        return user_id is not None and event.origin_user_id == user_id

    async def apply(self, event: ChangeEvent) -> ApplyOutcome:
        if not is_synced_table(event.table):
            logger.debug("Ignoring broadcast for unsynced table %s", event.table)
            return ApplyOutcome.IGNORED
        record_id = event.record_id
        if record_id is None:
            logger.warning("Ignoring %s on %s without id", event.operation, event.table)
            return ApplyOutcome.IGNORED

        own_echo = self.is_own_echo(event)
        if event.is_delete:
            return await self._apply_delete(event.table, record_id, own_echo)

        try:
            outcome = await self._tracker.apply_remote_row(
                event.table, event.record or {}, event.updated_at, own_echo=own_echo
            )
        except RowDecodeError as e:
            logger.warning("Ignoring undecodable %s event: %s", event.table, e)
            return ApplyOutcome.IGNORED
        logger.debug("%s %s/%s: %s", event.operation, event.table, record_id, outcome)
        return outcome

    async def _apply_delete(self, table: str, record_id: str, own_echo: bool) -> ApplyOutcome:
        if own_echo:
            local = await self._tracker.store.get(table, record_id)
            if local is not None and local.sync.state != EntitySyncState.SYNCED:
                return ApplyOutcome.SKIPPED_ECHO
        outcome = await self._tracker.apply_remote_delete(table, record_id)
        logger.debug("DELETE %s/%s: %s", table, record_id, outcome)
        return outcome
