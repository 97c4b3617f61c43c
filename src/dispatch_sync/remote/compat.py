"""Client version compatibility check against the backend."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from dispatch_sync.remote.client import RemoteBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompatStatus:
    """Result of ``check_version_compat``."""

    compatible: bool = True
    min_version: str | None = None
    force_update: bool = False
    message: str | None = None

    @property
    def blocks_sync(self) -> bool:
        return not self.compatible and self.force_update

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompatStatus:
        return cls(
            compatible=bool(data.get("compatible", True)),
            min_version=data.get("min_version"),
            force_update=bool(data.get("force_update", False)),
            message=data.get("message"),
        )


class AppCompatChecker:
    """Asks the server whether this client version may sync.

    Network or server failures are treated as compatible so an outage never
    locks users out of their local data.
    """

    def __init__(self, remote: RemoteBackend, *, platform: str, client_version: str) -> None:
        self._remote = remote
        self._platform = platform
        self._client_version = client_version
        self._last: CompatStatus | None = None

    @property
    def last_status(self) -> CompatStatus | None:
        return self._last

    async def check(self) -> CompatStatus:
        try:
            result = await self._remote.rpc(
                "check_version_compat",
                {"p_platform": self._platform, "p_client_version": self._client_version},
            )
        except Exception:
            logger.warning("Version compatibility check failed, assuming compatible", exc_info=True)
            return CompatStatus()

        if isinstance(result, list):
            result = result[0] if result else {}
        status = CompatStatus.from_dict(result if isinstance(result, dict) else {})
        if not status.compatible:
            logger.error(
                "Client %s %s is not supported (minimum %s)",
                self._platform,
                self._client_version,
                status.min_version,
            )
        self._last = status
        return status
