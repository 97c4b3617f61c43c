"""HTTP client for the remote Postgres backend (PostgREST API)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from dispatch_sync.remote.errors import RemoteError, SyncError, SyncErrorKind
from dispatch_sync.utils.timeutils import format_timestamp

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


class RemoteBackend(Protocol):
    """Operations the sync engine needs from the remote store."""

    async def upsert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        ...

    async def fetch_changed(
        self, table: str, since: datetime | None, *, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        ...

    async def fetch_ids(self, table: str) -> set[str]:
        ...

    async def fetch_rows(
        self,
        table: str,
        *,
        filters: Mapping[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        ...


class RemoteClient:
    """
    :class:`RemoteBackend` over the PostgREST HTTP API.

    Usage:
        async with RemoteClient("https://xyz.supabase.co", anon_key) as remote:
            remote.set_access_token(session_token)
            row = await remote.upsert("tasks", {"id": "...", "title": "Call seller"})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: str | None = None,
        timeout: float = 15.0,
        page_size: int = 500,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Project URL (e.g., "https://xyz.supabase.co")
            api_key: Public (anon) API key sent as ``apikey``
            access_token: Bearer token of the signed-in user
            timeout: Per-request timeout in seconds
            page_size: Rows per page when listing ids
        """
        if not base_url.startswith(("http://", "https://")):
            raise ValueError("Invalid remote URL scheme: must start with http:// or https://")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._request_timeout = timeout
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    def set_access_token(self, token: str | None) -> None:
        """Set the bearer token used for row-level security."""
        self._access_token = token

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> RemoteClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _get_headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any = None,
        params: Mapping[str, str] | None = None,
        prefer: str | None = None,
    ) -> Any:
        """Make one HTTP round-trip, bounded by the request timeout."""
        if not self.is_connected:
            await self.connect()

        assert self._session is not None

        url = f"{self._base_url}{path}"
        try:
            async with asyncio.timeout(self._request_timeout):
                async with self._session.request(
                    method,
                    url,
                    json=json_data,
                    params=params,
                    headers=self._get_headers(prefer),
                ) as response:
                    if response.status >= 400:
                        raise await _error_from_response(response)
                    if response.status == 204:
                        return None
                    text = await response.text()
                    if not text:
                        return None
                    return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise RemoteError(f"Connection error: {e}") from e

    # ========== Rows ==========

    async def upsert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert or merge a full row. Returns the stored row."""
        result = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json_data=[row],
            params={"on_conflict": "id"},
            prefer="resolution=merge-duplicates,return=representation",
        )
        return _single_row(result, table, row.get("id"))

    async def update(self, table: str, record_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Patch the given columns of one row. Returns the stored row."""
        body = {key: value for key, value in patch.items() if key != "id"}
        result = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            json_data=body,
            params={"id": f"eq.{record_id}"},
            prefer="return=representation",
        )
        return _single_row(result, table, record_id)

    async def fetch_changed(
        self, table: str, since: datetime | None, *, limit: int, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Rows with ``updated_at`` strictly after ``since``, oldest first."""
        params = {
            "select": "*",
            "order": "updated_at.asc,id.asc",
            "limit": str(max(1, min(limit, MAX_PAGE_SIZE))),
            "offset": str(offset),
        }
        if since is not None:
            params["updated_at"] = f"gt.{format_timestamp(since)}"
        result = await self._request("GET", f"/rest/v1/{table}", params=params)
        return list(result or [])

    async def fetch_ids(self, table: str) -> set[str]:
        """Every id currently present in ``table``."""
        ids: set[str] = set()
        offset = 0
        while True:
            page = await self._request(
                "GET",
                f"/rest/v1/{table}",
                params={
                    "select": "id",
                    "order": "id.asc",
                    "limit": str(self._page_size),
                    "offset": str(offset),
                },
            )
            page = page or []
            ids.update(str(row["id"]) for row in page)
            if len(page) < self._page_size:
                return ids
            offset += len(page)

    async def fetch_rows(
        self,
        table: str,
        *,
        filters: Mapping[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Generic filtered select. Filters use PostgREST syntax (``eq.value``)."""
        params = {"select": "*", **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        result = await self._request("GET", f"/rest/v1/{table}", params=params)
        return list(result or [])

    async def rpc(self, name: str, params: dict[str, Any]) -> Any:
        """Call a remote procedure."""
        return await self._request("POST", f"/rest/v1/rpc/{name}", json_data=params)


async def _error_from_response(response: aiohttp.ClientResponse) -> RemoteError:
    text = await response.text()
    code: str | None = None
    message = text or response.reason or "Request failed"
    details: Any = None
    try:
        body = await response.json(content_type=None)
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message
        details = body.get("details")
    return RemoteError(f"Server error: {message}", status_code=response.status, code=code, details=details)


def _single_row(result: Any, table: str, record_id: Any) -> dict[str, Any]:
    if isinstance(result, list):
        if not result:
            raise RemoteError(
                f"Row {table}/{record_id} not found", status_code=404, code="PGRST116"
            )
        return dict(result[0])
    if isinstance(result, dict):
        return dict(result)
    raise SyncError(
        SyncErrorKind.DECODING_FAILED,
        f"Unexpected response for {table}/{record_id}: {result!r}",
        table=table,
    )
