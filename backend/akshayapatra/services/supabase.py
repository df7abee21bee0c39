"""Thin async client for Supabase's PostgREST API.

Calls run with the caller's access token so row-level security applies
exactly as it would for the browser. Every failure surfaces as
``UpstreamServiceError``; callers decide whether it is fatal.
"""

import logging
from typing import Any

import httpx

from akshayapatra.config import settings
from akshayapatra.middleware.exceptions import UpstreamServiceError

logger = logging.getLogger(__name__)


class SupabaseClient:
    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.supabase_url).rstrip("/") + "/rest/v1"
        self.headers = {
            "apikey": api_key if api_key is not None else settings.supabase_anon_key,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._timeout = timeout or settings.upstream_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
        headers: dict | None = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                transport=self._transport,
                timeout=self._timeout,
            ) as client:
                response = await client.request(
                    method, path, params=params, json=json, headers=headers
                )
        except httpx.HTTPError as e:
            raise UpstreamServiceError("supabase", f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get("message") or response.text or f"HTTP {response.status_code}"
            raise UpstreamServiceError("supabase", message, upstream_code=body.get("code"))

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def rpc(self, fn: str, params: dict | None = None) -> Any:
        return await self._request("POST", f"/rpc/{fn}", json=params or {})

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """``filters`` are PostgREST operators, e.g. ``{"id": "eq.<uuid>"}``."""
        params: dict[str, Any] = {"select": columns, **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", f"/{table}", params=params) or []

    async def select_one(
        self, table: str, columns: str = "*", filters: dict[str, str] | None = None
    ) -> dict | None:
        rows = await self.select(table, columns, filters, limit=1)
        return rows[0] if rows else None

    async def update(self, table: str, values: dict, filters: dict[str, str]) -> list[dict]:
        return await self._request(
            "PATCH",
            f"/{table}",
            params=filters,
            json=values,
            headers={"Prefer": "return=representation"},
        ) or []
