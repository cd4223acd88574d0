"""
directory/remote.py -- Admin directory backed by a PostgREST-style REST table.

Resource: {DIRECTORY_URL}/rest/v1/{DIRECTORY_TABLE}
Columns:  steam_id (primary key), staff_name, staff_role, created_at, updated_at

Auth headers: apikey + Authorization: Bearer <DIRECTORY_KEY>. The schema is
selected with Accept-Profile / Content-Profile.

Error classification is structural -- by HTTP status and exception type,
never by matching upstream message text:
  401 / 403         -> StorageUnavailable  (credential or row policy refused)
  404               -> StorageUnavailable  (table or schema missing: misconfiguration)
  empty row         -> NotFound            (single-row update/delete only)
  timeout           -> UpstreamTimeout
  connect failure   -> StorageUnavailable  (backend unreachable)
  anything else     -> UpstreamError
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional

import httpx

from core.exceptions import NotFound, StorageUnavailable, UpstreamError, UpstreamTimeout
from core.models import AdminRecord
from directory.models import AdminPatch, AdminSeed, now_iso, record_from_row

logger = logging.getLogger("steamauth.directory.remote")

_COLUMNS = "steam_id,staff_name,staff_role,created_at,updated_at"


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    parts: list[str] = []
    if isinstance(payload, dict):
        for key in ("message", "details", "hint", "error"):
            if payload.get(key):
                parts.append(str(payload[key]))
    if not parts and resp.text:
        parts.append(resp.text[:240])
    return " | ".join(parts) or f"HTTP {resp.status_code}"


class RemoteAdminBackend:
    """AdminBackend over the remote directory service."""

    name = "remote"

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        table: str = "admin_steam_ids",
        schema: str = "public",
        timeout: float = 8.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self.endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self._api_key = api_key
        self.table = table
        self.schema = schema
        self.timeout = timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, has_body: bool, prefer: str = "") -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
            "Accept-Profile": self.schema,
        }
        if has_body:
            headers["Content-Type"] = "application/json"
            headers["Content-Profile"] = self.schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        context: str,
        params: Optional[dict[str, str]] = None,
        body: Any = None,
        prefer: str = "",
    ) -> Any:
        has_body = body is not None
        try:
            resp = await self._http.request(
                method,
                self.endpoint,
                params=params,
                content=json.dumps(body) if has_body else None,
                headers=self._headers(has_body, prefer),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"Admin directory did not respond within {self.timeout:g}s ({context})."
            ) from e
        except httpx.TransportError as e:
            raise StorageUnavailable(f"Admin directory unreachable ({context}).", detail=str(e)) from e

        if resp.status_code in (401, 403):
            raise StorageUnavailable(
                f"Admin directory refused the configured credential ({context}, HTTP {resp.status_code}). "
                f"Check row policies on {self.schema}.{self.table} or use a service key.",
                detail=_error_message(resp),
                backend_status=resp.status_code,
            )
        if resp.status_code == 404:
            raise StorageUnavailable(
                f"Admin directory table {self.schema}.{self.table} not found ({context}). "
                "Check DIRECTORY_URL, DIRECTORY_SCHEMA and DIRECTORY_TABLE.",
                detail=_error_message(resp),
                backend_status=404,
            )
        if not resp.is_success:
            raise UpstreamError(
                f"Admin directory request failed ({context}, HTTP {resp.status_code}).",
                detail=_error_message(resp),
                backend_status=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"Admin directory returned malformed JSON ({context}).") from e

    @staticmethod
    def _records(payload: Any) -> list[AdminRecord]:
        if not isinstance(payload, list):
            return []
        return [r for r in (record_from_row(row) for row in payload if isinstance(row, dict)) if r is not None]

    # ------------------------------------------------------------------
    # AdminBackend contract
    # ------------------------------------------------------------------

    async def list(self) -> list[AdminRecord]:
        payload = await self._request("GET", "list", params={"select": _COLUMNS, "order": "created_at.asc"})
        return self._records(payload)

    async def get(self, steam_id: str) -> Optional[AdminRecord]:
        payload = await self._request(
            "GET",
            "find",
            params={"select": _COLUMNS, "steam_id": f"eq.{steam_id}", "limit": "1"},
        )
        records = self._records(payload)
        return records[0] if records else None

    async def count(self) -> int:
        return len(await self.list())

    async def add(self, record: AdminRecord) -> AdminRecord:
        existing = await self.get(record.steam_id)
        timestamp = now_iso(self._clock)
        payload = await self._request(
            "POST",
            "upsert",
            params={"on_conflict": "steam_id", "select": _COLUMNS},
            prefer="resolution=merge-duplicates,return=representation",
            body=[
                {
                    "steam_id": record.steam_id,
                    "staff_name": record.staff_name,
                    "staff_role": record.staff_role.value,
                    "created_at": existing.created_at if existing else timestamp,
                    "updated_at": timestamp,
                }
            ],
        )
        records = self._records(payload)
        if not records:
            raise UpstreamError("Admin directory did not return the saved record.")
        return records[0]

    async def update(self, steam_id: str, patch: AdminPatch) -> AdminRecord:
        body: dict[str, str] = {"updated_at": now_iso(self._clock)}
        if patch.staff_name is not None:
            body["staff_name"] = patch.staff_name
        if patch.staff_role is not None:
            body["staff_role"] = patch.staff_role.value
        payload = await self._request(
            "PATCH",
            "update",
            params={"steam_id": f"eq.{steam_id}", "select": _COLUMNS},
            prefer="return=representation",
            body=body,
        )
        records = self._records(payload)
        if not records:
            raise NotFound(f"Admin {steam_id} not found.")
        return records[0]

    async def remove(self, steam_id: str) -> None:
        payload = await self._request(
            "DELETE",
            "delete",
            params={"steam_id": f"eq.{steam_id}", "select": "steam_id"},
            prefer="return=representation",
        )
        if not payload:
            raise NotFound(f"Admin {steam_id} not found.")

    async def ping(self) -> None:
        """Cheapest authenticated read: one steam_id, at most one row."""
        await self._request("GET", "diagnostics", params={"select": "steam_id", "limit": "1"})

    async def insert_missing(self, seeds: list[AdminSeed]) -> int:
        """Insert seeds that are not present yet; existing rows are left alone."""
        if not seeds:
            return 0
        existing = {r.steam_id for r in await self.list()}
        timestamp = now_iso(self._clock)
        rows = [
            {
                "steam_id": seed.steam_id,
                "staff_name": seed.staff_name,
                "staff_role": seed.staff_role.value,
                "created_at": timestamp,
                "updated_at": timestamp,
            }
            for seed in seeds
            if seed.steam_id not in existing
        ]
        if not rows:
            return 0
        await self._request(
            "POST",
            "bootstrap",
            params={"on_conflict": "steam_id"},
            prefer="resolution=ignore-duplicates,return=minimal",
            body=rows,
        )
        return len(rows)
