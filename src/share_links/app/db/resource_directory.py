"""Supabase-backed ResourceDirectory over the ``snippets`` table.

Read-only: the share service never writes snippets. Soft-deleted rows
(``deleted_at`` set) are treated as missing.
"""

from __future__ import annotations

from typing import Any

from ..protocols import StorageUnavailable
from ..sharing.model import Permission, filter_resource_for_share
from .errors import SupabaseUnavailableError
from .supabase_client import SupabaseClient

_SHARED_COLUMNS = "id,owner_id,title,language,content,created_at,updated_at,deleted_at"


class SupabaseResourceDirectory:
    TABLE = "snippets"

    def __init__(self, client: SupabaseClient, *, table: str | None = None) -> None:
        self._client = client
        self._table = table or self.TABLE

    async def _fetch(self, resource_id: str, columns: str) -> dict[str, Any] | None:
        try:
            rows = await self._client.select(
                self._table,
                filters={"id": ("eq", resource_id), "deleted_at": ("is", None)},
                columns=columns,
                limit=1,
            )
        except SupabaseUnavailableError as exc:
            raise StorageUnavailable("resource_lookup", exc.message) from exc
        return rows[0] if rows else None

    async def get_resource_owner(self, resource_id: str) -> str | None:
        row = await self._fetch(resource_id, "id,owner_id")
        return row.get("owner_id") if row else None

    async def get_resource_for_share(
        self, resource_id: str, permission: Permission,
    ) -> dict[str, Any] | None:
        row = await self._fetch(resource_id, _SHARED_COLUMNS)
        if row is None:
            return None
        return filter_resource_for_share(row, permission)
