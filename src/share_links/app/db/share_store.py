"""Supabase-backed ShareLinkStore implementation.

Persists share links and their access ledger via PostgREST
(``share_links``, ``share_access_logs``, ``retired_share_tokens``).
Multi-statement operations run as SQL functions through RPC so they are
transactional:

  grant_share_access         conditional increment + success ledger row
  delete_share_link          retire digest + delete (ledger cascades)
  purge_expired_share_links  same, for every long-expired link

Error mapping:
  - 409 on insert (unique digest or retired digest) -> TokenCollision
  - SupabaseUnavailableError (timeouts, transport, 5xx) -> StorageUnavailable
  - anything else propagates unchanged
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Any

from ..protocols import GrantResult, StorageUnavailable, TokenCollision
from ..sharing.model import (
    AccessChannel,
    AccessLogEntry,
    AccessOutcome,
    FailureReason,
    Permission,
    ShareLink,
)
from .errors import SupabaseConflictError, SupabaseUnavailableError
from .supabase_client import PostgrestFilter, SupabaseClient


def _ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def link_from_row(row: dict[str, Any]) -> ShareLink:
    return ShareLink(
        id=row["id"],
        token_hash=row["token_hash"],
        resource_id=row["resource_id"],
        owner_id=row["owner_id"],
        permission=Permission(int(row["permission"])),
        created_at=_ts(row["created_at"]),
        updated_at=_ts(row.get("updated_at") or row["created_at"]),
        expires_at=_ts(row.get("expires_at")),
        is_active=bool(row.get("is_active", True)),
        access_count=int(row.get("access_count") or 0),
        max_access_count=int(row.get("max_access_count") or 0),
        password_hash=row.get("password_hash"),
        description=row.get("description"),
        last_accessed_at=_ts(row.get("last_accessed_at")),
    )


def link_to_row(link: ShareLink) -> dict[str, Any]:
    return {
        "id": link.id,
        "token_hash": link.token_hash,
        "resource_id": link.resource_id,
        "owner_id": link.owner_id,
        "permission": int(link.permission),
        "created_at": link.created_at.isoformat(),
        "updated_at": link.updated_at.isoformat(),
        "expires_at": link.expires_at.isoformat() if link.expires_at else None,
        "is_active": link.is_active,
        "access_count": link.access_count,
        "max_access_count": link.max_access_count,
        "password_hash": link.password_hash,
        "description": link.description,
    }


def entry_from_row(row: dict[str, Any]) -> AccessLogEntry:
    reason = row.get("failure_reason")
    return AccessLogEntry(
        id=row["id"],
        share_link_id=row["share_link_id"],
        timestamp=_ts(row["accessed_at"]),
        source_address=row["source_address"],
        user_agent=row.get("user_agent"),
        outcome=AccessOutcome(row["outcome"]),
        failure_reason=FailureReason(reason) if reason else None,
        session_id=row.get("session_id"),
        referrer=row.get("referrer"),
        channel=AccessChannel.parse(row.get("channel")),
    )


def entry_to_row(entry: AccessLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "share_link_id": entry.share_link_id,
        "accessed_at": entry.timestamp.isoformat(),
        "source_address": entry.source_address,
        "user_agent": entry.user_agent,
        "outcome": entry.outcome.value,
        "failure_reason": entry.failure_reason.value if entry.failure_reason else None,
        "session_id": entry.session_id,
        "referrer": entry.referrer,
        "channel": entry.channel.value,
    }


def _encode_change(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Permission):
        return int(value)
    return value


def _unavailable_as_storage_error(fn):
    @wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except SupabaseUnavailableError as exc:
            raise StorageUnavailable(fn.__name__, exc.message) from exc

    return wrapper


class SupabaseShareLinkStore:
    """ShareLinkStore backed by PostgREST tables and RPC functions."""

    LINKS = "share_links"
    LOGS = "share_access_logs"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    @_unavailable_as_storage_error
    async def create(self, link: ShareLink) -> ShareLink:
        try:
            rows = await self._client.insert(self.LINKS, link_to_row(link))
        except SupabaseConflictError as exc:
            raise TokenCollision(link.id) from exc
        return link_from_row(rows[0])

    @_unavailable_as_storage_error
    async def get(self, share_link_id: str) -> ShareLink | None:
        rows = await self._client.select(
            self.LINKS, filters={"id": ("eq", share_link_id)}, limit=1,
        )
        return link_from_row(rows[0]) if rows else None

    @_unavailable_as_storage_error
    async def get_by_token_hash(self, token_hash: str) -> ShareLink | None:
        rows = await self._client.select(
            self.LINKS, filters={"token_hash": ("eq", token_hash)}, limit=1,
        )
        return link_from_row(rows[0]) if rows else None

    @_unavailable_as_storage_error
    async def update_metadata(
        self, share_link_id: str, changes: dict[str, Any],
    ) -> ShareLink | None:
        rows = await self._client.update(
            self.LINKS,
            filters={"id": ("eq", share_link_id)},
            data={k: _encode_change(v) for k, v in changes.items()},
        )
        return link_from_row(rows[0]) if rows else None

    @_unavailable_as_storage_error
    async def revoke(self, share_link_id: str, now: datetime) -> ShareLink | None:
        rows = await self._client.update(
            self.LINKS,
            filters=[
                PostgrestFilter("id", "eq", share_link_id),
                PostgrestFilter("is_active", "is", True),
            ],
            data={"is_active": False, "updated_at": now.isoformat()},
        )
        if rows:
            return link_from_row(rows[0])
        # Already revoked (or gone): report the current state.
        return await self.get(share_link_id)

    @_unavailable_as_storage_error
    async def delete(self, share_link_id: str) -> bool:
        result = await self._client.rpc(
            "delete_share_link", {"p_share_link_id": share_link_id},
        )
        return bool(result)

    @_unavailable_as_storage_error
    async def delete_expired(self, before: datetime) -> int:
        result = await self._client.rpc(
            "purge_expired_share_links", {"p_before": before.isoformat()},
        )
        return int(result or 0)

    @_unavailable_as_storage_error
    async def list_for_owner(self, owner_id: str) -> list[ShareLink]:
        rows = await self._client.select(
            self.LINKS,
            filters={"owner_id": ("eq", owner_id)},
            order="created_at.desc",
        )
        return [link_from_row(r) for r in rows]

    @_unavailable_as_storage_error
    async def list_for_resource(self, resource_id: str) -> list[ShareLink]:
        rows = await self._client.select(
            self.LINKS,
            filters={"resource_id": ("eq", resource_id)},
            order="created_at.desc",
        )
        return [link_from_row(r) for r in rows]

    @_unavailable_as_storage_error
    async def record_grant(
        self, share_link_id: str, entry: AccessLogEntry, now: datetime,
    ) -> GrantResult:
        rows = await self._client.rpc(
            "grant_share_access",
            {
                "p_share_link_id": share_link_id,
                "p_now": now.isoformat(),
                "p_entry": entry_to_row(entry),
            },
        )
        if rows:
            return GrantResult(granted=True, link=link_from_row(rows[0]))
        return GrantResult(granted=False, link=await self.get(share_link_id))

    @_unavailable_as_storage_error
    async def append_access_log(self, entry: AccessLogEntry) -> None:
        await self._client.insert(self.LOGS, entry_to_row(entry))

    @_unavailable_as_storage_error
    async def list_access_logs(
        self,
        share_link_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AccessLogEntry]:
        filters = [PostgrestFilter("share_link_id", "eq", share_link_id)]
        if since is not None:
            filters.append(PostgrestFilter("accessed_at", "gte", since.isoformat()))
        if until is not None:
            filters.append(PostgrestFilter("accessed_at", "lt", until.isoformat()))
        rows = await self._client.select(self.LOGS, filters=filters, order="accessed_at.asc")
        return [entry_from_row(r) for r in rows]
