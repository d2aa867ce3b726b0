"""In-memory store implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but store everything in dicts (no persistence across restarts).

Records are copied on the way in and out so callers can never mutate
stored state behind the store's back. The atomic grant is a
compare-and-swap under a per-link ``threading.Lock``.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any

from .protocols import GrantResult, TokenCollision
from .sharing.model import (
    AccessLogEntry,
    Permission,
    ShareLink,
    filter_resource_for_share,
    new_share_id,
)
from .sharing.policy import status_denial

_UPDATABLE_FIELDS = frozenset({
    'description',
    'permission',
    'max_access_count',
    'expires_at',
    'updated_at',
})


class InMemoryShareLinkStore:
    def __init__(self) -> None:
        self._links: dict[str, ShareLink] = {}
        self._by_hash: dict[str, str] = {}
        self._retired: set[str] = set()
        self._logs: dict[str, list[AccessLogEntry]] = {}
        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

    def _lock_for(self, share_link_id: str) -> Lock:
        with self._registry_lock:
            return self._locks.setdefault(share_link_id, Lock())

    async def create(self, link: ShareLink) -> ShareLink:
        with self._registry_lock:
            if link.token_hash in self._by_hash or link.token_hash in self._retired:
                raise TokenCollision(link.id)
            stored = replace(link, id=link.id or new_share_id())
            self._links[stored.id] = stored
            self._by_hash[stored.token_hash] = stored.id
            self._logs[stored.id] = []
        return replace(stored)

    async def get(self, share_link_id: str) -> ShareLink | None:
        link = self._links.get(share_link_id)
        return replace(link) if link else None

    async def get_by_token_hash(self, token_hash: str) -> ShareLink | None:
        share_link_id = self._by_hash.get(token_hash)
        if share_link_id is None:
            return None
        return await self.get(share_link_id)

    async def update_metadata(
        self, share_link_id: str, changes: dict[str, Any],
    ) -> ShareLink | None:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f'fields not updatable: {sorted(unknown)}')
        with self._lock_for(share_link_id):
            link = self._links.get(share_link_id)
            if link is None:
                return None
            for key, value in changes.items():
                setattr(link, key, value)
            return replace(link)

    async def revoke(self, share_link_id: str, now: datetime) -> ShareLink | None:
        with self._lock_for(share_link_id):
            link = self._links.get(share_link_id)
            if link is None:
                return None
            if link.is_active:
                link.is_active = False
                link.updated_at = now
            return replace(link)

    async def delete(self, share_link_id: str) -> bool:
        with self._registry_lock:
            link = self._links.pop(share_link_id, None)
            if link is None:
                return False
            self._by_hash.pop(link.token_hash, None)
            self._retired.add(link.token_hash)
            self._logs.pop(share_link_id, None)
            self._locks.pop(share_link_id, None)
        return True

    async def delete_expired(self, before: datetime) -> int:
        expired = [
            link.id for link in list(self._links.values())
            if link.expires_at is not None and link.expires_at < before
        ]
        deleted = 0
        for share_link_id in expired:
            if await self.delete(share_link_id):
                deleted += 1
        return deleted

    async def list_for_owner(self, owner_id: str) -> list[ShareLink]:
        links = [replace(l) for l in self._links.values() if l.owner_id == owner_id]
        return sorted(links, key=lambda l: l.created_at, reverse=True)

    async def list_for_resource(self, resource_id: str) -> list[ShareLink]:
        links = [replace(l) for l in self._links.values() if l.resource_id == resource_id]
        return sorted(links, key=lambda l: l.created_at, reverse=True)

    async def record_grant(
        self, share_link_id: str, entry: AccessLogEntry, now: datetime,
    ) -> GrantResult:
        with self._lock_for(share_link_id):
            link = self._links.get(share_link_id)
            if link is None:
                return GrantResult(granted=False, link=None)
            if status_denial(link, now) is not None:
                return GrantResult(granted=False, link=replace(link))
            link.access_count += 1
            link.last_accessed_at = now
            self._logs.setdefault(share_link_id, []).append(entry)
            return GrantResult(granted=True, link=replace(link))

    async def append_access_log(self, entry: AccessLogEntry) -> None:
        # Entries for a link deleted mid-flight are dropped with it.
        if entry.share_link_id in self._links:
            self._logs.setdefault(entry.share_link_id, []).append(entry)

    async def list_access_logs(
        self,
        share_link_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AccessLogEntry]:
        entries = list(self._logs.get(share_link_id, []))
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        if until is not None:
            entries = [e for e in entries if e.timestamp < until]
        return sorted(entries, key=lambda e: e.timestamp)


class InMemoryResourceDirectory:
    """Snippet directory backed by a dict of ``resource_id -> row``."""

    def __init__(self, resources: dict[str, dict[str, Any]] | None = None) -> None:
        self._resources: dict[str, dict[str, Any]] = dict(resources or {})

    def add(self, resource_id: str, owner_id: str, **fields: Any) -> dict[str, Any]:
        row = {'id': resource_id, 'owner_id': owner_id, **fields}
        self._resources[resource_id] = row
        return row

    def remove(self, resource_id: str) -> None:
        self._resources.pop(resource_id, None)

    async def get_resource_owner(self, resource_id: str) -> str | None:
        row = self._resources.get(resource_id)
        return row.get('owner_id') if row else None

    async def get_resource_for_share(
        self, resource_id: str, permission: Permission,
    ) -> dict[str, Any] | None:
        row = self._resources.get(resource_id)
        if row is None:
            return None
        return filter_resource_for_share(row, permission)
