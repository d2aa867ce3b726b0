"""Storage and collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase for non-local) must satisfy. The app
factory accepts any implementation that matches these protocols.

Store errors:
  - ``StorageUnavailable``: timeout, transport failure or 5xx. Callers
    surface it as "service unavailable", never as a denial.
  - ``TokenCollision``: the token digest is already in use or retired.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .sharing.model import AccessLogEntry, Permission, ShareLink


class StorageUnavailable(Exception):
    """The backing store could not complete the operation."""

    def __init__(self, operation: str, message: str = '') -> None:
        self.operation = operation
        super().__init__(f'{operation}: {message}' if message else operation)


class TokenCollision(Exception):
    """A new link's token digest already exists (live or retired)."""


@dataclass(frozen=True, slots=True)
class GrantResult:
    """Outcome of the atomic grant.

    ``link`` is the post-increment record when granted, otherwise the
    current record (or None if it vanished).
    """

    granted: bool
    link: ShareLink | None


@runtime_checkable
class ShareLinkStore(Protocol):
    """Share link lifecycle and access ledger persistence."""

    async def create(self, link: ShareLink) -> ShareLink: ...
    async def get(self, share_link_id: str) -> ShareLink | None: ...
    async def get_by_token_hash(self, token_hash: str) -> ShareLink | None: ...
    async def update_metadata(
        self, share_link_id: str, changes: dict[str, Any],
    ) -> ShareLink | None: ...
    async def revoke(self, share_link_id: str, now: datetime) -> ShareLink | None: ...
    async def delete(self, share_link_id: str) -> bool: ...
    async def delete_expired(self, before: datetime) -> int: ...
    async def list_for_owner(self, owner_id: str) -> list[ShareLink]: ...
    async def list_for_resource(self, resource_id: str) -> list[ShareLink]: ...
    async def record_grant(
        self, share_link_id: str, entry: AccessLogEntry, now: datetime,
    ) -> GrantResult: ...
    async def append_access_log(self, entry: AccessLogEntry) -> None: ...
    async def list_access_logs(
        self,
        share_link_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AccessLogEntry]: ...


@runtime_checkable
class ResourceDirectory(Protocol):
    """Read-only view of the snippet store that owns shared resources."""

    async def get_resource_owner(self, resource_id: str) -> str | None: ...
    async def get_resource_for_share(
        self, resource_id: str, permission: Permission,
    ) -> dict[str, Any] | None: ...
