"""Owner share-link management endpoints.

  POST   /api/v1/shares                          -> create share link
  GET    /api/v1/shares                          -> list own links (optional resource_id)
  GET    /api/v1/shares/{share_id}               -> link metadata
  PATCH  /api/v1/shares/{share_id}               -> update metadata / extend expiry
  POST   /api/v1/shares/{share_id}/revoke        -> revoke (idempotent)
  DELETE /api/v1/shares/{share_id}               -> delete link and its ledger
  GET    /api/v1/shares/{share_id}/stats         -> access statistics
  GET    /api/v1/shares/{share_id}/access-logs   -> paged access ledger

Auth contract:
  - All endpoints require an authenticated owner (AuthIdentity).
  - Only the link owner may read or change a link; others get 403.

Token security:
  - Plaintext token is returned exactly once in the create response.

Errors are raised as ``ShareError`` and rendered by the app-level handler.

This module provides:
  ``create_share_router`` -- FastAPI router factory with injected deps.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from share_links.app.security.auth_guard import get_auth_identity
from share_links.app.security.token_verify import AuthIdentity

from .errors import InvalidShareArgument
from .ledger import DEFAULT_PAGE_SIZE, AccessLogFilter, paginate
from .model import AccessOutcome, Permission
from .service import ShareLinkService


# ── Request schemas ──────────────────────────────────────────────────


class CreateShareRequest(BaseModel):
    """Request body for share link creation."""

    resource_id: str = Field(..., min_length=1, description='Snippet to share')
    permissions: list[str] = Field(
        default_factory=lambda: ['read_only'],
        description='Any of read_only, allow_copy, allow_download',
    )
    expires_at: datetime | None = Field(default=None, description='Absolute expiry (UTC)')
    expires_in_hours: int | None = Field(default=None, description='Relative expiry')
    max_access_count: int | None = Field(default=None, description='0 or omitted = unlimited')
    password: str | None = None
    require_password: bool | None = None
    description: str | None = None


class UpdateShareRequest(BaseModel):
    """Request body for share link metadata updates."""

    description: str | None = None
    permissions: list[str] | None = None
    max_access_count: int | None = None
    extend_hours: int | None = None


# ── Shared helpers ───────────────────────────────────────────────────


def parse_permissions(names: list[str]) -> Permission:
    try:
        return Permission.from_names(names)
    except ValueError as exc:
        raise InvalidShareArgument.single('permissions', str(exc)) from exc


def as_utc(value: datetime | None) -> datetime | None:
    """Query timestamps without an offset are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_outcome(value: str | None) -> AccessOutcome | None:
    if not value:
        return None
    try:
        return AccessOutcome(value)
    except ValueError as exc:
        raise InvalidShareArgument.single(
            'outcome', 'Must be success or failure.',
        ) from exc


# ── Route factory ────────────────────────────────────────────────────


def create_share_router(service: ShareLinkService) -> APIRouter:
    """Create the owner share-link management router.

    Args:
        service: Share link service.

    Returns:
        FastAPI router with share lifecycle routes.
    """
    router = APIRouter(prefix='/api/v1/shares', tags=['share-links'])

    @router.post('', status_code=201)
    async def create_share(
        body: CreateShareRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Create a share link for a snippet the caller owns.

        Returns 201 with link metadata and the plaintext token (once only).
        """
        permission = parse_permissions(body.permissions)

        expires_at = body.expires_at
        if body.expires_in_hours is not None:
            if expires_at is not None:
                raise InvalidShareArgument.single(
                    'expires_in_hours', 'Give either expires_at or expires_in_hours.',
                )
            if body.expires_in_hours < 1:
                raise InvalidShareArgument.single('expires_in_hours', 'Must be at least one hour.')
            if body.expires_in_hours > service.max_expiry_hours:
                raise InvalidShareArgument.single(
                    'expires_in_hours', 'Exceeds the maximum link lifetime.',
                )
            expires_at = service.now() + timedelta(hours=body.expires_in_hours)

        created = await service.create(
            body.resource_id,
            identity.user_id,
            permission,
            expires_at=expires_at,
            max_access_count=body.max_access_count,
            password=body.password,
            description=body.description,
            require_password=body.require_password,
        )
        return created.to_dict(service.now())

    @router.get('')
    async def list_shares(
        resource_id: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """List the caller's share links, optionally for one snippet."""
        if resource_id:
            links = await service.list_for_resource(resource_id, identity.user_id)
            result = paginate(links, page, page_size)
        else:
            result = await service.list_for_owner(identity.user_id, page, page_size)
        now = service.now()
        return result.to_dict(lambda link: link.to_public_dict(now))

    @router.get('/{share_id}')
    async def get_share(
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        link = await service.get(share_id, identity.user_id)
        return link.to_public_dict(service.now())

    @router.patch('/{share_id}')
    async def update_share(
        share_id: str,
        body: UpdateShareRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Update description, permissions, access cap or expiry.

        Never reactivates a revoked link.
        """
        permission = (
            parse_permissions(body.permissions) if body.permissions is not None else None
        )
        link = await service.update(
            share_id,
            identity.user_id,
            description=body.description,
            permission=permission,
            max_access_count=body.max_access_count,
            extend_hours=body.extend_hours,
        )
        return link.to_public_dict(service.now())

    @router.post('/{share_id}/revoke')
    async def revoke_share(
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Revoke a share link. Idempotent."""
        link = await service.revoke(share_id, identity.user_id)
        return link.to_public_dict(service.now())

    @router.delete('/{share_id}')
    async def delete_share(
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Delete a share link and its access log. The token is never reissued."""
        await service.delete(share_id, identity.user_id)
        return {'share_id': share_id, 'deleted': True}

    @router.get('/{share_id}/stats')
    async def share_stats(
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        stats = await service.stats(share_id, identity.user_id)
        return stats.to_dict()

    @router.get('/{share_id}/access-logs')
    async def share_access_logs(
        share_id: str,
        outcome: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        source_address: str | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        log_filter = AccessLogFilter(
            outcome=parse_outcome(outcome),
            since=as_utc(since),
            until=as_utc(until),
            source_address=source_address,
            page=page,
            page_size=page_size,
        )
        result = await service.access_logs(share_id, identity.user_id, log_filter)
        return result.to_dict(lambda entry: entry.to_dict())

    return router
