"""Public share resolution endpoints.

  GET  /api/v1/public/shares/{token}          -> resolve (no password)
  POST /api/v1/public/shares/{token}/access   -> resolve with a password
  POST /api/v1/public/shares/{token}/validate -> check token and password
                                                 without consuming an access

No registered-user auth: the share token is the bearer credential. The
``via`` query parameter (``qr`` or ``link``) records how the holder
arrived; without it, a Referer header means ``link`` and no header means
``direct``.

Responses carry ``Cache-Control: no-store`` so a granted resource is
never served from an intermediate cache without a fresh grant.

This module provides:
  ``create_share_access_router`` -- FastAPI router factory.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .credentials import MAX_PASSWORD_LENGTH
from .model import AccessChannel
from .service import ShareLinkService

_NO_STORE = {'Cache-Control': 'no-store'}


class ShareAccessRequest(BaseModel):
    """Request body for password-protected access."""

    password: str | None = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    session_id: str | None = Field(default=None, max_length=128)


def client_address(request: Request, trust_forwarded_for: bool = False) -> str:
    """Source address used for rate limiting and the access ledger."""
    if trust_forwarded_for:
        forwarded = request.headers.get('x-forwarded-for', '')
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return 'unknown'


def access_channel(request: Request, via: str | None) -> AccessChannel:
    if via:
        return AccessChannel.parse(via)
    if request.headers.get('referer'):
        return AccessChannel.LINK
    return AccessChannel.DIRECT


def create_share_access_router(
    service: ShareLinkService,
    *,
    trust_forwarded_for: bool = False,
) -> APIRouter:
    """Create the public share resolution router.

    Args:
        service: Share link service.
        trust_forwarded_for: Read the client address from X-Forwarded-For.
    """
    router = APIRouter(prefix='/api/v1/public/shares', tags=['share-access'])

    async def _resolve(
        request: Request,
        token: str,
        via: str | None,
        password: str | None,
        session_id: str | None,
    ) -> JSONResponse:
        resolved = await service.resolve(
            token,
            provided_password=password,
            source_address=client_address(request, trust_forwarded_for),
            user_agent=request.headers.get('user-agent'),
            session_id=session_id or request.headers.get('x-session-id'),
            referrer=request.headers.get('referer'),
            channel=access_channel(request, via),
        )
        return JSONResponse(content=resolved.to_dict(), headers=_NO_STORE)

    @router.get('/{token}')
    async def read_share(request: Request, token: str, via: str | None = None):
        """Resolve a share token to the shared snippet.

        Error responses:
          - 401: Password required (retry via POST .../access).
          - 403: Access limit reached or wrong password.
          - 404: Unknown token (or any denial in uniform mode).
          - 410: Link expired or revoked.
          - 429: Too many attempts (Retry-After).
          - 503: Storage unavailable (Retry-After).
        """
        return await _resolve(request, token, via, None, None)

    @router.post('/{token}/access')
    async def access_share(
        request: Request,
        token: str,
        body: ShareAccessRequest,
        via: str | None = None,
    ):
        """Resolve a share token, presenting a password in the body."""
        return await _resolve(request, token, via, body.password, body.session_id)

    @router.post('/{token}/validate')
    async def validate_share(
        request: Request,
        token: str,
        body: ShareAccessRequest,
        via: str | None = None,
    ):
        """Check a token and optional password; no access is consumed.

        Failures use the same statuses as GET /{token}.
        """
        result = await service.validate(
            token,
            provided_password=body.password,
            source_address=client_address(request, trust_forwarded_for),
            user_agent=request.headers.get('user-agent'),
            session_id=body.session_id or request.headers.get('x-session-id'),
            referrer=request.headers.get('referer'),
            channel=access_channel(request, via),
        )
        return JSONResponse(content=result.to_dict(), headers=_NO_STORE)

    return router
