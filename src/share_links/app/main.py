"""Share links FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, metrics, request logging,
auth guard, CORS), the owner and public share routers, and injects store
implementations via dependency injection.

Usage:
    # Local development (in-memory stores)
    from share_links.app import create_app, ShareServiceSettings
    app = create_app(ShareServiceSettings())

    # Non-local (Supabase stores built from settings)
    app = create_app(ShareServiceSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, store=store, resources=directory, ...)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from share_links.observability import configure_logging, get_logger, metrics_text
from share_links.observability.middleware import (
    MetricsMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
)

from .sharing.access import create_share_access_router
from .sharing.audit import LoggingShareAuditEmitter, ShareAuditEmitter
from .sharing.credentials import CredentialVerifier
from .sharing.errors import (
    ErrorDisclosure,
    ShareError,
    ShareServiceUnavailable,
    share_error_response,
)
from .sharing.model import utcnow
from .sharing.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
)
from .sharing.routes import create_share_router
from .sharing.service import ShareLinkService
from .protocols import ResourceDirectory, ShareLinkStore
from .security.auth_guard import AuthGuardMiddleware
from .security.token_verify import (
    LOCAL_DEV_JWT_SECRET,
    TokenVerifier,
    create_token_verifier,
)
from .settings import ShareServiceSettings

logger = get_logger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for the injected store and service instances.

    Stored on ``app.state.deps`` so tests and route handlers can reach them.
    """

    store: ShareLinkStore
    resources: ResourceDirectory
    rate_limit_store: RateLimitStore
    audit: ShareAuditEmitter
    service: ShareLinkService


async def purge_expired_periodically(
    service: ShareLinkService,
    interval_seconds: float,
) -> None:
    """Background task: purge long-expired links every ``interval_seconds``."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await service.purge_expired()
        except ShareServiceUnavailable:
            logger.warning("share_purge_skipped", reason="storage_unavailable")


def _build_inmemory_stores() -> tuple[ShareLinkStore, ResourceDirectory]:
    """Construct in-memory stores for local development."""
    from .inmemory import InMemoryResourceDirectory, InMemoryShareLinkStore

    return InMemoryShareLinkStore(), InMemoryResourceDirectory()


def _build_supabase_stores(
    settings: ShareServiceSettings,
) -> tuple[ShareLinkStore, ResourceDirectory]:
    """Construct PostgREST-backed stores sharing one client."""
    from .db import SupabaseClient, SupabaseResourceDirectory, SupabaseShareLinkStore

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        timeout_seconds=settings.storage_timeout_seconds,
    )
    return SupabaseShareLinkStore(client), SupabaseResourceDirectory(client)


def _build_token_verifier(settings: ShareServiceSettings) -> TokenVerifier:
    if settings.is_local and not settings.jwt_secret and not settings.supabase_url:
        return create_token_verifier(
            jwt_secret=LOCAL_DEV_JWT_SECRET, audience=settings.jwt_audience,
        )
    return create_token_verifier(
        supabase_url=settings.supabase_url,
        jwt_secret=settings.jwt_secret,
        audience=settings.jwt_audience,
    )


def create_app(
    settings: ShareServiceSettings | None = None,
    *,
    store: ShareLinkStore | None = None,
    resources: ResourceDirectory | None = None,
    token_verifier: TokenVerifier | None = None,
    rate_limit_store: RateLimitStore | None = None,
    audit: ShareAuditEmitter | None = None,
    verifier: CredentialVerifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Create a configured share links FastAPI application.

    Args:
        settings: Application settings. Defaults to ``from_env()``.
        store, resources: Store overrides. When None, local mode uses
            in-memory stores and other environments use Supabase.
        token_verifier: Owner JWT verifier override.
        rate_limit_store: Counter store override. When None, Redis is used
            if ``redis_url`` is set, otherwise per-process counters.
        audit: Owner audit sink. Defaults to structured logging.
        verifier: Share password hashing override.
        clock: Current-time source for the service.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = ShareServiceSettings.from_env()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Share service settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if store is None or resources is None:
        if settings.is_local:
            default_store, default_resources = _build_inmemory_stores()
        else:
            default_store, default_resources = _build_supabase_stores(settings)
        store = store or default_store
        resources = resources or default_resources

    if rate_limit_store is None:
        if settings.redis_url:
            rate_limit_store = RedisRateLimitStore.from_url(settings.redis_url)
        else:
            rate_limit_store = InMemoryRateLimitStore()

    audit = audit or LoggingShareAuditEmitter()
    rate_limiter = RateLimiter(
        rate_limit_store,
        max_attempts=settings.rate_limit_max_attempts,
        window_seconds=settings.rate_limit_window_seconds,
    )
    service = ShareLinkService(
        store,
        resources,
        verifier=verifier,
        rate_limiter=rate_limiter,
        audit=audit,
        clock=clock,
        storage_timeout=settings.storage_timeout_seconds,
        public_base_url=settings.share_base_url,
        max_expiry_hours=settings.max_expiry_hours,
    )
    deps = AppDependencies(
        store=store,
        resources=resources,
        rate_limit_store=rate_limit_store,
        audit=audit,
        service=service,
    )
    disclosure = (
        ErrorDisclosure.DISCLOSE
        if settings.disclose_denial_reasons
        else ErrorDisclosure.UNIFORM
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info(
            "share_service_startup",
            environment=settings.environment,
            rate_limit_backend="redis" if settings.redis_url else "memory",
            disclosure=disclosure.value,
        )
        purge_task: asyncio.Task | None = None
        if settings.purge_interval_seconds > 0:
            purge_task = asyncio.create_task(
                purge_expired_periodically(service, settings.purge_interval_seconds)
            )
        yield
        if purge_task is not None:
            purge_task.cancel()
            try:
                await purge_task
            except asyncio.CancelledError:
                pass
        if isinstance(rate_limit_store, RedisRateLimitStore):
            await rate_limit_store.close()
        logger.info("share_service_shutdown")

    app = FastAPI(
        title="Share Links",
        description="Bearer-token share links for snippets",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────
    # Order of execution: RequestID -> Metrics -> Logging -> AuthGuard -> CORS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Request-ID"],
    )
    app.add_middleware(
        AuthGuardMiddleware,
        token_verifier=token_verifier or _build_token_verifier(settings),
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Errors ──────────────────────────────────────────────────

    @app.exception_handler(ShareError)
    async def handle_share_error(request: Request, exc: ShareError):
        return share_error_response(exc, disclosure)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_share_router(service))
    app.include_router(
        create_share_access_router(
            service, trust_forwarded_for=settings.trust_forwarded_for,
        )
    )

    return app


# For uvicorn, use --factory flag:
#   uvicorn share_links.app.main:create_app --factory
# This avoids executing create_app() at import time.
