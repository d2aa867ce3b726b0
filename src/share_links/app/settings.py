"""Share links service configuration settings.

ShareServiceSettings is the single configuration object accepted by
create_app(). It is intentionally a plain dataclass (not env-coupled) so
tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


_DEFAULT_CORS_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
)
_DEFAULT_PUBLIC_BASE_URL = "http://localhost:8000"


def _env_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(raw: str | None, default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(raw: str | None, default: float) -> float:
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True, slots=True)
class ShareServiceSettings:
    """Configuration for the share links FastAPI application.

    All fields have sensible defaults for local development.
    Non-local environments must supply real values for supabase_url and
    supabase_service_role_key.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    """Supabase project URL (e.g. https://xyz.supabase.co)."""

    supabase_service_role_key: str = ""
    """Supabase service-role key for PostgREST calls. Never log this."""

    # ── Auth ───────────────────────────────────────────────────────
    jwt_secret: str = ""
    """HS256 secret for owner bearer tokens. Empty means Supabase JWKS (RS256)."""

    jwt_audience: str = "authenticated"

    # ── Public links ───────────────────────────────────────────────
    public_base_url: str = _DEFAULT_PUBLIC_BASE_URL
    """Origin used to build share URLs (``{base}/s/{token}``)."""

    max_expiry_hours: int = 720
    """Upper bound on how far in the future a link may expire."""

    disclose_denial_reasons: bool = True
    """False collapses every denial into the not-found response."""

    # ── Rate limiting ──────────────────────────────────────────────
    redis_url: str = ""
    """Shared counter store. Empty means per-process in-memory counters."""

    rate_limit_max_attempts: int = 10
    rate_limit_window_seconds: int = 60

    trust_forwarded_for: bool = False
    """Take the client address from X-Forwarded-For (behind a trusted proxy)."""

    # ── Storage ────────────────────────────────────────────────────
    storage_timeout_seconds: float = 5.0

    purge_interval_seconds: int = 3600
    """Seconds between background purges of expired links. 0 disables them."""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = _DEFAULT_CORS_ORIGINS
    """Allowed CORS origins."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def share_base_url(self) -> str:
        return self.public_base_url.rstrip("/")

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if self.jwt_secret and len(self.jwt_secret) < 32:
                errors.append(
                    f"{self.environment}: jwt_secret must be >= 32 characters"
                )
            if not self.public_base_url.startswith("https://"):
                errors.append(f"{self.environment}: public_base_url must use https")
        if self.max_expiry_hours < 1:
            errors.append("max_expiry_hours must be >= 1")
        if self.rate_limit_window_seconds < 1:
            errors.append("rate_limit_window_seconds must be >= 1")
        if self.storage_timeout_seconds <= 0:
            errors.append("storage_timeout_seconds must be > 0")
        if self.purge_interval_seconds < 0:
            errors.append("purge_interval_seconds must be >= 0")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ShareServiceSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ShareServiceSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) if cors_raw else _DEFAULT_CORS_ORIGINS

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            jwt_secret=env.get("JWT_SECRET", ""),
            jwt_audience=env.get("JWT_AUDIENCE", "authenticated"),
            public_base_url=env.get("PUBLIC_BASE_URL", _DEFAULT_PUBLIC_BASE_URL),
            max_expiry_hours=_env_int(env.get("SHARE_MAX_EXPIRY_HOURS"), 720),
            disclose_denial_reasons=_env_bool(
                env.get("SHARE_DISCLOSE_DENIAL_REASONS"), True,
            ),
            redis_url=env.get("REDIS_URL", ""),
            rate_limit_max_attempts=_env_int(
                env.get("SHARE_RATE_LIMIT_MAX_ATTEMPTS"), 10,
            ),
            rate_limit_window_seconds=_env_int(
                env.get("SHARE_RATE_LIMIT_WINDOW_SECONDS"), 60,
            ),
            trust_forwarded_for=_env_bool(env.get("TRUST_FORWARDED_FOR"), False),
            storage_timeout_seconds=_env_float(
                env.get("STORAGE_TIMEOUT_SECONDS"), 5.0,
            ),
            purge_interval_seconds=_env_int(
                env.get("SHARE_PURGE_INTERVAL_SECONDS"), 3600,
            ),
            cors_origins=cors,
        )
