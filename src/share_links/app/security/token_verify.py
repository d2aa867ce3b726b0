"""Owner bearer-token verification.

Share owners are registered users authenticated by Supabase. Their access
tokens are verified here and reduced to an ``AuthIdentity``; public share
resolution never goes through this module.

Key sources:
  - ``jwt_secret`` set: HS256 with that static secret.
  - otherwise: RS256 keys from the project's JWKS endpoint (cached).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient, PyJWKClientError
from starlette.requests import Request

DEFAULT_AUDIENCE = 'authenticated'
JWKS_CACHE_TTL_SECONDS = 300
BEARER_PREFIX = 'Bearer '

# Used only when ENVIRONMENT=local and no key source is configured.
LOCAL_DEV_JWT_SECRET = 'local-development-only-share-links-secret'


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    """Verified identity extracted from a valid JWT.

    Attributes:
        user_id: The ``sub`` claim; matched against share/resource owners.
        email: Normalized email address (may be empty).
        role: Supabase role (typically ``authenticated``).
    """

    user_id: str
    email: str = ''
    role: str = 'authenticated'
    raw_claims: dict[str, Any] = field(default_factory=dict)


class TokenVerificationError(Exception):
    """Raised when token verification fails."""

    def __init__(self, code: str, detail: str = '') -> None:
        self.code = code
        self.detail = detail
        super().__init__(f'{code}: {detail}' if detail else code)


class KeyProvider(Protocol):
    """Resolves the signing key for an unverified token."""

    def get_signing_key(self, token: str) -> Any: ...


class JWKSKeyProvider:
    """Fetches signing keys from a JWKS endpoint with caching."""

    def __init__(self, jwks_url: str, cache_ttl: int = JWKS_CACHE_TTL_SECONDS) -> None:
        self._client = PyJWKClient(jwks_url, cache_jwk_set=True, lifespan=cache_ttl)

    def get_signing_key(self, token: str) -> Any:
        try:
            return self._client.get_signing_key_from_jwt(token).key
        except PyJWKClientError as exc:
            raise TokenVerificationError('jwks_fetch_error', str(exc)) from exc


class StaticKeyProvider:
    """Uses a static secret for HS256 verification."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def get_signing_key(self, token: str) -> str:
        return self._secret


class TokenVerifier:
    """Verifies owner JWTs and extracts identity claims.

    Args:
        key_provider: A KeyProvider that resolves signing keys.
        audience: Expected ``aud`` claim value.
        algorithms: Accepted JWT algorithms.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        audience: str = DEFAULT_AUDIENCE,
        algorithms: list[str] | None = None,
    ) -> None:
        self._key_provider = key_provider
        self._audience = audience
        self._algorithms = algorithms or ['RS256']

    def verify(self, token: str) -> AuthIdentity:
        """Verify a JWT and return the authenticated identity.

        Raises:
            TokenVerificationError: On any verification failure.
        """
        if not token or not token.strip():
            raise TokenVerificationError('empty_token')

        key = self._key_provider.get_signing_key(token)

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                options={'require': ['sub', 'exp', 'aud']},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenVerificationError('token_expired') from exc
        except jwt.InvalidAudienceError as exc:
            raise TokenVerificationError(
                'invalid_audience', f'expected {self._audience}',
            ) from exc
        except jwt.DecodeError as exc:
            raise TokenVerificationError('decode_error', str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError('invalid_token', str(exc)) from exc

        user_id = claims.get('sub')
        if not user_id:
            raise TokenVerificationError('missing_sub_claim')

        email = claims.get('email') or ''
        return AuthIdentity(
            user_id=user_id,
            email=email.lower(),
            role=claims.get('role', 'authenticated'),
            raw_claims=claims,
        )


def extract_bearer_token(request: Request) -> str | None:
    """Extract a Bearer token from the Authorization header."""
    auth_header = request.headers.get('authorization', '')
    if auth_header.startswith(BEARER_PREFIX):
        return auth_header[len(BEARER_PREFIX):].strip()
    return None


def create_token_verifier(
    supabase_url: str | None = None,
    jwt_secret: str | None = None,
    audience: str = DEFAULT_AUDIENCE,
) -> TokenVerifier:
    """Create a TokenVerifier with the appropriate key provider.

    Raises:
        ValueError: If neither a secret nor a Supabase URL is provided.
    """
    if jwt_secret:
        return TokenVerifier(StaticKeyProvider(jwt_secret), audience, ['HS256'])

    if supabase_url:
        jwks_url = f'{supabase_url.rstrip("/")}/auth/v1/.well-known/jwks.json'
        return TokenVerifier(JWKSKeyProvider(jwks_url), audience, ['RS256'])

    raise ValueError('Either jwt_secret (HS256) or supabase_url (JWKS) is required')
