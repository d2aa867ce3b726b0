"""Owner authentication for the share links service."""

from .auth_guard import AuthGuardMiddleware, get_auth_identity
from .token_verify import (
    AuthIdentity,
    TokenVerificationError,
    TokenVerifier,
    create_token_verifier,
)

__all__ = [
    'AuthGuardMiddleware',
    'AuthIdentity',
    'TokenVerificationError',
    'TokenVerifier',
    'create_token_verifier',
    'get_auth_identity',
]
