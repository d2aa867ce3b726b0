"""Optional share-link password hashing and verification.

Passwords are hashed with Argon2id (salted, deliberately slow) when the
link is created and verified with the library's constant-time comparison
at access time.

Verification fails closed: a malformed stored hash, a mismatch, or any
other verification error is reported as ``False``, never as a match.

"No password" is represented by ``None`` everywhere. An empty string is a
(rejected) password, not the absence of one.
"""

from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from share_links.observability.logging import get_logger

logger = get_logger(__name__)

MAX_PASSWORD_LENGTH = 128


class CredentialVerifier(Protocol):
    """Hash/verify contract used by the access policy."""

    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...


class PasswordVerifier:
    """Argon2 implementation of ``CredentialVerifier``.

    Args:
        hasher: Optional pre-configured ``PasswordHasher`` (tests use
            cheaper parameters).
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher()

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError('password must be a non-empty string')
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return bool(self._hasher.verify(password_hash, password))
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning('share_password_hash_invalid')
            return False
