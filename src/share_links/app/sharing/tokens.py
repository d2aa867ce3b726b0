"""Share token minting, shape validation and redaction.

Tokens are opaque: 32 random bytes rendered with URL-safe base64 and no
padding, always exactly ``TOKEN_LENGTH`` characters. They carry no
timestamp, resource id or permission; all policy lives server-side.

Only ``hash_token(token)`` is persisted. ``is_well_formed`` runs before any
storage lookup so malformed input is rejected exactly like an unknown
token, without a wasted round trip.
"""

from __future__ import annotations

import hashlib
import re
import secrets

TOKEN_BYTES = 32  # 256-bit tokens.
TOKEN_LENGTH = 43  # len(token_urlsafe(32)), base64 without padding.
TOKEN_PREFIX_LENGTH = 8  # Characters kept for log correlation.

_TOKEN_SHAPE = re.compile(r'[A-Za-z0-9_-]{%d}' % TOKEN_LENGTH)


def generate_share_token() -> str:
    """Generate a cryptographically random URL-safe share token.

    The returned plaintext token is handed to the creator exactly once.
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_well_formed(candidate: str | None) -> bool:
    """True when ``candidate`` has the exact shape of a minted token."""
    if not candidate or len(candidate) != TOKEN_LENGTH:
        return False
    return _TOKEN_SHAPE.fullmatch(candidate) is not None


def hash_token(plaintext: str) -> str:
    """SHA-256 hex digest of a plaintext token (the persisted lookup key)."""
    return hashlib.sha256(plaintext.encode('utf-8')).hexdigest()


def redact_token(token: str | None) -> str:
    """Safely truncate a token to a prefix for logging.

    Returns ``<prefix>...`` or ``<redacted>`` for missing/short tokens.
    """
    if not token or len(token) < TOKEN_PREFIX_LENGTH:
        return '<redacted>'
    return f'{token[:TOKEN_PREFIX_LENGTH]}...'

