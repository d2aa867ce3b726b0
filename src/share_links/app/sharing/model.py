"""Share-link domain model.

Only the SHA-256 digest of a share token is ever persisted; the plaintext
token is returned to the creator once and is otherwise unknowable.

This module provides:
  1. ``Permission`` -- capability bit-set granted on a resolved access.
  2. ``ShareLink`` -- the link record (``share_links`` row).
  3. ``AccessLogEntry`` -- one immutable ledger row per resolve attempt.
  4. Enums for outcomes, failure reasons and access channels.

Lifecycle invariants:
  - ``is_active=False`` is terminal; nothing reactivates a link.
  - Expiry is computed at evaluation time and never written back.
  - ``access_count`` only moves through the store's atomic grant.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntFlag
from typing import Iterable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_share_id() -> str:
    return f'shr_{uuid.uuid4().hex}'


def new_log_id() -> str:
    return f'acl_{uuid.uuid4().hex}'


# ── Permission bit-set ────────────────────────────────────────────────


class Permission(IntFlag):
    """Capabilities a share holder receives.

    Every non-empty set implies ``READ_ONLY`` (viewing). The empty set
    means "unset" and is rejected when a link is created.
    """

    NONE = 0
    READ_ONLY = 1
    ALLOW_COPY = 2
    ALLOW_DOWNLOAD = 4

    @classmethod
    def from_names(cls, names: Iterable[str]) -> Permission:
        """Build a permission set from names like ``'allow_copy'``.

        Raises:
            ValueError: On an unknown name.
        """
        result = cls.NONE
        for name in names:
            key = name.strip().upper()
            if key not in _PERMISSION_NAMES:
                raise ValueError(f'unknown permission {name!r}')
            result |= cls[key]
        return result

    def names(self) -> list[str]:
        return [
            member.name.lower()
            for member in (self.READ_ONLY, self.ALLOW_COPY, self.ALLOW_DOWNLOAD)
            if member in self
        ]

    def effective(self) -> Permission:
        """Granted capabilities, with viewing implied."""
        if self == Permission.NONE:
            return Permission.NONE
        return self | Permission.READ_ONLY


_PERMISSION_NAMES = frozenset({'READ_ONLY', 'ALLOW_COPY', 'ALLOW_DOWNLOAD'})

# Snippet fields never shown to share holders.
PRIVATE_RESOURCE_FIELDS = frozenset({
    'owner_id',
    'owner_email',
    'edit_history',
    'versions',
    'deleted_at',
})


def filter_resource_for_share(resource: dict, permission: Permission) -> dict:
    """Project a snippet down to what a share holder may see and do."""
    effective = permission.effective()
    shared = {k: v for k, v in resource.items() if k not in PRIVATE_RESOURCE_FIELDS}
    shared['capabilities'] = {
        'view': Permission.READ_ONLY in effective,
        'copy': Permission.ALLOW_COPY in effective,
        'download': Permission.ALLOW_DOWNLOAD in effective,
    }
    return shared


# ── Ledger enums ─────────────────────────────────────────────────────


class AccessOutcome(str, Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'


class FailureReason(str, Enum):
    """Why a resolve attempt did not grant access."""

    EXPIRED = 'expired'
    REVOKED = 'revoked'
    LIMIT_REACHED = 'limit_reached'
    BAD_PASSWORD = 'bad_password'
    RATE_LIMITED = 'rate_limited'
    # Recorded for statistics only; it is a retry branch, not an error.
    PASSWORD_REQUIRED = 'password_required'


class AccessChannel(str, Enum):
    """How the holder reached the link."""

    DIRECT = 'direct'
    LINK = 'link'
    QR = 'qr'

    @classmethod
    def parse(cls, value: str | None) -> AccessChannel:
        if not value:
            return cls.DIRECT
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.DIRECT


# ── Domain model ──────────────────────────────────────────────────────


@dataclass
class ShareLink:
    """Share link record matching the ``share_links`` table.

    Attributes:
        id: Store-assigned identity.
        token_hash: SHA-256 hex digest of the plaintext token (unique).
        resource_id: The shared snippet.
        owner_id: User who created the link (resource owner).
        permission: Granted capability set.
        expires_at: Absolute expiry, or None for no expiry.
        is_active: False once revoked (terminal).
        access_count: Successful grants so far (monotonic).
        max_access_count: Grant cap; 0 means unlimited.
        password_hash: Argon2 hash, or None when no password is set.
        description: Owner-facing note.
        last_accessed_at: Timestamp of the most recent grant.
    """

    id: str
    token_hash: str
    resource_id: str
    owner_id: str
    permission: Permission
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    is_active: bool = True
    access_count: int = 0
    max_access_count: int = 0
    password_hash: str | None = None
    description: str | None = None
    last_accessed_at: datetime | None = None

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None

    @property
    def is_revoked(self) -> bool:
        return not self.is_active

    @property
    def is_limited(self) -> bool:
        return self.max_access_count > 0

    @property
    def is_limit_reached(self) -> bool:
        return self.is_limited and self.access_count >= self.max_access_count

    @property
    def remaining_access_count(self) -> int | None:
        if not self.is_limited:
            return None
        return max(self.max_access_count - self.access_count, 0)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_public_dict(self, now: datetime | None = None) -> dict:
        """Owner-facing representation (no digests, no password hash)."""
        return {
            'share_id': self.id,
            'resource_id': self.resource_id,
            'owner_id': self.owner_id,
            'permission': self.permission.effective().names(),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'is_active': self.is_active,
            'is_expired': self.is_expired(now),
            'access_count': self.access_count,
            'max_access_count': self.max_access_count,
            'remaining_access_count': self.remaining_access_count,
            'has_password': self.has_password,
            'description': self.description,
            'last_accessed_at': (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }


@dataclass(frozen=True, slots=True)
class AccessLogEntry:
    """Immutable ledger row for one resolve attempt."""

    share_link_id: str
    source_address: str
    outcome: AccessOutcome
    failure_reason: FailureReason | None = None
    user_agent: str | None = None
    session_id: str | None = None
    referrer: str | None = None
    channel: AccessChannel = AccessChannel.DIRECT
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_log_id)

    @property
    def is_success(self) -> bool:
        return self.outcome is AccessOutcome.SUCCESS

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'share_id': self.share_link_id,
            'timestamp': self.timestamp.isoformat(),
            'source_address': self.source_address,
            'user_agent': self.user_agent,
            'outcome': self.outcome.value,
            'failure_reason': self.failure_reason.value if self.failure_reason else None,
            'session_id': self.session_id,
            'referrer': self.referrer,
            'channel': self.channel.value,
        }
