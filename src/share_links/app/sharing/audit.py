"""Owner-side audit events for share-link management.

Records create, update, revoke, delete and purge operations for
observability pipelines. Resolve attempts are not audit events; they live
in the access ledger.

Security invariant:
  Plaintext tokens must NEVER appear in audit event data.
  Only token prefixes (first 8 chars) are included for correlation.

This module provides:
  1. ``ShareAuditEvent`` -- structured audit record.
  2. ``ShareAuditEmitter`` -- protocol for event sinks.
  3. ``InMemoryShareAuditEmitter`` -- test implementation.
  4. ``LoggingShareAuditEmitter`` -- structlog sink used by the app.
  5. ``emit_share_*`` -- convenience functions for each operation type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from share_links.observability.logging import get_logger

from .model import ShareLink, utcnow
from .tokens import redact_token

logger = get_logger('share_links.audit')


@dataclass(frozen=True, slots=True)
class ShareAuditEvent:
    """Structured audit event for share operations.

    Attributes:
        event_type: share.created, share.updated, share.revoked,
                    share.deleted or share.purged.
        share_id: The share link involved (empty for bulk purges).
        resource_id: The shared resource.
        token_prefix: First 8 chars of the token (creation only).
        actor_user_id: Who performed the action ('system' for purges).
        detail: Additional context (changed fields, purge count).
    """

    event_type: str
    share_id: str = ''
    resource_id: str = ''
    token_prefix: str = '<redacted>'
    actor_user_id: str = ''
    detail: str = ''
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Serialize to a dict safe for JSON logging."""
        return {
            'event_type': self.event_type,
            'share_id': self.share_id,
            'resource_id': self.resource_id,
            'token_prefix': self.token_prefix,
            'actor_user_id': self.actor_user_id,
            'detail': self.detail,
            'timestamp': self.timestamp.isoformat(),
        }


class ShareAuditEmitter(Protocol):
    """Abstract audit event sink."""

    async def emit(self, event: ShareAuditEvent) -> None: ...


class InMemoryShareAuditEmitter:
    """Test audit emitter that stores events in memory."""

    def __init__(self) -> None:
        self.events: list[ShareAuditEvent] = []

    async def emit(self, event: ShareAuditEvent) -> None:
        self.events.append(event)

    def find(
        self,
        event_type: str | None = None,
        share_id: str | None = None,
    ) -> list[ShareAuditEvent]:
        """Filter events by type and/or share id."""
        result = self.events
        if event_type:
            result = [e for e in result if e.event_type == event_type]
        if share_id:
            result = [e for e in result if e.share_id == share_id]
        return result


class LoggingShareAuditEmitter:
    """Writes audit events as structured log lines."""

    async def emit(self, event: ShareAuditEvent) -> None:
        logger.info('share_audit', **event.to_dict())


# ── Convenience emitters ─────────────────────────────────────────────


async def emit_share_created(
    emitter: ShareAuditEmitter,
    *,
    link: ShareLink,
    token: str,
) -> ShareAuditEvent:
    event = ShareAuditEvent(
        event_type='share.created',
        share_id=link.id,
        resource_id=link.resource_id,
        token_prefix=redact_token(token),
        actor_user_id=link.owner_id,
        detail=','.join(link.permission.effective().names()),
    )
    await emitter.emit(event)
    return event


async def emit_share_updated(
    emitter: ShareAuditEmitter,
    *,
    link: ShareLink,
    user_id: str,
    changed: list[str],
) -> ShareAuditEvent:
    event = ShareAuditEvent(
        event_type='share.updated',
        share_id=link.id,
        resource_id=link.resource_id,
        actor_user_id=user_id,
        detail=','.join(changed),
    )
    await emitter.emit(event)
    return event


async def emit_share_revoked(
    emitter: ShareAuditEmitter,
    *,
    link: ShareLink,
    user_id: str,
) -> ShareAuditEvent:
    event = ShareAuditEvent(
        event_type='share.revoked',
        share_id=link.id,
        resource_id=link.resource_id,
        actor_user_id=user_id,
    )
    await emitter.emit(event)
    return event


async def emit_share_deleted(
    emitter: ShareAuditEmitter,
    *,
    link: ShareLink,
    user_id: str,
) -> ShareAuditEvent:
    event = ShareAuditEvent(
        event_type='share.deleted',
        share_id=link.id,
        resource_id=link.resource_id,
        actor_user_id=user_id,
    )
    await emitter.emit(event)
    return event


async def emit_shares_purged(
    emitter: ShareAuditEmitter,
    *,
    count: int,
) -> ShareAuditEvent:
    event = ShareAuditEvent(
        event_type='share.purged',
        actor_user_id='system',
        detail=f'count={count}',
    )
    await emitter.emit(event)
    return event
