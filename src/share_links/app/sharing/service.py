"""Share link lifecycle and resolution.

``ShareLinkService`` is the single entry point used by the HTTP routers:

  create   -> validate, check resource ownership, mint token, persist
  resolve  -> shape check, digest lookup, rate limit, policy, atomic grant,
              permission-filtered resource fetch
  validate -> the resolve checks without the grant (no access consumed)
  revoke / update / delete / stats / access_logs -> owner-only management

Every store and resource-directory call goes through ``_call``, which
applies the storage timeout and turns timeouts and ``StorageUnavailable``
into ``ShareServiceUnavailable``. Storage trouble is never reported as a
denial.

Argon2 hashing and verification run in the default executor so a
password check never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from share_links.observability.logging import get_logger
from share_links.observability.metrics import (
    SHARE_LINKS_CREATED,
    SHARE_RESOLVE_ATTEMPTS,
    SHARE_RESOLVE_DURATION_SECONDS,
    SHARE_STORAGE_ERRORS,
)

from ..protocols import (
    ResourceDirectory,
    ShareLinkStore,
    StorageUnavailable,
    TokenCollision,
)
from .audit import (
    LoggingShareAuditEmitter,
    ShareAuditEmitter,
    emit_share_created,
    emit_share_deleted,
    emit_share_revoked,
    emit_share_updated,
    emit_shares_purged,
)
from .credentials import MAX_PASSWORD_LENGTH, CredentialVerifier, PasswordVerifier
from .errors import (
    FieldError,
    InvalidShareArgument,
    ShareDenied,
    ShareForbidden,
    ShareNotFound,
    SharePasswordRequired,
    ShareServiceUnavailable,
    ShareThrottled,
)
from .ledger import (
    AccessLedger,
    AccessLogFilter,
    DEFAULT_PAGE_SIZE,
    Page,
    ShareStats,
    compute_share_stats,
    paginate,
)
from .model import (
    AccessChannel,
    AccessLogEntry,
    AccessOutcome,
    FailureReason,
    Permission,
    ShareLink,
    new_share_id,
    utcnow,
)
from .policy import AccessDecision, DecisionKind, evaluate, status_denial
from .rate_limit import RateLimiter
from .tokens import generate_share_token, hash_token, is_well_formed, redact_token

logger = get_logger(__name__)

T = TypeVar('T')

MAX_DESCRIPTION_LENGTH = 500
DEFAULT_MAX_EXPIRY_HOURS = 720
DEFAULT_PURGE_RETENTION = timedelta(days=30)
TOKEN_MINT_ATTEMPTS = 3
MAX_ACCESS_COUNT = 2**31 - 1  # share_links.max_access_count is a Postgres integer.


@dataclass(frozen=True, slots=True)
class AccessContext:
    """Request details recorded with every resolve or validate attempt."""

    source_address: str = 'unknown'
    user_agent: str | None = None
    session_id: str | None = None
    referrer: str | None = None
    channel: AccessChannel = AccessChannel.DIRECT

    def entry(
        self,
        share_link_id: str,
        outcome: AccessOutcome,
        reason: FailureReason | None,
        at: datetime,
    ) -> AccessLogEntry:
        return AccessLogEntry(
            share_link_id=share_link_id,
            source_address=self.source_address,
            outcome=outcome,
            failure_reason=reason,
            user_agent=self.user_agent,
            session_id=self.session_id,
            referrer=self.referrer,
            channel=self.channel,
            timestamp=at,
        )


@dataclass(frozen=True)
class CreatedShareLink:
    """Result of ``create``; the only place the plaintext token appears."""

    link: ShareLink
    token: str
    share_url: str
    qr_payload: str

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            **self.link.to_public_dict(now),
            'token': self.token,
            'share_url': self.share_url,
            'qr_payload': self.qr_payload,
        }


@dataclass(frozen=True)
class ResolvedShare:
    resource: dict[str, Any]
    permission: Permission
    link: ShareLink

    def to_dict(self) -> dict:
        return {
            'resource': self.resource,
            'permission': self.permission.names(),
            'expires_at': self.link.expires_at.isoformat() if self.link.expires_at else None,
            'remaining_access_count': self.link.remaining_access_count,
        }


@dataclass(frozen=True)
class ShareValidation:
    """Result of ``validate``: the link would grant access right now."""

    permission: Permission
    link: ShareLink

    def to_dict(self) -> dict:
        return {
            'valid': True,
            'permission': self.permission.names(),
            'has_password': self.link.has_password,
            'expires_at': self.link.expires_at.isoformat() if self.link.expires_at else None,
            'remaining_access_count': self.link.remaining_access_count,
        }


class ShareLinkService:
    """Owner-facing management and public resolution of share links.

    Args:
        store: Share link and access ledger persistence.
        resources: Snippet directory (ownership and filtered fetch).
        verifier: Password hashing; Argon2 by default.
        rate_limiter: Per-source attempt gate; None disables throttling.
        audit: Owner audit sink; structured logging by default.
        clock: Returns the current aware UTC datetime.
        storage_timeout: Seconds allowed for each storage call.
        public_base_url: Origin used for share URLs.
        max_expiry_hours: Furthest allowed expiry at create/extend time.
    """

    def __init__(
        self,
        store: ShareLinkStore,
        resources: ResourceDirectory,
        *,
        verifier: CredentialVerifier | None = None,
        rate_limiter: RateLimiter | None = None,
        audit: ShareAuditEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
        storage_timeout: float = 5.0,
        public_base_url: str = 'http://localhost:8000',
        max_expiry_hours: int = DEFAULT_MAX_EXPIRY_HOURS,
    ) -> None:
        self._store = store
        self._resources = resources
        self._verifier = verifier or PasswordVerifier()
        self._rate_limiter = rate_limiter
        self._audit = audit or LoggingShareAuditEmitter()
        self._clock = clock
        self._storage_timeout = storage_timeout
        self._base_url = public_base_url.rstrip('/')
        self.max_expiry_hours = max_expiry_hours
        self._max_expiry = timedelta(hours=max_expiry_hours)
        self.ledger = AccessLedger(store)

    # ── Plumbing ─────────────────────────────────────────────────────

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._storage_timeout)
        except (asyncio.TimeoutError, StorageUnavailable) as exc:
            SHARE_STORAGE_ERRORS.labels(operation=operation).inc()
            logger.error(
                'share_storage_unavailable',
                operation=operation,
                error=str(exc) or type(exc).__name__,
            )
            raise ShareServiceUnavailable() from exc

    def now(self) -> datetime:
        return self._clock()

    async def _in_executor(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    async def _evaluate(
        self, link: ShareLink, now: datetime, provided_password: str | None,
    ) -> AccessDecision:
        if link.has_password and provided_password is not None:
            return await self._in_executor(
                evaluate, link, now, provided_password, self._verifier,
            )
        return evaluate(link, now, provided_password, self._verifier)

    def share_url(self, token: str) -> str:
        return f'{self._base_url}/s/{token}'

    def qr_payload(self, token: str) -> str:
        return f'{self.share_url(token)}?via={AccessChannel.QR.value}'

    async def _owned_link(self, share_link_id: str, by_user_id: str) -> ShareLink:
        link = await self._call('get', self._store.get(share_link_id))
        if link is None:
            raise ShareNotFound()
        if link.owner_id != by_user_id:
            raise ShareForbidden()
        return link

    # ── Create ───────────────────────────────────────────────────────

    def _validate_create(
        self,
        *,
        resource_id: str,
        permission: Permission,
        expires_at: datetime | None,
        max_access_count: int,
        password: str | None,
        description: str | None,
        require_password: bool | None,
        now: datetime,
    ) -> list[FieldError]:
        errors: list[FieldError] = []
        if not resource_id:
            errors.append(FieldError('resource_id', 'A resource is required.'))
        if permission == Permission.NONE:
            errors.append(FieldError('permission', 'At least one permission is required.'))
        if max_access_count < 0:
            errors.append(FieldError('max_access_count', 'Must be zero (unlimited) or positive.'))
        elif max_access_count > MAX_ACCESS_COUNT:
            errors.append(FieldError('max_access_count', f'Must not exceed {MAX_ACCESS_COUNT}.'))
        if expires_at is not None:
            if expires_at.tzinfo is None:
                errors.append(FieldError('expires_at', 'Must include a timezone.'))
            elif expires_at <= now:
                errors.append(FieldError('expires_at', 'Must be in the future.'))
            elif expires_at > now + self._max_expiry:
                errors.append(FieldError('expires_at', 'Exceeds the maximum link lifetime.'))
        if password is not None:
            if password == '':
                errors.append(FieldError('password', 'Must not be empty.'))
            elif len(password) > MAX_PASSWORD_LENGTH:
                errors.append(FieldError('password', 'Too long.'))
        if require_password is True and password is None:
            errors.append(FieldError('password', 'A password is required for this link.'))
        if require_password is False and password is not None:
            errors.append(FieldError('password', 'A password was given but not required.'))
        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            errors.append(FieldError('description', 'Too long.'))
        return errors

    async def create(
        self,
        resource_id: str,
        owner_id: str,
        permission: Permission,
        *,
        expires_at: datetime | None = None,
        max_access_count: int | None = None,
        password: str | None = None,
        description: str | None = None,
        require_password: bool | None = None,
    ) -> CreatedShareLink:
        """Create a share link for a resource the caller owns.

        Raises:
            InvalidShareArgument: On any invalid input (all fields reported).
            ShareNotFound: The resource does not exist.
            ShareForbidden: The caller does not own the resource.
            ShareServiceUnavailable: Storage failed or timed out.
        """
        now = self._clock()
        max_access_count = max_access_count or 0
        errors = self._validate_create(
            resource_id=resource_id,
            permission=permission,
            expires_at=expires_at,
            max_access_count=max_access_count,
            password=password,
            description=description,
            require_password=require_password,
            now=now,
        )
        if errors:
            raise InvalidShareArgument(errors)

        owner = await self._call(
            'get_resource_owner', self._resources.get_resource_owner(resource_id),
        )
        if owner is None:
            raise ShareNotFound('Resource not found.')
        if owner != owner_id:
            raise ShareForbidden()

        password_hash = None
        if password is not None:
            password_hash = await self._in_executor(self._verifier.hash, password)

        for attempt in range(1, TOKEN_MINT_ATTEMPTS + 1):
            token = generate_share_token()
            candidate = ShareLink(
                id=new_share_id(),
                token_hash=hash_token(token),
                resource_id=resource_id,
                owner_id=owner_id,
                permission=permission,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
                max_access_count=max_access_count,
                password_hash=password_hash,
                description=description,
            )
            try:
                link = await self._call('create', self._store.create(candidate))
                break
            except TokenCollision:
                logger.warning('share_token_collision', attempt=attempt)
        else:
            raise ShareServiceUnavailable('Could not allocate a share token.')

        SHARE_LINKS_CREATED.labels(
            password_protected=str(link.has_password).lower(),
        ).inc()
        await emit_share_created(self._audit, link=link, token=token)
        logger.info(
            'share_created',
            share_id=link.id,
            resource_id=link.resource_id,
            token_prefix=redact_token(token),
            has_password=link.has_password,
            max_access_count=link.max_access_count,
        )
        return CreatedShareLink(
            link=link,
            token=token,
            share_url=self.share_url(token),
            qr_payload=self.qr_payload(token),
        )

    # ── Resolve ──────────────────────────────────────────────────────

    async def resolve(
        self,
        token: str,
        *,
        provided_password: str | None = None,
        source_address: str = 'unknown',
        user_agent: str | None = None,
        session_id: str | None = None,
        referrer: str | None = None,
        channel: AccessChannel = AccessChannel.DIRECT,
    ) -> ResolvedShare:
        """Resolve a presented token to the permission-filtered resource.

        Raises:
            ShareNotFound: Unknown or malformed token, or resource deleted.
            ShareThrottled: Too many attempts from this source.
            SharePasswordRequired: The link has a password and none was given.
            ShareDenied: Revoked, expired, limit reached or wrong password.
            ShareServiceUnavailable: Storage failed or timed out.
        """
        context = AccessContext(
            source_address=source_address or 'unknown',
            user_agent=user_agent,
            session_id=session_id,
            referrer=referrer,
            channel=channel,
        )
        started = time.perf_counter()
        try:
            return await self._resolve(token, provided_password, context)
        finally:
            SHARE_RESOLVE_DURATION_SECONDS.observe(time.perf_counter() - started)

    async def validate(
        self,
        token: str,
        *,
        provided_password: str | None = None,
        source_address: str = 'unknown',
        user_agent: str | None = None,
        session_id: str | None = None,
        referrer: str | None = None,
        channel: AccessChannel = AccessChannel.DIRECT,
    ) -> ShareValidation:
        """Check a token (and password) without consuming an access.

        Runs the same throttle and policy as ``resolve`` and logs failures
        the same way. A passing check writes no ledger entry and leaves the
        access count unchanged.

        Raises:
            The same errors as ``resolve``.
        """
        context = AccessContext(
            source_address=source_address or 'unknown',
            user_agent=user_agent,
            session_id=session_id,
            referrer=referrer,
            channel=channel,
        )
        link, decision, _ = await self._admit(token, provided_password, context)
        SHARE_RESOLVE_ATTEMPTS.labels(outcome='validated', reason='none').inc()
        logger.info('share_validated', share_id=link.id, token_prefix=redact_token(token))
        return ShareValidation(permission=decision.permission, link=link)

    async def _admit(
        self,
        token: str,
        provided_password: str | None,
        context: AccessContext,
    ) -> tuple[ShareLink, AccessDecision, datetime]:
        """Shape check, lookup, throttle and policy; raise on any refusal."""
        if not is_well_formed(token):
            SHARE_RESOLVE_ATTEMPTS.labels(outcome='not_found', reason='malformed').inc()
            raise ShareNotFound()

        link = await self._call('get_by_token_hash', self._store.get_by_token_hash(hash_token(token)))
        if link is None:
            SHARE_RESOLVE_ATTEMPTS.labels(outcome='not_found', reason='unknown').inc()
            raise ShareNotFound()

        if self._rate_limiter is not None:
            throttle = await self._rate_limiter.check(token, context.source_address)
            if not throttle.allowed:
                await self._record_failure(link, context, FailureReason.RATE_LIMITED, self._clock())
                SHARE_RESOLVE_ATTEMPTS.labels(outcome='throttled', reason='rate_limited').inc()
                logger.warning(
                    'share_throttled',
                    share_id=link.id,
                    token_prefix=redact_token(token),
                    attempts=throttle.count,
                )
                raise ShareThrottled(throttle.retry_after)

        now = self._clock()
        decision = await self._evaluate(link, now, provided_password)
        if decision.kind is DecisionKind.ALLOW:
            return link, decision, now

        reason = decision.reason
        await self._record_failure(link, context, reason, now)
        if decision.kind is DecisionKind.PASSWORD_REQUIRED:
            SHARE_RESOLVE_ATTEMPTS.labels(outcome='password_required', reason=reason.value).inc()
            raise SharePasswordRequired()
        SHARE_RESOLVE_ATTEMPTS.labels(outcome='denied', reason=reason.value).inc()
        logger.info(
            'share_denied',
            share_id=link.id,
            token_prefix=redact_token(token),
            reason=reason.value,
        )
        raise ShareDenied(reason)

    async def _record_failure(
        self,
        link: ShareLink,
        context: AccessContext,
        reason: FailureReason,
        at: datetime,
    ) -> None:
        await self._call(
            'append_access_log',
            self.ledger.record_failure(context.entry(link.id, AccessOutcome.FAILURE, reason, at)),
        )

    async def _resolve(
        self,
        token: str,
        provided_password: str | None,
        context: AccessContext,
    ) -> ResolvedShare:
        link, decision, now = await self._admit(token, provided_password, context)

        grant = await self._call(
            'record_grant',
            self._store.record_grant(
                link.id, context.entry(link.id, AccessOutcome.SUCCESS, None, now), now,
            ),
        )
        if not grant.granted:
            if grant.link is None:
                SHARE_RESOLVE_ATTEMPTS.labels(outcome='not_found', reason='deleted').inc()
                raise ShareNotFound()
            reason = status_denial(grant.link, now) or FailureReason.LIMIT_REACHED
            await self._record_failure(link, context, reason, now)
            SHARE_RESOLVE_ATTEMPTS.labels(outcome='denied', reason=reason.value).inc()
            logger.info(
                'share_grant_race_lost',
                share_id=link.id,
                token_prefix=redact_token(token),
                reason=reason.value,
            )
            raise ShareDenied(reason)

        resource = await self._call(
            'get_resource_for_share',
            self._resources.get_resource_for_share(link.resource_id, decision.permission),
        )
        if resource is None:
            SHARE_RESOLVE_ATTEMPTS.labels(outcome='not_found', reason='resource_missing').inc()
            logger.warning('share_resource_missing', share_id=link.id, resource_id=link.resource_id)
            raise ShareNotFound()

        SHARE_RESOLVE_ATTEMPTS.labels(outcome='granted', reason='none').inc()
        logger.info(
            'share_resolved',
            share_id=link.id,
            token_prefix=redact_token(token),
            channel=context.channel.value,
            access_count=grant.link.access_count,
        )
        return ResolvedShare(resource=resource, permission=decision.permission, link=grant.link)

    # ── Owner management ─────────────────────────────────────────────

    async def get(self, share_link_id: str, by_user_id: str) -> ShareLink:
        return await self._owned_link(share_link_id, by_user_id)

    async def revoke(self, share_link_id: str, by_user_id: str) -> ShareLink:
        """Revoke a link. Idempotent: revoking twice returns the same state."""
        link = await self._owned_link(share_link_id, by_user_id)
        if not link.is_active:
            return link
        revoked = await self._call('revoke', self._store.revoke(share_link_id, self._clock()))
        if revoked is None:
            raise ShareNotFound()
        await emit_share_revoked(self._audit, link=revoked, user_id=by_user_id)
        logger.info('share_revoked', share_id=share_link_id)
        return revoked

    async def update(
        self,
        share_link_id: str,
        by_user_id: str,
        *,
        description: str | None = None,
        permission: Permission | None = None,
        max_access_count: int | None = None,
        extend_hours: int | None = None,
    ) -> ShareLink:
        """Change link metadata. Never reactivates a revoked link.

        Raises:
            InvalidShareArgument: Bad values, a cap below the current count,
                or an extension of a link that has no expiry.
        """
        link = await self._owned_link(share_link_id, by_user_id)
        now = self._clock()
        errors: list[FieldError] = []
        changes: dict[str, Any] = {}

        if description is not None:
            if len(description) > MAX_DESCRIPTION_LENGTH:
                errors.append(FieldError('description', 'Too long.'))
            else:
                changes['description'] = description
        if permission is not None:
            if permission == Permission.NONE:
                errors.append(FieldError('permission', 'At least one permission is required.'))
            else:
                changes['permission'] = permission
        if max_access_count is not None:
            if max_access_count < 0:
                errors.append(FieldError('max_access_count', 'Must be zero (unlimited) or positive.'))
            elif max_access_count > MAX_ACCESS_COUNT:
                errors.append(FieldError('max_access_count', f'Must not exceed {MAX_ACCESS_COUNT}.'))
            elif 0 < max_access_count < link.access_count:
                errors.append(FieldError(
                    'max_access_count',
                    f'Cannot be lower than the current access count ({link.access_count}).',
                ))
            else:
                changes['max_access_count'] = max_access_count
        if extend_hours is not None:
            if link.expires_at is None:
                errors.append(FieldError('extend_hours', 'This link does not expire.'))
            elif extend_hours < 1:
                errors.append(FieldError('extend_hours', 'Must be at least one hour.'))
            elif extend_hours > self.max_expiry_hours:
                errors.append(FieldError('extend_hours', 'Exceeds the maximum link lifetime.'))
            else:
                new_expiry = max(link.expires_at, now) + timedelta(hours=extend_hours)
                if new_expiry > now + self._max_expiry:
                    errors.append(FieldError('extend_hours', 'Exceeds the maximum link lifetime.'))
                else:
                    changes['expires_at'] = new_expiry

        if errors:
            raise InvalidShareArgument(errors)
        if not changes:
            return link

        changed = sorted(changes)
        changes['updated_at'] = now
        updated = await self._call('update_metadata', self._store.update_metadata(share_link_id, changes))
        if updated is None:
            raise ShareNotFound()
        await emit_share_updated(self._audit, link=updated, user_id=by_user_id, changed=changed)
        logger.info('share_updated', share_id=share_link_id, changed=changed)
        return updated

    async def delete(self, share_link_id: str, by_user_id: str) -> None:
        """Delete a link and its access log. Its token stays retired."""
        link = await self._owned_link(share_link_id, by_user_id)
        deleted = await self._call('delete', self._store.delete(share_link_id))
        if not deleted:
            raise ShareNotFound()
        await emit_share_deleted(self._audit, link=link, user_id=by_user_id)
        logger.info('share_deleted', share_id=share_link_id)

    async def stats(self, share_link_id: str, by_user_id: str) -> ShareStats:
        link = await self._owned_link(share_link_id, by_user_id)
        entries = await self._call('list_access_logs', self.ledger.entries(share_link_id))
        return compute_share_stats(link, entries, self._clock())

    async def access_logs(
        self,
        share_link_id: str,
        by_user_id: str,
        log_filter: AccessLogFilter | None = None,
    ) -> Page[AccessLogEntry]:
        await self._owned_link(share_link_id, by_user_id)
        return await self._call('list_access_logs', self.ledger.query(share_link_id, log_filter))

    async def list_for_owner(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ShareLink]:
        links = await self._call('list_for_owner', self._store.list_for_owner(owner_id))
        return paginate(links, page, page_size)

    async def list_for_resource(self, resource_id: str, by_user_id: str) -> list[ShareLink]:
        owner = await self._call(
            'get_resource_owner', self._resources.get_resource_owner(resource_id),
        )
        if owner is None:
            raise ShareNotFound('Resource not found.')
        if owner != by_user_id:
            raise ShareForbidden()
        return await self._call('list_for_resource', self._store.list_for_resource(resource_id))

    async def purge_expired(self, retention: timedelta = DEFAULT_PURGE_RETENTION) -> int:
        """Delete links that expired more than ``retention`` ago."""
        before = self._clock() - retention
        count = await self._call('delete_expired', self._store.delete_expired(before))
        if count:
            await emit_shares_purged(self._audit, count=count)
        logger.info('share_expired_purged', count=count, before=before.isoformat())
        return count
