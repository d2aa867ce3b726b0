"""Tests for the share link service.

Validates:
  - Create: validation, resource ownership, token returned once, digest stored.
  - Resolve: grants, access caps, password flow, expiry, revocation,
    malformed tokens, throttling, concurrent grants.
  - Validate: same checks as resolve, no access consumed on success.
  - Argon2 work runs in the default executor, off the event loop.
  - Management: revoke (idempotent), update, delete, stats, logs, listing.
  - Storage failures surface as ShareServiceUnavailable, never as denials.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from share_links.app.inmemory import InMemoryShareLinkStore
from share_links.app.protocols import StorageUnavailable
from share_links.app.sharing.errors import (
    InvalidShareArgument,
    ShareDenied,
    ShareForbidden,
    ShareNotFound,
    SharePasswordRequired,
    ShareServiceUnavailable,
    ShareThrottled,
)
from share_links.app.sharing.ledger import AccessLogFilter
from share_links.app.sharing.model import (
    AccessChannel,
    AccessOutcome,
    FailureReason,
    Permission,
)
from share_links.app.sharing.rate_limit import InMemoryRateLimitStore, RateLimiter
from share_links.app.sharing.service import ShareLinkService
from share_links.app.sharing.tokens import generate_share_token, hash_token

OWNER_ID = 'user_1'
OTHER_USER_ID = 'user_2'
SNIPPET_ID = 'snip_1'


async def _create(service, **kwargs):
    permission = kwargs.pop('permission', Permission.READ_ONLY)
    return await service.create(SNIPPET_ID, OWNER_ID, permission, **kwargs)


# =====================================================================
# Create
# =====================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_returns_token_once_and_stores_digest(self, service, store):
        created = await _create(service)
        assert len(created.token) == 43
        assert created.share_url == f'https://share.example.com/s/{created.token}'
        assert created.qr_payload == f'{created.share_url}?via=qr'

        stored = await store.get(created.link.id)
        assert stored.token_hash == hash_token(created.token)
        assert created.token not in repr(stored)

    @pytest.mark.asyncio
    async def test_to_dict_includes_token(self, service, clock):
        created = await _create(service, max_access_count=3)
        data = created.to_dict(clock())
        assert data['token'] == created.token
        assert data['remaining_access_count'] == 3
        assert 'token_hash' not in data

    @pytest.mark.asyncio
    async def test_audit_has_prefix_only(self, service, audit):
        created = await _create(service)
        [event] = audit.find('share.created')
        assert event.share_id == created.link.id
        assert event.token_prefix == created.token[:8] + '...'
        assert created.token not in str(event.to_dict())

    @pytest.mark.asyncio
    async def test_password_hashed(self, service, store):
        created = await _create(service, password='hunter22')
        stored = await store.get(created.link.id)
        assert stored.password_hash.startswith('$argon2id$')
        assert created.to_dict()['has_password'] is True

    @pytest.mark.asyncio
    async def test_reports_every_invalid_field(self, service, clock):
        with pytest.raises(InvalidShareArgument) as exc_info:
            await service.create(
                SNIPPET_ID,
                OWNER_ID,
                Permission.NONE,
                max_access_count=-1,
                expires_at=clock() - timedelta(seconds=1),
                password='',
                description='x' * 501,
            )
        fields = {e.field for e in exc_info.value.errors}
        assert fields == {
            'permission', 'max_access_count', 'expires_at', 'password', 'description',
        }

    @pytest.mark.asyncio
    async def test_naive_expiry_rejected(self, service, clock):
        with pytest.raises(InvalidShareArgument):
            await _create(service, expires_at=clock().replace(tzinfo=None) + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_expiry_beyond_max_rejected(self, service, clock):
        with pytest.raises(InvalidShareArgument):
            await _create(service, expires_at=clock() + timedelta(hours=721))

    @pytest.mark.asyncio
    async def test_access_cap_beyond_integer_column_rejected(self, service):
        with pytest.raises(InvalidShareArgument) as exc_info:
            await _create(service, max_access_count=2**31)
        assert exc_info.value.errors[0].field == 'max_access_count'
        created = await _create(service, max_access_count=2**31 - 1)
        assert created.link.max_access_count == 2**31 - 1

    @pytest.mark.asyncio
    async def test_require_password_without_one(self, service):
        with pytest.raises(InvalidShareArgument) as exc_info:
            await _create(service, require_password=True)
        assert exc_info.value.errors[0].field == 'password'

    @pytest.mark.asyncio
    async def test_unknown_resource(self, service):
        with pytest.raises(ShareNotFound):
            await service.create('snip_missing', OWNER_ID, Permission.READ_ONLY)

    @pytest.mark.asyncio
    async def test_not_owner(self, service):
        with pytest.raises(ShareForbidden):
            await service.create(SNIPPET_ID, OTHER_USER_ID, Permission.READ_ONLY)

    @pytest.mark.asyncio
    async def test_token_collision_retried(self, service, store, monkeypatch):
        first = await _create(service)
        tokens = iter([first.token, generate_share_token()])
        monkeypatch.setattr(
            'share_links.app.sharing.service.generate_share_token', lambda: next(tokens),
        )
        second = await _create(service)
        assert second.token != first.token

    @pytest.mark.asyncio
    async def test_token_collision_exhausted(self, service, monkeypatch):
        first = await _create(service)
        monkeypatch.setattr(
            'share_links.app.sharing.service.generate_share_token', lambda: first.token,
        )
        with pytest.raises(ShareServiceUnavailable):
            await _create(service)


# =====================================================================
# Resolve
# =====================================================================


class TestResolve:
    @pytest.mark.asyncio
    async def test_grant_returns_filtered_resource(self, service):
        created = await _create(service, permission=Permission.ALLOW_COPY)
        resolved = await service.resolve(created.token, source_address='1.1.1.1')

        assert resolved.resource['title'] == 'fizzbuzz.py'
        assert 'owner_email' not in resolved.resource
        assert 'versions' not in resolved.resource
        assert resolved.resource['capabilities'] == {
            'view': True, 'copy': True, 'download': False,
        }
        assert resolved.permission == Permission.READ_ONLY | Permission.ALLOW_COPY
        assert resolved.to_dict()['permission'] == ['read_only', 'allow_copy']

    @pytest.mark.asyncio
    async def test_access_cap_and_stats(self, service):
        created = await _create(
            service, permission=Permission.ALLOW_COPY, max_access_count=2,
        )
        first = await service.resolve(created.token, source_address='1.1.1.1')
        assert first.link.remaining_access_count == 1
        await service.resolve(created.token, source_address='1.1.1.1')

        with pytest.raises(ShareDenied) as exc_info:
            await service.resolve(created.token, source_address='1.1.1.1')
        assert exc_info.value.reason is FailureReason.LIMIT_REACHED
        assert exc_info.value.status_code == 403

        stats = await service.stats(created.link.id, OWNER_ID)
        assert stats.access_count == 2
        assert stats.success_count == 2
        assert stats.failure_count == 1
        assert stats.failure_reasons == {'limit_reached': 1}
        assert stats.remaining_access_count == 0

    @pytest.mark.asyncio
    async def test_password_flow(self, service):
        created = await _create(service, password='hunter22')

        with pytest.raises(SharePasswordRequired):
            await service.resolve(created.token)

        with pytest.raises(ShareDenied) as exc_info:
            await service.resolve(created.token, provided_password='wrong')
        assert exc_info.value.reason is FailureReason.BAD_PASSWORD

        resolved = await service.resolve(created.token, provided_password='hunter22')
        assert resolved.link.access_count == 1

        stats = await service.stats(created.link.id, OWNER_ID)
        assert stats.failure_reasons == {'password_required': 1, 'bad_password': 1}

    @pytest.mark.asyncio
    async def test_expired(self, service, clock):
        created = await _create(service, expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=1, seconds=1)

        with pytest.raises(ShareDenied) as exc_info:
            await service.resolve(created.token)
        assert exc_info.value.reason is FailureReason.EXPIRED
        assert exc_info.value.status_code == 410

    @pytest.mark.asyncio
    async def test_revoked(self, service):
        created = await _create(service)
        await service.revoke(created.link.id, OWNER_ID)
        with pytest.raises(ShareDenied) as exc_info:
            await service.resolve(created.token)
        assert exc_info.value.reason is FailureReason.REVOKED

    @pytest.mark.asyncio
    async def test_malformed_token_is_not_found_without_log(self, service):
        created = await _create(service)
        with pytest.raises(ShareNotFound):
            await service.resolve('not-a-token')
        with pytest.raises(ShareNotFound):
            await service.resolve(generate_share_token())
        stats = await service.stats(created.link.id, OWNER_ID)
        assert stats.total_attempts == 0

    @pytest.mark.asyncio
    async def test_ledger_records_request_context(self, service):
        created = await _create(service)
        await service.resolve(
            created.token,
            source_address='203.0.113.9',
            user_agent='Mozilla/5.0 Firefox/123.0',
            session_id='sess-1',
            referrer='https://chat.example.com/',
            channel=AccessChannel.LINK,
        )
        page = await service.access_logs(created.link.id, OWNER_ID)
        [entry] = page.items
        assert entry.outcome is AccessOutcome.SUCCESS
        assert entry.source_address == '203.0.113.9'
        assert entry.session_id == 'sess-1'
        assert entry.referrer == 'https://chat.example.com/'
        assert entry.channel is AccessChannel.LINK

    @pytest.mark.asyncio
    async def test_resource_deleted_after_share(self, service, directory):
        created = await _create(service)
        directory.remove(SNIPPET_ID)
        with pytest.raises(ShareNotFound):
            await service.resolve(created.token)

    @pytest.mark.asyncio
    async def test_concurrent_resolves_never_exceed_cap(self, service):
        created = await _create(service, max_access_count=3)
        results = await asyncio.gather(
            *(service.resolve(created.token, source_address=f'10.0.0.{i}') for i in range(20)),
            return_exceptions=True,
        )
        granted = [r for r in results if not isinstance(r, Exception)]
        denied = [r for r in results if isinstance(r, ShareDenied)]
        assert len(granted) == 3
        assert len(denied) == 17

        link = await service.get(created.link.id, OWNER_ID)
        assert link.access_count == 3

        entries = await service.ledger.entries(created.link.id)
        successes = [e for e in entries if e.is_success]
        assert len(successes) == link.access_count
        assert len(entries) - len(successes) == 17

    @pytest.mark.asyncio
    async def test_argon2_runs_off_the_event_loop(self, service, fast_verifier, monkeypatch):
        loop_thread = threading.get_ident()
        threads = []
        hash_password, verify = fast_verifier.hash, fast_verifier.verify

        def tracking_hash(password):
            threads.append(('hash', threading.get_ident()))
            return hash_password(password)

        def tracking_verify(password_hash, password):
            threads.append(('verify', threading.get_ident()))
            return verify(password_hash, password)

        monkeypatch.setattr(fast_verifier, 'hash', tracking_hash)
        monkeypatch.setattr(fast_verifier, 'verify', tracking_verify)

        created = await _create(service, password='hunter22')
        await service.resolve(created.token, provided_password='hunter22')
        with pytest.raises(ShareDenied):
            await service.resolve(created.token, provided_password='wrong')

        assert [name for name, _ in threads] == ['hash', 'verify', 'verify']
        assert all(ident != loop_thread for _, ident in threads)

    @pytest.mark.asyncio
    async def test_deleted_token_never_resolves(self, service, store):
        created = await _create(service)
        await service.delete(created.link.id, OWNER_ID)
        with pytest.raises(ShareNotFound):
            await service.resolve(created.token)


class TestValidate:
    @pytest.mark.asyncio
    async def test_correct_password_consumes_nothing(self, service):
        created = await _create(service, password='hunter22', max_access_count=1)
        result = await service.validate(
            created.token, provided_password='hunter22', source_address='1.1.1.1',
        )
        assert result.permission == Permission.READ_ONLY
        assert result.to_dict() == {
            'valid': True,
            'permission': ['read_only'],
            'has_password': True,
            'expires_at': None,
            'remaining_access_count': 1,
        }

        link = await service.get(created.link.id, OWNER_ID)
        assert link.access_count == 0
        assert await service.ledger.entries(created.link.id) == []

        # The single allowed access is still available.
        resolved = await service.resolve(created.token, provided_password='hunter22')
        assert resolved.link.access_count == 1

    @pytest.mark.asyncio
    async def test_wrong_password_logged_as_failure(self, service):
        created = await _create(service, password='hunter22')
        with pytest.raises(ShareDenied) as exc_info:
            await service.validate(created.token, provided_password='wrong')
        assert exc_info.value.reason is FailureReason.BAD_PASSWORD

        [entry] = await service.ledger.entries(created.link.id)
        assert entry.outcome is AccessOutcome.FAILURE
        assert entry.failure_reason is FailureReason.BAD_PASSWORD

    @pytest.mark.asyncio
    async def test_missing_password(self, service):
        created = await _create(service, password='hunter22')
        with pytest.raises(SharePasswordRequired):
            await service.validate(created.token)

    @pytest.mark.asyncio
    async def test_exhausted_and_unknown_links(self, service):
        created = await _create(service, max_access_count=1)
        await service.resolve(created.token)
        with pytest.raises(ShareDenied) as exc_info:
            await service.validate(created.token)
        assert exc_info.value.reason is FailureReason.LIMIT_REACHED

        with pytest.raises(ShareNotFound):
            await service.validate(generate_share_token())


class TestThrottling:
    @pytest.fixture
    def limited_service(self, store, directory, audit, clock, fast_verifier):
        limiter = RateLimiter(InMemoryRateLimitStore(), max_attempts=2, window_seconds=60)
        return ShareLinkService(
            store, directory,
            verifier=fast_verifier, rate_limiter=limiter, audit=audit, clock=clock,
        )

    @pytest.mark.asyncio
    async def test_throttled_after_max_attempts(self, limited_service, fast_verifier, monkeypatch):
        created = await _create(limited_service, password='hunter22')
        verify = fast_verifier.verify
        calls = []

        def counting_verify(password_hash, password):
            calls.append(password)
            return verify(password_hash, password)

        monkeypatch.setattr(fast_verifier, 'verify', counting_verify)
        for _ in range(2):
            with pytest.raises(ShareDenied):
                await limited_service.resolve(
                    created.token, provided_password='guess', source_address='6.6.6.6',
                )

        assert calls == ['guess', 'guess']
        with pytest.raises(ShareThrottled) as exc_info:
            await limited_service.resolve(
                created.token, provided_password='hunter22', source_address='6.6.6.6',
            )
        assert exc_info.value.retry_after >= 1
        # The throttled attempt never reached the password check.
        assert calls == ['guess', 'guess']

        # Another source is unaffected.
        resolved = await limited_service.resolve(
            created.token, provided_password='hunter22', source_address='7.7.7.7',
        )
        assert resolved.link.access_count == 1

        stats = await limited_service.stats(created.link.id, OWNER_ID)
        assert stats.failure_reasons == {'bad_password': 2, 'rate_limited': 1}

    @pytest.mark.asyncio
    async def test_validate_counts_toward_throttle(self, limited_service):
        created = await _create(limited_service, password='hunter22')
        for _ in range(2):
            with pytest.raises(ShareDenied):
                await limited_service.validate(
                    created.token, provided_password='guess', source_address='6.6.6.6',
                )
        with pytest.raises(ShareThrottled):
            await limited_service.validate(
                created.token, provided_password='hunter22', source_address='6.6.6.6',
            )


# =====================================================================
# Owner management
# =====================================================================


class TestManagement:
    @pytest.mark.asyncio
    async def test_revoke_idempotent(self, service, audit):
        created = await _create(service)
        first = await service.revoke(created.link.id, OWNER_ID)
        second = await service.revoke(created.link.id, OWNER_ID)
        assert first.is_active is False
        assert second.is_active is False
        assert first.updated_at == second.updated_at
        assert len(audit.find('share.revoked')) == 1

    @pytest.mark.asyncio
    async def test_only_owner_manages(self, service):
        created = await _create(service)
        for call in (
            service.get(created.link.id, OTHER_USER_ID),
            service.revoke(created.link.id, OTHER_USER_ID),
            service.delete(created.link.id, OTHER_USER_ID),
            service.stats(created.link.id, OTHER_USER_ID),
            service.access_logs(created.link.id, OTHER_USER_ID),
        ):
            with pytest.raises(ShareForbidden):
                await call

    @pytest.mark.asyncio
    async def test_unknown_link(self, service):
        with pytest.raises(ShareNotFound):
            await service.get('shr_missing', OWNER_ID)

    @pytest.mark.asyncio
    async def test_update_fields(self, service, audit):
        created = await _create(service)
        updated = await service.update(
            created.link.id,
            OWNER_ID,
            description='for the reviewers',
            permission=Permission.ALLOW_DOWNLOAD,
            max_access_count=5,
        )
        assert updated.description == 'for the reviewers'
        assert updated.permission == Permission.ALLOW_DOWNLOAD
        assert updated.max_access_count == 5
        [event] = audit.find('share.updated')
        assert event.detail == 'description,max_access_count,permission'

    @pytest.mark.asyncio
    async def test_update_without_changes(self, service, audit):
        created = await _create(service)
        same = await service.update(created.link.id, OWNER_ID)
        assert same.updated_at == created.link.updated_at
        assert audit.find('share.updated') == []

    @pytest.mark.asyncio
    async def test_cap_below_current_count_rejected(self, service):
        created = await _create(service)
        await service.resolve(created.token)
        await service.resolve(created.token)
        with pytest.raises(InvalidShareArgument):
            await service.update(created.link.id, OWNER_ID, max_access_count=1)

    @pytest.mark.asyncio
    async def test_extend_expiry(self, service, clock):
        expires = clock() + timedelta(hours=2)
        created = await _create(service, expires_at=expires)
        updated = await service.update(created.link.id, OWNER_ID, extend_hours=24)
        assert updated.expires_at == expires + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_extend_expired_link_counts_from_now(self, service, clock):
        created = await _create(service, expires_at=clock() + timedelta(hours=1))
        now = clock.advance(hours=5)
        updated = await service.update(created.link.id, OWNER_ID, extend_hours=3)
        assert updated.expires_at == now + timedelta(hours=3)
        resolved = await service.resolve(created.token)
        assert resolved.link.access_count == 1

    @pytest.mark.asyncio
    async def test_extend_beyond_max_lifetime_rejected(self, service, clock):
        expires = clock() + timedelta(hours=2)
        created = await _create(service, expires_at=expires)
        for hours in (721, 10**12):
            with pytest.raises(InvalidShareArgument) as exc_info:
                await service.update(created.link.id, OWNER_ID, extend_hours=hours)
            assert exc_info.value.errors[0].field == 'extend_hours'
        assert (await service.get(created.link.id, OWNER_ID)).expires_at == expires

    @pytest.mark.asyncio
    async def test_update_cap_beyond_integer_column_rejected(self, service):
        created = await _create(service)
        with pytest.raises(InvalidShareArgument) as exc_info:
            await service.update(created.link.id, OWNER_ID, max_access_count=2**31)
        assert exc_info.value.errors[0].field == 'max_access_count'

    @pytest.mark.asyncio
    async def test_extend_without_expiry_rejected(self, service):
        created = await _create(service)
        with pytest.raises(InvalidShareArgument) as exc_info:
            await service.update(created.link.id, OWNER_ID, extend_hours=1)
        assert exc_info.value.errors[0].field == 'extend_hours'

    @pytest.mark.asyncio
    async def test_update_never_reactivates(self, service):
        created = await _create(service)
        await service.revoke(created.link.id, OWNER_ID)
        updated = await service.update(created.link.id, OWNER_ID, description='again')
        assert updated.is_active is False

    @pytest.mark.asyncio
    async def test_delete(self, service, audit):
        created = await _create(service)
        await service.resolve(created.token)
        await service.delete(created.link.id, OWNER_ID)
        with pytest.raises(ShareNotFound):
            await service.get(created.link.id, OWNER_ID)
        assert len(audit.find('share.deleted')) == 1

    @pytest.mark.asyncio
    async def test_access_logs_filtered(self, service):
        created = await _create(service, password='hunter22')
        with pytest.raises(SharePasswordRequired):
            await service.resolve(created.token)
        await service.resolve(created.token, provided_password='hunter22')

        page = await service.access_logs(
            created.link.id, OWNER_ID, AccessLogFilter(outcome=AccessOutcome.FAILURE),
        )
        assert page.total == 1
        assert page.items[0].failure_reason is FailureReason.PASSWORD_REQUIRED

    @pytest.mark.asyncio
    async def test_list_for_owner(self, service):
        for _ in range(3):
            await _create(service)
        page = await service.list_for_owner(OWNER_ID, page=1, page_size=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert (await service.list_for_owner(OTHER_USER_ID)).total == 0

    @pytest.mark.asyncio
    async def test_list_for_resource(self, service):
        await _create(service)
        links = await service.list_for_resource(SNIPPET_ID, OWNER_ID)
        assert len(links) == 1
        with pytest.raises(ShareForbidden):
            await service.list_for_resource(SNIPPET_ID, OTHER_USER_ID)

    @pytest.mark.asyncio
    async def test_purge_expired(self, service, clock, audit):
        old = await _create(service, expires_at=clock() + timedelta(hours=1))
        keep = await _create(service)
        clock.advance(days=31, hours=2)

        assert await service.purge_expired() == 1
        with pytest.raises(ShareNotFound):
            await service.get(old.link.id, OWNER_ID)
        assert (await service.get(keep.link.id, OWNER_ID)).is_active
        [event] = audit.find('share.purged')
        assert event.detail == 'count=1'


# =====================================================================
# Storage failures
# =====================================================================


class SlowLookupStore(InMemoryShareLinkStore):
    async def get_by_token_hash(self, token_hash):
        await asyncio.sleep(1)
        return await super().get_by_token_hash(token_hash)


class BrokenGrantStore(InMemoryShareLinkStore):
    async def record_grant(self, share_link_id, entry, now):
        raise StorageUnavailable('record_grant', 'connection reset')


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_lookup_timeout(self, directory, clock, fast_verifier):
        service = ShareLinkService(
            SlowLookupStore(), directory,
            verifier=fast_verifier, clock=clock, storage_timeout=0.05,
        )
        created = await _create(service)
        with pytest.raises(ShareServiceUnavailable) as exc_info:
            await service.resolve(created.token)
        assert exc_info.value.status_code == 503
        assert exc_info.value.headers() == {'Retry-After': '1'}

    @pytest.mark.asyncio
    async def test_grant_failure_is_unavailable_not_denied(self, directory, clock, fast_verifier):
        store = BrokenGrantStore()
        service = ShareLinkService(store, directory, verifier=fast_verifier, clock=clock)
        created = await _create(service)
        with pytest.raises(ShareServiceUnavailable):
            await service.resolve(created.token)
        link = await store.get(created.link.id)
        assert link.access_count == 0
