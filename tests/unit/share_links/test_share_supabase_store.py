"""Tests for the PostgREST-backed share store, directory and client.

All HTTP traffic goes through ``httpx.MockTransport``; no network.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from share_links.app.db.errors import SupabaseAuthError, SupabaseUnavailableError
from share_links.app.db.resource_directory import SupabaseResourceDirectory
from share_links.app.db.share_store import (
    SupabaseShareLinkStore,
    entry_from_row,
    entry_to_row,
    link_from_row,
    link_to_row,
)
from share_links.app.db.supabase_client import PostgrestFilter, SupabaseClient
from share_links.app.protocols import StorageUnavailable, TokenCollision
from share_links.app.sharing.model import (
    AccessChannel,
    AccessLogEntry,
    AccessOutcome,
    FailureReason,
    Permission,
    ShareLink,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _link(**overrides) -> ShareLink:
    fields = dict(
        id='shr_1',
        token_hash='f' * 64,
        resource_id='snip_1',
        owner_id='user_1',
        permission=Permission.READ_ONLY | Permission.ALLOW_COPY,
        created_at=NOW,
        updated_at=NOW,
        expires_at=NOW + timedelta(days=1),
        max_access_count=5,
    )
    fields.update(overrides)
    return ShareLink(**fields)


def _row(**overrides) -> dict[str, Any]:
    row = link_to_row(_link())
    row.update(overrides)
    return row


class Recorder:
    """Collects requests and replies from a queue of responses."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def params(self, index: int = 0) -> list[tuple[str, str]]:
        return parse_qsl(self.requests[index].url.query.decode())

    def body(self, index: int = 0) -> Any:
        return json.loads(self.requests[index].content)


def _client(recorder: Recorder) -> tuple[SupabaseClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    client = SupabaseClient(
        supabase_url='https://example.supabase.co',
        service_role_key='svc-key',
        http_client=http,
    )
    return client, http


class TestRowMapping:
    def test_link_round_trip(self):
        link = _link(password_hash='$argon2id$x', description='d')
        assert link_from_row(link_to_row(link)) == link

    def test_permission_stored_as_int(self):
        assert link_to_row(_link())['permission'] == 3

    def test_entry_round_trip(self):
        entry = AccessLogEntry(
            share_link_id='shr_1',
            source_address='1.1.1.1',
            outcome=AccessOutcome.FAILURE,
            failure_reason=FailureReason.BAD_PASSWORD,
            channel=AccessChannel.QR,
            timestamp=NOW,
        )
        row = entry_to_row(entry)
        assert row['accessed_at'] == NOW.isoformat()
        assert entry_from_row(row) == entry

    def test_zulu_timestamps(self):
        row = _row(created_at='2026-03-10T12:00:00Z', updated_at=None)
        link = link_from_row(row)
        assert link.created_at == NOW
        assert link.updated_at == NOW


class TestClient:
    @pytest.mark.asyncio
    async def test_repeated_column_filters(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        client, http = _client(recorder)
        async with http:
            await client.select(
                'share_access_logs',
                filters=[
                    PostgrestFilter('accessed_at', 'gte', 'a'),
                    PostgrestFilter('accessed_at', 'lt', 'b'),
                ],
            )
        params = recorder.params()
        assert ('accessed_at', 'gte.a') in params
        assert ('accessed_at', 'lt.b') in params

    @pytest.mark.asyncio
    async def test_service_role_headers(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        client, http = _client(recorder)
        async with http:
            await client.select('share_links')
        headers = recorder.requests[0].headers
        assert headers['apikey'] == 'svc-key'
        assert headers['authorization'] == 'Bearer svc-key'

    @pytest.mark.asyncio
    async def test_auth_error(self):
        recorder = Recorder(httpx.Response(401, json={'message': 'bad key'}))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(SupabaseAuthError):
                await client.select('share_links')

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        recorder = Recorder(httpx.Response(503, text='overloaded'))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(SupabaseUnavailableError):
                await client.select('share_links')

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        recorder = Recorder(httpx.ReadTimeout('slow'))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(SupabaseUnavailableError) as exc_info:
                await client.select('share_links')
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_rpc_empty_body(self):
        recorder = Recorder(httpx.Response(204))
        client, http = _client(recorder)
        async with http:
            assert await client.rpc('noop') is None
        assert recorder.requests[0].url.path == '/rest/v1/rpc/noop'


class TestShareStore:
    @pytest.mark.asyncio
    async def test_create(self):
        recorder = Recorder(httpx.Response(201, json=[_row()]))
        client, http = _client(recorder)
        async with http:
            created = await SupabaseShareLinkStore(client).create(_link())
        assert created.id == 'shr_1'
        assert recorder.body()['token_hash'] == 'f' * 64
        assert 'return=representation' in recorder.requests[0].headers['prefer']

    @pytest.mark.asyncio
    async def test_create_conflict_is_collision(self):
        recorder = Recorder(httpx.Response(409, json={'code': '23505', 'message': 'dup'}))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(TokenCollision):
                await SupabaseShareLinkStore(client).create(_link())

    @pytest.mark.asyncio
    async def test_get_by_token_hash(self):
        recorder = Recorder(httpx.Response(200, json=[_row()]))
        client, http = _client(recorder)
        async with http:
            link = await SupabaseShareLinkStore(client).get_by_token_hash('f' * 64)
        assert link.permission == Permission.READ_ONLY | Permission.ALLOW_COPY
        assert ('token_hash', 'eq.' + 'f' * 64) in recorder.params()

    @pytest.mark.asyncio
    async def test_get_missing(self):
        recorder = Recorder(httpx.Response(200, json=[]))
        client, http = _client(recorder)
        async with http:
            assert await SupabaseShareLinkStore(client).get('nope') is None

    @pytest.mark.asyncio
    async def test_update_metadata_encodes_values(self):
        recorder = Recorder(httpx.Response(200, json=[_row(description='x')]))
        client, http = _client(recorder)
        async with http:
            await SupabaseShareLinkStore(client).update_metadata(
                'shr_1', {'permission': Permission.ALLOW_DOWNLOAD, 'updated_at': NOW},
            )
        assert recorder.body() == {'permission': 4, 'updated_at': NOW.isoformat()}

    @pytest.mark.asyncio
    async def test_revoke_only_active(self):
        recorder = Recorder(httpx.Response(200, json=[_row(is_active=False)]))
        client, http = _client(recorder)
        async with http:
            revoked = await SupabaseShareLinkStore(client).revoke('shr_1', NOW)
        assert revoked.is_active is False
        assert ('is_active', 'is.true') in recorder.params()

    @pytest.mark.asyncio
    async def test_revoke_already_revoked_reads_current(self):
        recorder = Recorder(
            httpx.Response(200, json=[]),
            httpx.Response(200, json=[_row(is_active=False)]),
        )
        client, http = _client(recorder)
        async with http:
            revoked = await SupabaseShareLinkStore(client).revoke('shr_1', NOW)
        assert revoked.is_active is False
        assert recorder.requests[1].method == 'GET'

    @pytest.mark.asyncio
    async def test_record_grant(self):
        recorder = Recorder(httpx.Response(200, json=[_row(access_count=1)]))
        client, http = _client(recorder)
        entry = AccessLogEntry('shr_1', '1.1.1.1', AccessOutcome.SUCCESS, timestamp=NOW)
        async with http:
            result = await SupabaseShareLinkStore(client).record_grant('shr_1', entry, NOW)
        assert result.granted
        assert result.link.access_count == 1
        body = recorder.body()
        assert recorder.requests[0].url.path == '/rest/v1/rpc/grant_share_access'
        assert body['p_share_link_id'] == 'shr_1'
        assert body['p_entry']['outcome'] == 'success'

    @pytest.mark.asyncio
    async def test_record_grant_refused(self):
        recorder = Recorder(
            httpx.Response(200, json=[]),
            httpx.Response(200, json=[_row(access_count=5)]),
        )
        client, http = _client(recorder)
        entry = AccessLogEntry('shr_1', '1.1.1.1', AccessOutcome.SUCCESS, timestamp=NOW)
        async with http:
            result = await SupabaseShareLinkStore(client).record_grant('shr_1', entry, NOW)
        assert not result.granted
        assert result.link.access_count == 5

    @pytest.mark.asyncio
    async def test_delete_and_purge(self):
        recorder = Recorder(httpx.Response(200, json=True), httpx.Response(200, json=3))
        client, http = _client(recorder)
        store = SupabaseShareLinkStore(client)
        async with http:
            assert await store.delete('shr_1') is True
            assert await store.delete_expired(NOW) == 3
        assert recorder.requests[0].url.path == '/rest/v1/rpc/delete_share_link'
        assert recorder.body(1) == {'p_before': NOW.isoformat()}

    @pytest.mark.asyncio
    async def test_list_access_logs_range(self):
        row = entry_to_row(
            AccessLogEntry('shr_1', '1.1.1.1', AccessOutcome.SUCCESS, timestamp=NOW),
        )
        recorder = Recorder(httpx.Response(200, json=[row]))
        client, http = _client(recorder)
        async with http:
            entries = await SupabaseShareLinkStore(client).list_access_logs(
                'shr_1', since=NOW - timedelta(days=1), until=NOW + timedelta(days=1),
            )
        assert len(entries) == 1
        params = recorder.params()
        assert ('order', 'accessed_at.asc') in params
        assert [k for k, _ in params].count('accessed_at') == 2

    @pytest.mark.asyncio
    async def test_outage_is_storage_unavailable(self):
        recorder = Recorder(httpx.ConnectError('refused'))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(StorageUnavailable) as exc_info:
                await SupabaseShareLinkStore(client).get_by_token_hash('f' * 64)
        assert exc_info.value.operation == 'get_by_token_hash'


class TestResourceDirectory:
    @pytest.mark.asyncio
    async def test_owner_lookup_skips_deleted(self):
        recorder = Recorder(httpx.Response(200, json=[{'id': 'snip_1', 'owner_id': 'user_1'}]))
        client, http = _client(recorder)
        async with http:
            owner = await SupabaseResourceDirectory(client).get_resource_owner('snip_1')
        assert owner == 'user_1'
        assert ('deleted_at', 'is.null') in recorder.params()

    @pytest.mark.asyncio
    async def test_fetch_filtered(self):
        row = {'id': 'snip_1', 'owner_id': 'user_1', 'title': 't', 'deleted_at': None}
        recorder = Recorder(httpx.Response(200, json=[row]))
        client, http = _client(recorder)
        async with http:
            shared = await SupabaseResourceDirectory(client).get_resource_for_share(
                'snip_1', Permission.ALLOW_DOWNLOAD,
            )
        assert shared['title'] == 't'
        assert 'owner_id' not in shared
        assert shared['capabilities']['download'] is True

    @pytest.mark.asyncio
    async def test_outage(self):
        recorder = Recorder(httpx.Response(500, json={'message': 'boom'}))
        client, http = _client(recorder)
        async with http:
            with pytest.raises(StorageUnavailable):
                await SupabaseResourceDirectory(client).get_resource_owner('snip_1')
