"""Async PostgREST client wrapper for Supabase.

This is the single point of Supabase HTTP interaction for the share stores.
Timeouts, transport failures and 5xx responses all surface as
``SupabaseUnavailableError`` so callers have one thing to catch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import httpx

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
    SupabaseUnavailableError,
)

# Module-level shared client for connection pooling in app runtimes/tests.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


Filters = Sequence[PostgrestFilter] | Mapping[str, tuple[str, Any] | Any] | None


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if value is True:
            return "true"
        if value is False:
            return "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = []
        for v in value:
            if isinstance(v, str):
                items.append(json.dumps(v))
            elif v is None:
                items.append("null")
            else:
                items.append(str(v))
        return f"({','.join(items)})"

    if value is None:
        # Prefer explicit `is.null` rather than `eq.null` (PostgREST semantics).
        raise ValueError(f"{op} does not support None; use op='is' with value=None")

    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filters_to_params(filters: Filters) -> list[tuple[str, str]]:
    """Encode filters as query pairs.

    A list (not a dict) so one column can carry several conditions, e.g.
    ``accessed_at=gte...`` and ``accessed_at=lt...``.
    """
    if not filters:
        return []

    params: list[tuple[str, str]] = []
    if isinstance(filters, Mapping):
        items: Iterable[tuple[str, tuple[str, Any] | Any]] = filters.items()
        for col, spec in items:
            if isinstance(spec, tuple) and len(spec) == 2:
                op, val = spec
            else:
                op, val = "eq", spec
            op_str = str(op)
            params.append((str(col), f"{op_str}.{_encode_filter_value(op_str, val)}"))
        return params

    for f in filters:
        params.append((f.column, f"{f.op}.{_encode_filter_value(f.op, f.value)}"))
    return params


class SupabaseClient:
    """Minimal async PostgREST client (service role) with typed results."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        default_schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._default_schema = default_schema or "public"
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    def _headers(self, method: str, *, prefer: str | None = None) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept-Profile": self._default_schema,
        }
        if method in ("POST", "PATCH", "PUT", "DELETE"):
            headers["Content-Profile"] = self._default_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        err_cls: type[SupabaseError]
        if resp.status_code in (401, 403):
            err_cls = SupabaseAuthError
        elif resp.status_code == 404:
            err_cls = SupabaseNotFoundError
        elif resp.status_code == 409:
            err_cls = SupabaseConflictError
        elif resp.status_code >= 500:
            err_cls = SupabaseUnavailableError
        else:
            err_cls = SupabaseError

        # Avoid including secrets in the exception string.
        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
            hint=hint,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(
                method, url, timeout=self._timeout_seconds, **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise SupabaseUnavailableError(
                status_code=504, message=f"timeout: {type(exc).__name__}",
            ) from exc
        except httpx.TransportError as exc:
            raise SupabaseUnavailableError(
                status_code=503, message=f"transport: {type(exc).__name__}",
            ) from exc
        self._raise_for_error(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def _request_rows(self, method: str, url: str, **kwargs: Any) -> list[dict[str, Any]]:
        payload = await self._request(method, url, **kwargs)
        if not isinstance(payload, list):
            raise SupabaseError(status_code=500, message=f"expected list response from {method}")
        return payload

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = _filters_to_params(filters)
        params.append(("select", columns))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        if order:
            params.append(("order", order))
        return await self._request_rows(
            "GET",
            f"{self.base_rest_url}/{table}",
            params=params,
            headers=self._headers("GET"),
        )

    async def insert(
        self,
        table: str,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        return await self._request_rows(
            "POST",
            f"{self.base_rest_url}/{table}",
            json=data,
            headers=self._headers("POST", prefer="return=representation"),
        )

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._request_rows(
            "PATCH",
            f"{self.base_rest_url}/{table}",
            params=_filters_to_params(filters),
            json=data,
            headers=self._headers("PATCH", prefer="return=representation"),
        )

    async def delete(
        self,
        table: str,
        filters: Filters,
    ) -> list[dict[str, Any]]:
        return await self._request_rows(
            "DELETE",
            f"{self.base_rest_url}/{table}",
            params=_filters_to_params(filters),
            headers=self._headers("DELETE", prefer="return=representation"),
        )

    async def rpc(
        self,
        function_name: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        return await self._request(
            "POST",
            f"{self.base_rest_url}/rpc/{function_name}",
            json=params or {},
            headers=self._headers("POST"),
        )
