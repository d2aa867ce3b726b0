"""Per-source attempt throttling for share resolution.

Fixed-window counters keyed by ``(token digest prefix, source address)``.
The limiter runs before the access policy, so a throttled attempt never
reaches password verification and cannot be used to brute-force a
password-protected link.

Rate limiting is best-effort and independent of the durable access-count
invariant: if the counter store fails, attempts are allowed through and
the failure is logged and counted.

This module provides:
  1. ``RateLimitStore`` -- counter store protocol.
  2. ``InMemoryRateLimitStore`` -- lock-guarded, single-process store.
  3. ``RedisRateLimitStore`` -- shared store over ``redis.asyncio``.
  4. ``RateLimiter`` -- the gate used by the share service.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol

from redis.exceptions import RedisError

from share_links.observability.logging import get_logger
from share_links.observability.metrics import (
    SHARE_RATE_LIMIT_BACKEND_ERRORS,
    SHARE_RATE_LIMITED,
)

from .tokens import hash_token

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_WINDOW_SECONDS = 60
_DIGEST_PREFIX_LENGTH = 16
_BACKEND_TIMEOUT_SECONDS = 0.5


class RateLimitStoreError(Exception):
    """The counter store could not be reached or returned garbage."""


@dataclass(frozen=True, slots=True)
class CounterWindow:
    """Current state of one fixed-window counter."""

    count: int
    resets_in: float


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after: float = 0.0
    count: int = 0
    backend_error: bool = False


class RateLimitStore(Protocol):
    """Fixed-window counter storage."""

    async def increment(self, key: str, window_seconds: int) -> CounterWindow:
        """Add one attempt; the window starts on the first increment."""
        ...


# ── In-memory store ──────────────────────────────────────────────────


class InMemoryRateLimitStore:
    """Thread-safe fixed-window counters for a single process.

    Elapsed windows are swept at most once per window length, so the map
    only holds counters that are still live (plus at most one window of
    stale ones).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}
        self._next_sweep = 0.0
        self._lock = Lock()

    def _sweep(self, now: float, window_seconds: int) -> None:
        if now < self._next_sweep:
            return
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + window_seconds

    async def increment(self, key: str, window_seconds: int) -> CounterWindow:
        now = self._clock()
        with self._lock:
            self._sweep(now, window_seconds)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return CounterWindow(count=count, resets_in=reset_at - now)


# ── Redis store ──────────────────────────────────────────────────────


class RedisRateLimitStore:
    """Counters shared across replicas, one Redis key per window.

    Keys carry a TTL of one window, so Redis drops them on its own.

    Args:
        client: A ``redis.asyncio.Redis`` instance.
        key_prefix: Namespace for counter keys.
    """

    def __init__(self, client, key_prefix: str = 'share-rl') -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisRateLimitStore:
        from redis import asyncio as redis_asyncio

        return cls(redis_asyncio.Redis.from_url(url, decode_responses=False), **kwargs)

    def _key(self, key: str) -> str:
        return f'{self._prefix}:{key}'

    async def increment(self, key: str, window_seconds: int) -> CounterWindow:
        redis_key = self._key(key)
        try:
            pipeline = self._client.pipeline()
            pipeline.incr(redis_key)
            pipeline.ttl(redis_key)
            count, ttl = await pipeline.execute()
            if ttl is None or ttl < 0:
                await self._client.expire(redis_key, window_seconds)
                ttl = window_seconds
        except RedisError as exc:
            raise RateLimitStoreError(str(exc)) from exc
        return CounterWindow(count=int(count), resets_in=float(max(int(ttl), 0)))

    async def close(self) -> None:
        await self._client.aclose()


# ── Limiter ──────────────────────────────────────────────────────────


def rate_limit_key(token: str, source_address: str) -> str:
    """Counter key for one token/source pair.

    Uses a digest prefix so plaintext tokens never reach the counter store.
    """
    return f'{hash_token(token)[:_DIGEST_PREFIX_LENGTH]}:{source_address or "unknown"}'


class RateLimiter:
    """Gate resolve attempts per token and source.

    Args:
        store: Counter store (in-memory or Redis).
        max_attempts: Attempts allowed per window; ``<= 0`` disables limiting.
        window_seconds: Fixed window length.
        backend_timeout: Seconds to wait on the store before failing open.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        backend_timeout: float = _BACKEND_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._backend_timeout = backend_timeout

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 0 and self.window_seconds > 0

    async def check(self, token: str, source_address: str) -> RateLimitDecision:
        """Count this attempt and decide whether it may proceed."""
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        key = rate_limit_key(token, source_address)
        try:
            window = await asyncio.wait_for(
                self.store.increment(key, self.window_seconds),
                timeout=self._backend_timeout,
            )
        except (RateLimitStoreError, asyncio.TimeoutError) as exc:
            SHARE_RATE_LIMIT_BACKEND_ERRORS.inc()
            logger.warning(
                'share_rate_limit_backend_error',
                error=str(exc) or type(exc).__name__,
            )
            return RateLimitDecision(allowed=True, backend_error=True)

        if window.count > self.max_attempts:
            SHARE_RATE_LIMITED.inc()
            return RateLimitDecision(
                allowed=False,
                retry_after=max(window.resets_in, 1.0),
                count=window.count,
            )
        return RateLimitDecision(allowed=True, count=window.count)
