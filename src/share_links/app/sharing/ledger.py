"""Access ledger queries and per-link statistics.

The ledger is append-only. Failure entries are written here; success
entries are written only by the store's atomic grant, in the same unit of
work as the access-count increment, so ``success_count`` always equals the
link's ``access_count``.

Statistics are derived from the ledger on demand; nothing is cached and
nothing can be reset.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Generic, Protocol, TypeVar

from .model import AccessLogEntry, AccessOutcome, ShareLink

T = TypeVar('T')

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
DEFAULT_STATS_DAYS = 30


class AccessLogStore(Protocol):
    """The subset of the share store the ledger needs."""

    async def append_access_log(self, entry: AccessLogEntry) -> None: ...

    async def list_access_logs(
        self,
        share_link_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AccessLogEntry]: ...


@dataclass(frozen=True, slots=True)
class AccessLogFilter:
    outcome: AccessOutcome | None = None
    since: datetime | None = None
    until: datetime | None = None
    source_address: str | None = None
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def matches(self, entry: AccessLogEntry) -> bool:
        if self.outcome is not None and entry.outcome is not self.outcome:
            return False
        if self.source_address and entry.source_address != self.source_address:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp >= self.until:
            return False
        return True


@dataclass(frozen=True, slots=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total

    def to_dict(self, render) -> dict:
        return {
            'items': [render(item) for item in self.items],
            'total': self.total,
            'page': self.page,
            'page_size': self.page_size,
            'has_next': self.has_next,
        }


def paginate(items: list[T], page: int, page_size: int) -> Page[T]:
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    start = (page - 1) * page_size
    return Page(
        items=items[start:start + page_size],
        total=len(items),
        page=page,
        page_size=page_size,
    )


class AccessLedger:
    """Append failure entries and query a link's history."""

    def __init__(self, store: AccessLogStore) -> None:
        self._store = store

    async def record_failure(self, entry: AccessLogEntry) -> None:
        if entry.is_success:
            raise ValueError('success entries are written by the atomic grant')
        await self._store.append_access_log(entry)

    async def entries(self, share_link_id: str) -> list[AccessLogEntry]:
        return await self._store.list_access_logs(share_link_id)

    async def query(
        self,
        share_link_id: str,
        log_filter: AccessLogFilter | None = None,
    ) -> Page[AccessLogEntry]:
        """Newest-first page of entries matching ``log_filter``."""
        log_filter = log_filter or AccessLogFilter()
        rows = await self._store.list_access_logs(
            share_link_id, since=log_filter.since, until=log_filter.until,
        )
        matched = sorted(
            (e for e in rows if log_filter.matches(e)),
            key=lambda e: e.timestamp,
            reverse=True,
        )
        return paginate(matched, log_filter.page, log_filter.page_size)


# ── User agent classification ────────────────────────────────────────

_BOT_MARKERS = ('bot', 'crawler', 'spider', 'curl/', 'wget/', 'python-requests', 'httpx')


def classify_user_agent(user_agent: str | None) -> tuple[str, str]:
    """Return ``(browser, device)`` labels for a user agent string."""
    if not user_agent:
        return 'unknown', 'unknown'
    ua = user_agent.lower()

    if any(marker in ua for marker in _BOT_MARKERS):
        return 'bot', 'bot'

    if 'edg/' in ua:
        browser = 'edge'
    elif 'opr/' in ua or 'opera' in ua:
        browser = 'opera'
    elif 'firefox/' in ua:
        browser = 'firefox'
    elif 'chrome/' in ua or 'crios/' in ua:
        browser = 'chrome'
    elif 'safari/' in ua:
        browser = 'safari'
    else:
        browser = 'other'

    if 'ipad' in ua or 'tablet' in ua:
        device = 'tablet'
    elif 'mobi' in ua or 'iphone' in ua or 'android' in ua:
        device = 'mobile'
    else:
        device = 'desktop'
    return browser, device


# ── Statistics ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class DailyAccessStat:
    day: date
    accesses: int
    unique_visitors: int

    def to_dict(self) -> dict:
        return {
            'date': self.day.isoformat(),
            'accesses': self.accesses,
            'unique_visitors': self.unique_visitors,
        }


@dataclass(frozen=True)
class ShareStats:
    share_id: str
    access_count: int
    max_access_count: int
    remaining_access_count: int | None
    success_count: int
    failure_count: int
    total_attempts: int
    unique_sources: int
    success_rate: float
    is_active: bool
    is_expired: bool
    is_limit_reached: bool
    today_count: int = 0
    week_count: int = 0
    month_count: int = 0
    failure_reasons: dict[str, int] = field(default_factory=dict)
    channels: dict[str, int] = field(default_factory=dict)
    browsers: dict[str, int] = field(default_factory=dict)
    devices: dict[str, int] = field(default_factory=dict)
    daily: list[DailyAccessStat] = field(default_factory=list)
    hourly: list[int] = field(default_factory=lambda: [0] * 24)
    first_accessed_at: datetime | None = None
    last_accessed_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            'share_id': self.share_id,
            'access_count': self.access_count,
            'max_access_count': self.max_access_count,
            'remaining_access_count': self.remaining_access_count,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'total_attempts': self.total_attempts,
            'unique_sources': self.unique_sources,
            'success_rate': self.success_rate,
            'is_active': self.is_active,
            'is_expired': self.is_expired,
            'is_limit_reached': self.is_limit_reached,
            'today_count': self.today_count,
            'week_count': self.week_count,
            'month_count': self.month_count,
            'failure_reasons': dict(self.failure_reasons),
            'channels': dict(self.channels),
            'browsers': dict(self.browsers),
            'devices': dict(self.devices),
            'daily': [d.to_dict() for d in self.daily],
            'hourly': list(self.hourly),
            'first_accessed_at': (
                self.first_accessed_at.isoformat() if self.first_accessed_at else None
            ),
            'last_accessed_at': (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def compute_share_stats(
    link: ShareLink,
    entries: list[AccessLogEntry],
    now: datetime,
    days: int = DEFAULT_STATS_DAYS,
) -> ShareStats:
    """Aggregate a link's ledger into ``ShareStats``.

    Period counters (today, week starting Monday, calendar month) and the
    daily buckets count successful grants in UTC.
    """
    successes = [e for e in entries if e.is_success]
    failures = [e for e in entries if not e.is_success]

    today = now.astimezone(timezone.utc).date()
    day_start = _start_of_day(today)
    week_start = _start_of_day(today - timedelta(days=today.weekday()))
    month_start = _start_of_day(today.replace(day=1))

    failure_reasons: Counter[str] = Counter(
        e.failure_reason.value if e.failure_reason else 'unknown' for e in failures
    )
    channels: Counter[str] = Counter(e.channel.value for e in successes)
    browsers: Counter[str] = Counter()
    devices: Counter[str] = Counter()
    hourly = [0] * 24
    per_day: dict[date, list[AccessLogEntry]] = {}
    for entry in successes:
        browser, device = classify_user_agent(entry.user_agent)
        browsers[browser] += 1
        devices[device] += 1
        stamp = entry.timestamp.astimezone(timezone.utc)
        hourly[stamp.hour] += 1
        per_day.setdefault(stamp.date(), []).append(entry)

    daily = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        bucket = per_day.get(day, [])
        daily.append(DailyAccessStat(
            day=day,
            accesses=len(bucket),
            unique_visitors=len({e.source_address for e in bucket}),
        ))

    total = len(entries)
    stamps = sorted(e.timestamp for e in successes)
    return ShareStats(
        share_id=link.id,
        access_count=link.access_count,
        max_access_count=link.max_access_count,
        remaining_access_count=link.remaining_access_count,
        success_count=len(successes),
        failure_count=len(failures),
        total_attempts=total,
        unique_sources=len({e.source_address for e in entries}),
        success_rate=round(len(successes) / total, 4) if total else 0.0,
        is_active=link.is_active,
        is_expired=link.is_expired(now),
        is_limit_reached=link.is_limit_reached,
        today_count=sum(1 for e in successes if e.timestamp >= day_start),
        week_count=sum(1 for e in successes if e.timestamp >= week_start),
        month_count=sum(1 for e in successes if e.timestamp >= month_start),
        failure_reasons=dict(failure_reasons),
        channels=dict(channels),
        browsers=dict(browsers),
        devices=dict(devices),
        daily=daily,
        hourly=hourly,
        first_accessed_at=stamps[0] if stamps else None,
        last_accessed_at=stamps[-1] if stamps else None,
    )
