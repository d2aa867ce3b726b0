"""Prometheus metrics for the share links service.

Metric naming follows Prometheus conventions. Label values are always
low-cardinality enums (outcome, reason, method, normalized path); share
ids and tokens never appear as labels.

Usage::

    from share_links.observability.metrics import SHARE_RESOLVE_ATTEMPTS

    SHARE_RESOLVE_ATTEMPTS.labels(outcome="denied", reason="expired").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_server_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_server_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "http_server_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Share link metrics
# ---------------------------------------------------------------------------

SHARE_LINKS_CREATED = Counter(
    "share_links_created_total",
    "Share links created, by whether a password was set.",
    labelnames=["password_protected"],
    registry=REGISTRY,
)

SHARE_RESOLVE_ATTEMPTS = Counter(
    "share_resolve_attempts_total",
    "Share resolve attempts by outcome and denial reason.",
    labelnames=["outcome", "reason"],
    registry=REGISTRY,
)

SHARE_RESOLVE_DURATION_SECONDS = Histogram(
    "share_resolve_duration_seconds",
    "Latency of share resolution, including password verification.",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=REGISTRY,
)

SHARE_RATE_LIMITED = Counter(
    "share_rate_limited_total",
    "Resolve attempts rejected by the per-source rate limiter.",
    registry=REGISTRY,
)

SHARE_RATE_LIMIT_BACKEND_ERRORS = Counter(
    "share_rate_limit_backend_errors_total",
    "Rate limit store failures (requests were allowed through).",
    registry=REGISTRY,
)

SHARE_STORAGE_ERRORS = Counter(
    "share_storage_errors_total",
    "Storage failures surfaced as service unavailable, by operation.",
    labelnames=["operation"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
