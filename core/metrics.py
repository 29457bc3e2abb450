"""
core/metrics.py -- Prometheus metrics for HTTP traffic, CSRF and users.

All collectors are registered once on the prometheus_client default registry
at import time. Helper functions keep call sites free of label plumbing;
middleware and routes call record_*() rather than touching collectors.

GET /metrics (enabled by ENABLE_METRICS=true) renders the default registry.
"""

from __future__ import annotations

import platform
import time

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status"],
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "http_requests_in_flight",
    "Current number of HTTP requests being processed",
)

HTMX_REQUESTS_TOTAL = Counter(
    "htmx_requests_total",
    "Total number of HTMX requests",
    ["method", "path"],
)

# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------

CSRF_TOKENS_GENERATED = Counter(
    "csrf_tokens_generated_total",
    "Total number of CSRF tokens generated",
)

CSRF_VALIDATION_FAILURES = Counter(
    "csrf_validation_failures_total",
    "Total number of CSRF validation failures",
)

# ---------------------------------------------------------------------------
# Users / application
# ---------------------------------------------------------------------------

USERS_CREATED = Counter(
    "users_created_total",
    "Total number of users created",
)

USERS_ACTIVE = Gauge(
    "users_active_total",
    "Total number of active users",
)

APPLICATION_INFO = Gauge(
    "application_info",
    "Application information",
    ["version", "python_version", "environment"],
)

APPLICATION_START_TIME = Gauge(
    "application_start_time_seconds",
    "Unix timestamp of when the application started",
)


def initialize_metrics(version: str, environment: str) -> None:
    APPLICATION_INFO.labels(version, platform.python_version(), environment).set(1)
    APPLICATION_START_TIME.set(time.time())


def record_http_request(method: str, path: str, status: int, duration: float) -> None:
    HTTP_REQUESTS_TOTAL.labels(method, path, str(status)).inc()
    HTTP_REQUEST_DURATION.labels(method, path, str(status)).observe(duration)


def record_htmx_request(method: str, path: str) -> None:
    """Count an HTMX request. Labels come from the route table, never from HX-* request headers."""
    HTMX_REQUESTS_TOTAL.labels(method, path).inc()


def record_csrf_token_generated() -> None:
    CSRF_TOKENS_GENERATED.inc()


def record_csrf_validation_failure() -> None:
    CSRF_VALIDATION_FAILURES.inc()


def record_user_created() -> None:
    USERS_CREATED.inc()


def update_active_users(count: int) -> None:
    USERS_ACTIVE.set(count)
