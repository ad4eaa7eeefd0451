"""Prometheus metrics helpers for the reconciliation engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_reconcile_outcomes = Counter(
    "outreach_reconcile_outcomes_total",
    "Reconciliation outcomes by intake channel and status.",
    ["channel", "status"],
)
_reconcile_duration = Histogram(
    "outreach_reconcile_duration_seconds",
    "Wall-clock duration of one reconciliation.",
    ["channel"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 20, 45, 90),
)
_store_requests = Counter(
    "outreach_store_requests_total",
    "Record store HTTP requests by method and response class.",
    ["method", "status"],
)
_store_retries = Counter(
    "outreach_store_retries_total",
    "Record store requests retried after a transient failure.",
    ["method"],
)
_rate_limit_wait = Histogram(
    "outreach_store_rate_limit_wait_seconds",
    "Time spent waiting for a rate limiter token.",
    buckets=(0, 0.05, 0.1, 0.2, 0.5, 1, 2, 5),
)
_lock_waits = Histogram(
    "outreach_identity_lock_wait_seconds",
    "Time spent acquiring identity leases.",
    buckets=(0, 0.01, 0.05, 0.1, 0.5, 1, 5, 15, 30),
)
_lock_timeouts = Counter(
    "outreach_identity_lock_timeouts_total",
    "Identity lease acquisitions that gave up waiting.",
)
_capacity_warnings = Counter(
    "outreach_capacity_warnings_total",
    "Reassignments skipped because no volunteer had spare capacity.",
)


def record_reconcile_outcome(*, channel: str, status: str, duration_seconds: float) -> None:
    _reconcile_outcomes.labels(channel=channel, status=status).inc()
    _reconcile_duration.labels(channel=channel).observe(max(duration_seconds, 0.0))


def record_store_request(*, method: str, status: int | Literal["error"]) -> None:
    """Count a store request; ``status`` collapses to its class (2xx, 4xx, ...)."""

    label = status if isinstance(status, str) else f"{status // 100}xx"
    _store_requests.labels(method=method, status=label).inc()


def record_store_retry(method: str) -> None:
    _store_retries.labels(method=method).inc()


def record_rate_limit_wait(seconds: float) -> None:
    _rate_limit_wait.observe(max(seconds, 0.0))


def record_lock_wait(seconds: float, *, timed_out: bool = False) -> None:
    _lock_waits.observe(max(seconds, 0.0))
    if timed_out:
        _lock_timeouts.inc()


def record_capacity_warning() -> None:
    _capacity_warnings.inc()
