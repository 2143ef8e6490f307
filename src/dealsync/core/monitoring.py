"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with sync-aware event tagging
- track_sync_run(): Context manager for sync run metrics
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.dealsync.deals.errors import SyncError, SyncInProgressError

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

deal_sync_runs_total = Counter(
    "deal_sync_runs_total",
    "Total deal sync runs",
    ["status", "mode"],
)

deal_sync_duration_seconds = Histogram(
    "deal_sync_duration_seconds",
    "Deal sync run duration in seconds",
    ["mode"],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

deal_sync_records_upserted_total = Counter(
    "deal_sync_records_upserted_total",
    "Total deals_cache rows inserted or updated",
    ["kind"],
)

deal_sync_fetch_errors_total = Counter(
    "deal_sync_fetch_errors_total",
    "Remote page requests that exhausted their retries",
    ["collection"],
)

deal_sync_failed_batches_total = Counter(
    "deal_sync_failed_batches_total",
    "Upsert batches that ended in the failed state",
)

deal_sync_last_success_timestamp = Gauge(
    "deal_sync_last_success_timestamp",
    "Unix time of the last successful non-dry-run sync",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Metrics Helper ──────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(mode: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks sync run metrics.

    Usage:
        async with track_sync_run("sync") as tracker:
            result = await upsert(...)
            tracker["inserted"] = result.inserted
            tracker["updated"] = result.updated

    Automatically records:
    - Duration in histogram
    - Run count (success/error, or rejected when another run holds the lease)
    - Upserted rows, fetch errors and failed batches (if set in tracker dict)
    """
    tracker: dict[str, Any] = {
        "inserted": 0,
        "updated": 0,
        "failed_batches": 0,
        "fetch_errors": {},
    }
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except SyncInProgressError:
        status = "rejected"
        raise
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        deal_sync_runs_total.labels(status=status, mode=mode).inc()
        deal_sync_duration_seconds.labels(mode=mode).observe(duration)

        if tracker.get("inserted"):
            deal_sync_records_upserted_total.labels(kind="inserted").inc(tracker["inserted"])
        if tracker.get("updated"):
            deal_sync_records_upserted_total.labels(kind="updated").inc(tracker["updated"])
        if tracker.get("failed_batches"):
            deal_sync_failed_batches_total.inc(tracker["failed_batches"])
        for collection, count in tracker.get("fetch_errors", {}).items():
            if count:
                deal_sync_fetch_errors_total.labels(collection=collection).inc(count)

        if status == "success" and mode == "sync":
            deal_sync_last_success_timestamp.set_to_current_time()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events raised while a sync run is active."""
        exc_info = hint.get("exc_info")
        if exc_info and exc_info[0] is not None:
            if issubclass(exc_info[0], SyncError):
                event.setdefault("tags", {})["component"] = "deal_sync"
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
