"""Prometheus metrics for the vote gateway.

Metrics goals:
- low-cardinality labels (never poll ids, target ids or identities)
- internal observability for submissions, rejections, anchor failures
"""
from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger("vote_gateway")


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "vote_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "vote_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
SUBMISSIONS_TOTAL = Counter(
    "vote_submissions_total",
    "Total accepted decision submissions",
    ["constituency", "outcome"],
)
REJECTIONS_TOTAL = Counter(
    "vote_rejections_total",
    "Total rejected decision submissions",
    ["code"],
)
ANCHOR_FAILURES_TOTAL = Counter(
    "vote_anchor_failures_total",
    "Commitment anchor submissions that failed or timed out",
)
LOCKDOWN_ACTIVE = Gauge(
    "vote_storage_lockdown_active",
    "1 if the ledger store is in lockdown",
)


def record_submission(constituency: str, outcome: str) -> None:
    SUBMISSIONS_TOTAL.labels(constituency=str(constituency), outcome=str(outcome)).inc()


def record_rejection(code: str) -> None:
    REJECTIONS_TOTAL.labels(code=str(code)).inc()


def record_anchor_failure() -> None:
    ANCHOR_FAILURES_TOTAL.inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("VOTE_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
