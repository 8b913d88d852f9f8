"""
Prometheus metrics for the triage API.

Requests are labelled by route template ("/issues/{issue_id}/analyze", never
"/issues/401/analyze") and by route group:

    intake   citizen complaint upload
    model    officer routes that wait on the model server (analyze, action
             plan, reply draft, chat)
    agents   Celery triggers and task polling
    officer  reads and status changes against the store
    other    health, root, unmatched paths

Model routes get their own latency histogram: they take seconds, while the
store-backed routes finish in milliseconds, and one bucket set cannot resolve
both.
"""

from __future__ import annotations

import re
import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

ROUTE_GROUPS = ("intake", "model", "agents", "officer", "other")

_MODEL_ROUTE = re.compile(r"^/issues/[^/]+/(analyze|action-plan|reply)$|^/chat$")
_OFFICER_PREFIXES = ("/issues", "/feedback", "/escalations", "/summaries")


HTTP_REQUESTS_TOTAL = Counter(
    "triage_http_requests_total",
    "HTTP requests served, by route template, route group and status.",
    labelnames=("method", "path", "group", "status"),
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "triage_http_request_duration_seconds",
    "Latency of routes that do not call the model server.",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)

MODEL_ROUTE_DURATION_SECONDS = Histogram(
    "triage_model_route_duration_seconds",
    "Latency of routes that wait on the model server (classification, drafts, chat).",
    labelnames=("path",),
    buckets=(0.25, 0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "triage_http_requests_in_flight",
    "Requests currently being handled, by route group.",
    labelnames=("group",),
)

RATE_LIMITED_TOTAL = Counter(
    "triage_rate_limited_total",
    "Requests refused with 429 by the per-client rate limits.",
    labelnames=("path",),
)

API_ERRORS_TOTAL = Counter(
    "triage_api_errors_total",
    "Requests answered with a mapped error, by error type and HTTP status.",
    labelnames=("error_type", "status"),
)


def route_group(path: str) -> str:
    """Group for a route template or a raw request path."""
    if path == "/complaints":
        return "intake"
    if _MODEL_ROUTE.match(path):
        return "model"
    if path.startswith(("/agents/", "/tasks/")) or path.endswith("/analyze-async"):
        return "agents"
    if path.startswith(_OFFICER_PREFIXES):
        return "officer"
    return "other"


def _path_template_from_scope(scope) -> str:
    route = scope.get("route")
    if route is not None and getattr(route, "path", None):
        return str(route.path)
    return "__unmatched__"


def record_api_error(exc: Exception, status_code: int) -> None:
    API_ERRORS_TOTAL.labels(error_type=type(exc).__name__, status=str(status_code)).inc()


def record_request(method: str, path_template: str, status: str, elapsed: float) -> None:
    group = route_group(path_template)
    HTTP_REQUESTS_TOTAL.labels(method=method, path=path_template, group=group, status=status).inc()
    if group == "model":
        MODEL_ROUTE_DURATION_SECONDS.labels(path=path_template).observe(elapsed)
    else:
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_template).observe(elapsed)
    if status == "429":
        RATE_LIMITED_TOTAL.labels(path=path_template).inc()


def metrics_response() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def instrument_app(app) -> None:
    """
    Register GET /metrics and time every other request.
    """

    @app.get("/metrics", include_in_schema=False)
    def _metrics_endpoint():
        return metrics_response()

    @app.middleware("http")
    async def _prometheus_middleware(request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        # The template is only known after routing; the in-flight gauge uses the raw path.
        in_flight = HTTP_REQUESTS_IN_FLIGHT.labels(group=route_group(request.url.path))
        start = time.perf_counter()
        in_flight.inc()
        status = "500"
        try:
            response = await call_next(request)
            status = str(getattr(response, "status_code", 200))
            return response
        finally:
            elapsed = max(0.0, time.perf_counter() - start)
            record_request(request.method, _path_template_from_scope(request.scope), status, elapsed)
            in_flight.dec()
