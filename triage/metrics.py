"""
Prometheus metrics for model-server calls, workflows and background workers (Celery).

Important constraint:
The worker runs with a single-process pool (solo) so that the metrics HTTP
endpoint exposes task timings from the same process that executes tasks. With a
prefork pool each child would keep its own in-memory metrics, and the endpoint
would only report the parent's values.
"""

from __future__ import annotations

import os
import time
from typing import Dict

from celery import signals
from prometheus_client import Counter, Histogram, start_http_server


PROVIDER_REQUESTS_TOTAL = Counter(
    "triage_provider_requests_total",
    "Total model-server requests by operation and outcome.",
    labelnames=("provider", "operation", "model", "outcome"),
)

PROVIDER_REQUEST_DURATION_MS = Histogram(
    "triage_provider_request_duration_ms",
    "Model-server request latency in milliseconds.",
    labelnames=("provider", "operation", "model", "outcome"),
    buckets=(25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000),
)

PROVIDER_TIMEOUTS_TOTAL = Counter(
    "triage_provider_timeouts_total",
    "Total model-server requests that hit the caller-enforced timeout.",
    labelnames=("provider", "operation", "model"),
)

PROVIDER_RETRIES_TOTAL = Counter(
    "triage_provider_retries_total",
    "Total model-server request retries.",
    labelnames=("provider", "operation", "model"),
)

WORKFLOW_RUNS_TOTAL = Counter(
    "triage_workflow_runs_total",
    "Workflow invocations by outcome.",
    labelnames=("workflow", "outcome"),
)

WORKFLOW_ITEMS_TOTAL = Counter(
    "triage_workflow_items_total",
    "Per-item outcomes inside batch workflows.",
    labelnames=("workflow", "outcome"),
)

FEEDBACK_WRITE_FAILURES_TOTAL = Counter(
    "triage_feedback_write_failures_total",
    "Officer feedback records that could not be written.",
)

CELERY_TASK_DURATION_SECONDS = Histogram(
    "triage_celery_task_duration_seconds",
    "Celery task runtime in seconds.",
    labelnames=("task_name", "status"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

CELERY_TASK_FAILURES_TOTAL = Counter(
    "triage_celery_task_failures_total",
    "Total number of Celery task failures.",
    labelnames=("task_name", "exception_type"),
)

CELERY_TASK_RETRIES_TOTAL = Counter(
    "triage_celery_task_retries_total",
    "Total number of Celery task retries.",
    labelnames=("task_name",),
)


_TASK_START: Dict[str, float] = {}


def record_provider_request(provider: str, operation: str, model: str, outcome: str, duration_ms: float) -> None:
    labels = dict(provider=provider, operation=operation, model=model, outcome=outcome)
    PROVIDER_REQUESTS_TOTAL.labels(**labels).inc()
    PROVIDER_REQUEST_DURATION_MS.labels(**labels).observe(max(0.0, duration_ms))


def record_provider_timeout(provider: str, operation: str, model: str) -> None:
    PROVIDER_TIMEOUTS_TOTAL.labels(provider=provider, operation=operation, model=model).inc()


def record_provider_retry(provider: str, operation: str, model: str) -> None:
    PROVIDER_RETRIES_TOTAL.labels(provider=provider, operation=operation, model=model).inc()


def record_workflow_run(workflow: str, outcome: str) -> None:
    WORKFLOW_RUNS_TOTAL.labels(workflow=workflow, outcome=outcome).inc()


def record_workflow_item(workflow: str, outcome: str, count: int = 1) -> None:
    if count > 0:
        WORKFLOW_ITEMS_TOTAL.labels(workflow=workflow, outcome=outcome).inc(count)


def record_feedback_failure() -> None:
    FEEDBACK_WRITE_FAILURES_TOTAL.inc()


def record_task_duration(task_name: str, status: str, duration_s: float) -> None:
    CELERY_TASK_DURATION_SECONDS.labels(task_name=task_name, status=status).observe(max(0.0, duration_s))


def record_task_failure(task_name: str, exception_type: str) -> None:
    CELERY_TASK_FAILURES_TOTAL.labels(task_name=task_name, exception_type=exception_type).inc()


def record_task_retry(task_name: str) -> None:
    CELERY_TASK_RETRIES_TOTAL.labels(task_name=task_name).inc()


@signals.worker_ready.connect
def _start_metrics_server(**_kwargs):
    port = os.getenv("TRIAGE_WORKER_METRICS_PORT")
    if not port:
        return
    try:
        start_http_server(int(port))
    except (OSError, ValueError):
        # Port in use or invalid: the worker keeps running without an endpoint.
        return


@signals.task_prerun.connect
def _task_prerun(task_id=None, task=None, **_kwargs):
    if task_id and task is not None:
        _TASK_START[str(task_id)] = time.perf_counter()


@signals.task_postrun.connect
def _task_postrun(task_id=None, task=None, state=None, **_kwargs):
    if not task_id or task is None:
        return
    start = _TASK_START.pop(str(task_id), None)
    if start is None:
        return
    status = "success" if (state or "").lower() in ("success", "succeeded") else "unknown"
    record_task_duration(getattr(task, "name", "unknown"), status, time.perf_counter() - start)


@signals.task_failure.connect
def _task_failure(task_id=None, exception=None, sender=None, **_kwargs):
    task_name = getattr(sender, "name", "unknown")
    exc_type = type(exception).__name__ if exception is not None else "Exception"
    record_task_failure(task_name, exc_type)

    if task_id:
        start = _TASK_START.pop(str(task_id), None)
        if start is not None:
            record_task_duration(task_name, "failure", time.perf_counter() - start)


@signals.task_retry.connect
def _task_retry(request=None, **_kwargs):
    task_name = getattr(getattr(request, "task", None), "name", None) or getattr(request, "task_name", None) or "unknown"
    record_task_retry(str(task_name))
