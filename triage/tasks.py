from celery import Celery
from celery.schedules import crontab
import logging

from triage.config import (
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    SCHEDULE_EMBEDDING_QUEUE_SECONDS,
    SCHEDULE_ESCALATION_MINUTES,
    SCHEDULE_WEEKLY_SUMMARY_ENABLED,
    TASK_RETRY_COUNTDOWN_SECONDS,
    TriageSettings,
)
from triage.cache import SUMMARIES_CACHE_PREFIX, invalidate
from triage.errors import ProviderError
from triage.llm_provider import is_retryable
from triage.services import TriageServices

# Register worker metrics (safe in non-worker contexts; the HTTP server only starts
# when TRIAGE_WORKER_METRICS_PORT is set and the Celery worker is ready).
from triage import metrics as _worker_metrics  # noqa: F401

# Setup logging
logger = logging.getLogger("celery-worker")

# Celery broker queues tasks; result backend stores task results.
app = Celery('tasks')

app.conf.broker_url = CELERY_BROKER_URL
app.conf.result_backend = CELERY_RESULT_BACKEND


def build_beat_schedule():
    """
    Periodic triggers for the batch workflows. A schedule set to 0 (or disabled)
    is left out entirely.
    """
    schedule = {}
    if SCHEDULE_ESCALATION_MINUTES > 0:
        schedule["escalate-stale-issues"] = {
            "task": "triage.tasks.run_escalation_task",
            "schedule": float(SCHEDULE_ESCALATION_MINUTES * 60),
        }
    if SCHEDULE_EMBEDDING_QUEUE_SECONDS > 0:
        schedule["drain-embedding-queue"] = {
            "task": "triage.tasks.drain_embedding_queue_task",
            "schedule": float(SCHEDULE_EMBEDDING_QUEUE_SECONDS),
        }
    if SCHEDULE_WEEKLY_SUMMARY_ENABLED:
        # Monday 06:00 UTC, before the ward review meeting.
        schedule["weekly-summary"] = {
            "task": "triage.tasks.run_weekly_summary_task",
            "schedule": crontab(hour=6, minute=0, day_of_week="mon"),
        }
    return schedule


app.conf.beat_schedule = build_beat_schedule()


def _services():
    """
    Fresh services per task run: one explicit settings snapshot, no shared
    client state between tasks.
    """
    return TriageServices.build(TriageSettings())


@app.task(bind=True, max_retries=3)
def classify_issue_task(self, issue_id: int):
    """
    Background task: run the classification workflow for one issue.
    """
    try:
        logger.info(f"Starting classification for Issue ID {issue_id}")
        result = _services().classification().classify(issue_id)
        return {"status": "complete", **result.to_dict()}
    except ProviderError as e:
        # Only an unreachable model server is transient; bad output fails
        # the task right away.
        if not is_retryable(e):
            raise
        logger.error(f"Task failed: {e}")
        raise self.retry(exc=e, countdown=TASK_RETRY_COUNTDOWN_SECONDS)


@app.task(bind=True, max_retries=3)
def run_escalation_task(self):
    """
    Background task: draft escalation emails for stale High/Critical issues.
    Per-issue failures are counted in the report, not raised.
    """
    report = _services().escalation().run()
    return {"status": "complete", **report.to_dict()}


@app.task(bind=True, max_retries=3)
def run_weekly_summary_task(self):
    """
    Background task: append one weekly bulletin (no-op when the window is empty).
    """
    try:
        report = _services().summarization().run()
    except ProviderError as e:
        if not is_retryable(e):
            raise
        logger.error(f"Task failed: {e}")
        raise self.retry(exc=e, countdown=TASK_RETRY_COUNTDOWN_SECONDS)
    if report.status == "created":
        invalidate(SUMMARIES_CACHE_PREFIX)
    return report.to_dict()


@app.task(bind=True, max_retries=3)
def drain_embedding_queue_task(self, limit: int = None):
    """
    Background task: embed issues that were submitted in queue mode.
    Failed jobs go back to the queue; the task itself does not retry.
    """
    report = _services().embedding_queue().drain(limit)
    return {"status": "complete", **report.to_dict()}
