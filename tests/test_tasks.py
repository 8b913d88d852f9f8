from unittest.mock import MagicMock

import pytest
from celery.schedules import crontab

from triage import tasks
from triage.classification import ClassificationResult
from triage.errors import InvalidModelOutputError, UpstreamUnavailableError
from triage.escalation import EscalationReport
from triage.summarization import SummaryReport


@pytest.fixture
def services(mocker):
    svc = MagicMock()
    mocker.patch.object(tasks, "_services", return_value=svc)
    return svc


def test_classify_task_returns_analysis(services):
    services.classification.return_value.classify.return_value = ClassificationResult(
        issue_id=3, category="Pothole", severity="High", explanation="Deep hole."
    )

    result = tasks.classify_issue_task.run(3)

    assert result["status"] == "complete"
    assert result["analysis"]["category"] == "Pothole"
    services.classification.return_value.classify.assert_called_once_with(3)


def test_classify_task_retries_when_model_server_is_down(services, mocker):
    error = UpstreamUnavailableError("connection refused")
    services.classification.return_value.classify.side_effect = error
    retry = mocker.patch.object(tasks.classify_issue_task, "retry", return_value=RuntimeError("retrying"))

    with pytest.raises(RuntimeError, match="retrying"):
        tasks.classify_issue_task.run(3)

    retry.assert_called_once_with(exc=error, countdown=tasks.TASK_RETRY_COUNTDOWN_SECONDS)


def test_classify_task_does_not_retry_bad_output(services, mocker):
    services.classification.return_value.classify.side_effect = InvalidModelOutputError("not json")
    retry = mocker.patch.object(tasks.classify_issue_task, "retry")

    with pytest.raises(InvalidModelOutputError):
        tasks.classify_issue_task.run(3)

    retry.assert_not_called()


def test_escalation_task_returns_report(services):
    services.escalation.return_value.run.return_value = EscalationReport(
        selected=2, processed=1, failed=1, draft_ids=[10], failed_issue_ids=[4]
    )

    result = tasks.run_escalation_task.run()

    assert result["status"] == "complete"
    assert result["processed"] == 1
    assert result["failed_issue_ids"] == [4]


def test_summary_task_retries_on_outage(services, mocker):
    error = UpstreamUnavailableError("down")
    services.summarization.return_value.run.side_effect = error
    retry = mocker.patch.object(tasks.run_weekly_summary_task, "retry", return_value=RuntimeError("retrying"))

    with pytest.raises(RuntimeError):
        tasks.run_weekly_summary_task.run()

    retry.assert_called_once()


def test_summary_task_reports_empty_window(services, mocker):
    invalidate = mocker.patch.object(tasks, "invalidate")
    services.summarization.return_value.run.return_value = SummaryReport(status="empty")

    assert tasks.run_weekly_summary_task.run()["status"] == "empty"
    invalidate.assert_not_called()


def test_new_summary_drops_cached_bulletins(services, mocker):
    invalidate = mocker.patch.object(tasks, "invalidate")
    services.summarization.return_value.run.return_value = SummaryReport(
        status="created", issue_count=4, summary_id=9, summary="Weekly Issue Bulletin"
    )

    result = tasks.run_weekly_summary_task.run()

    assert result["summary_id"] == 9
    invalidate.assert_called_once_with("summaries")


def test_summary_task_does_not_retry_bad_output(services, mocker):
    services.summarization.return_value.run.side_effect = InvalidModelOutputError("empty bulletin")
    retry = mocker.patch.object(tasks.run_weekly_summary_task, "retry")

    with pytest.raises(InvalidModelOutputError):
        tasks.run_weekly_summary_task.run()

    retry.assert_not_called()


def test_drain_task_passes_limit(services):
    services.embedding_queue.return_value.drain.return_value.to_dict.return_value = {"claimed": 0}
    result = tasks.drain_embedding_queue_task.run(7)
    services.embedding_queue.return_value.drain.assert_called_once_with(7)
    assert result == {"status": "complete", "claimed": 0}


def test_beat_schedule(mocker):
    mocker.patch.object(tasks, "SCHEDULE_ESCALATION_MINUTES", 60)
    mocker.patch.object(tasks, "SCHEDULE_EMBEDDING_QUEUE_SECONDS", 0)
    mocker.patch.object(tasks, "SCHEDULE_WEEKLY_SUMMARY_ENABLED", True)

    schedule = tasks.build_beat_schedule()

    assert set(schedule) == {"escalate-stale-issues", "weekly-summary"}
    assert schedule["escalate-stale-issues"]["schedule"] == 3600.0
    weekly = schedule["weekly-summary"]["schedule"]
    assert isinstance(weekly, crontab)
    assert weekly == crontab(hour=6, minute=0, day_of_week="mon")
    assert schedule["weekly-summary"]["task"] == tasks.run_weekly_summary_task.name


def test_task_names_match_schedule_entries():
    assert tasks.run_escalation_task.name == "triage.tasks.run_escalation_task"
    assert tasks.drain_embedding_queue_task.name == "triage.tasks.drain_embedding_queue_task"
