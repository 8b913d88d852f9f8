from prometheus_client import REGISTRY, generate_latest


def test_worker_task_metrics_helpers_exist_and_export():
    # Import registers metric collectors. We do not start an HTTP server in tests.
    from triage.metrics import (
        record_task_duration,
        record_task_failure,
        record_task_retry,
    )

    record_task_duration("triage.tasks.run_escalation_task", "success", 0.123)
    record_task_failure("triage.tasks.run_escalation_task", "RuntimeError")
    record_task_retry("triage.tasks.classify_issue_task")

    payload = generate_latest().decode("utf-8", errors="ignore")
    assert "triage_celery_task_duration_seconds" in payload
    assert "triage_celery_task_failures_total" in payload
    assert "triage_celery_task_retries_total" in payload


def test_workflow_item_counter_ignores_zero_counts():
    from triage.metrics import record_workflow_item

    labels = {"workflow": "escalation", "outcome": "metrics-test"}
    before = REGISTRY.get_sample_value("triage_workflow_items_total", labels) or 0.0
    record_workflow_item("escalation", "metrics-test", 0)
    record_workflow_item("escalation", "metrics-test", 3)
    assert REGISTRY.get_sample_value("triage_workflow_items_total", labels) == before + 3


def test_provider_request_metrics_are_labelled_by_outcome():
    from triage.metrics import record_provider_request

    labels = {"provider": "http", "operation": "embed", "model": "metrics-test", "outcome": "timeout"}
    before = REGISTRY.get_sample_value("triage_provider_requests_total", labels) or 0.0
    record_provider_request("http", "embed", "metrics-test", "timeout", 30000.0)
    assert REGISTRY.get_sample_value("triage_provider_requests_total", labels) == before + 1
