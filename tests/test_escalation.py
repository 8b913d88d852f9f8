import dataclasses
import threading
import time
from unittest.mock import MagicMock

from conftest import FakeGenerator
from triage.errors import PersistenceError, UpstreamTimeoutError
from triage.escalation import EscalationWorkflow
from triage.models import Issue


def _email(subject="URGENT: Issue pending", body="Please act on this issue today."):
    return {"subject": subject, "body": body}


def test_only_stale_new_high_and_critical_are_selected(store, settings, make_issue):
    high = make_issue("Open manhole", "Manhole cover missing", severity="High", age_hours=49)
    critical = make_issue("Sewage overflow", "Flooding lane", severity="Critical", age_hours=100)
    make_issue("Garbage", "Bins full", severity="Medium", age_hours=200)
    make_issue("Fresh", "Reported today", severity="High", age_hours=47)
    make_issue("Being fixed", "Crew on site", severity="Critical", status="in_progress", age_hours=200)
    make_issue("Unrated", "No severity yet", severity=None, age_hours=200)

    selected = EscalationWorkflow(store, FakeGenerator(), settings).select()

    assert [i.id for i in selected] == [critical.id, high.id]


def test_run_saves_one_unsent_draft_per_issue(store, settings, make_issue):
    issue = make_issue("Streetlight not working on MG Road", "Dark road", category="Streetlight",
                       severity="High", age_hours=72)
    generator = FakeGenerator(json_responses=[_email(subject="  Escalation: Streetlight  ")])

    report = EscalationWorkflow(store, generator, settings).run()

    assert report.selected == 1
    assert report.processed == 1
    assert report.failed == 0
    drafts = store.list_unsent_drafts()
    assert len(drafts) == 1
    assert drafts[0].issue_id == issue.id
    assert drafts[0].draft_subject == "Escalation: Streetlight"
    assert drafts[0].is_sent is False
    prompt = generator.json_prompts[0]
    assert f"- ID: {issue.id}" in prompt
    assert "over 48 hours" in prompt


def test_failures_are_isolated_per_issue(store, settings, make_issue):
    first = make_issue("A", "first stale issue", severity="High", age_hours=90)
    second = make_issue("B", "second stale issue", severity="High", age_hours=80)
    third = make_issue("C", "third stale issue", severity="Critical", age_hours=70)
    generator = FakeGenerator(json_responses=[
        UpstreamTimeoutError("slow"),
        {"subject": "", "body": "missing subject"},
        _email(),
    ])

    report = EscalationWorkflow(store, generator, settings).run()

    assert report.processed == 1
    assert report.failed == 2
    assert report.failed_issue_ids == [first.id, second.id]
    assert [d.issue_id for d in store.list_unsent_drafts()] == [third.id]


def test_repeated_runs_draft_again(store, settings, make_issue):
    make_issue(severity="Critical", age_hours=60)
    generator = FakeGenerator(json_responses=[_email(), _email()])
    workflow = EscalationWorkflow(store, generator, settings)

    workflow.run()
    workflow.run()

    assert len(store.list_unsent_drafts()) == 2


def test_nothing_stale_means_no_model_calls(store, settings, make_issue):
    make_issue(severity="High", age_hours=1)
    generator = FakeGenerator()
    report = EscalationWorkflow(store, generator, settings).run()
    assert report.selected == 0
    assert generator.json_prompts == []


def test_threshold_and_limit_come_from_settings(store, settings, make_issue):
    for hours in (30, 40, 50):
        make_issue(severity="High", age_hours=hours)
    tuned = dataclasses.replace(settings, escalation_threshold_hours=24, escalation_batch_limit=2)
    selected = EscalationWorkflow(store, FakeGenerator(), tuned).select()
    assert len(selected) == 2


def test_concurrency_is_bounded_by_pool_size(settings):
    issues = [Issue(id=i, title=f"Issue {i}", description="stale", severity="High") for i in range(1, 7)]
    store = MagicMock()
    store.stale_high_severity_issues.return_value = issues
    store.add_escalation_draft.side_effect = lambda issue_id, subject, body: MagicMock(id=issue_id + 100)

    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    class SlowGenerator:
        def generate_json(self, prompt):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.02)
            with lock:
                state["active"] -= 1
            return _email()

    tuned = dataclasses.replace(settings, batch_concurrency=2)
    report = EscalationWorkflow(store, SlowGenerator(), tuned).run()

    assert report.processed == 6
    assert report.draft_ids == [101, 102, 103, 104, 105, 106]
    assert state["peak"] <= 2


def test_draft_insert_failure_counts_as_item_failure(settings):
    store = MagicMock()
    store.stale_high_severity_issues.return_value = [Issue(id=1, title="t", description="d", severity="High")]
    store.add_escalation_draft.side_effect = PersistenceError("insert failed")

    report = EscalationWorkflow(store, FakeGenerator(json_responses=[_email()]), settings).run()

    assert report.failed == 1
    assert report.failed_issue_ids == [1]
