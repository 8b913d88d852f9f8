import datetime

import pytest

from conftest import FakeEmbedder, FakeGenerator
from triage.chat import ConversationalQueryWorkflow, is_small_talk
from triage.errors import IssueValidationError
from triage.models import Issue
from triage.prompts import DECLINE_PHRASE, format_chat_context_line
from triage.similarity import BruteForceSimilarityIndex


def _workflow(store, embedder, generator, settings):
    return ConversationalQueryWorkflow(embedder, BruteForceSimilarityIndex(store), generator, settings)


@pytest.mark.parametrize("text", ["Hi", "hello!", "Thanks a lot", "hi there", "Good morning", "how are you?"])
def test_small_talk_detection(text):
    assert is_small_talk(text)


@pytest.mark.parametrize("text", [
    "How many potholes are open?",
    "hi which issues are critical in ward 4 today",
    "hi, any potholes?",
    "ok list potholes",
    "thanks, critical issues?",
    "",
])
def test_questions_are_not_small_talk(text):
    assert not is_small_talk(text)


def test_greeting_prefixed_question_on_empty_store_declines(store, settings):
    generator = FakeGenerator(text_responses=["Issue #42 is a pothole on MG Road."])

    answer = _workflow(store, FakeEmbedder(), generator, settings).answer("hello, open potholes?")

    assert answer.answer == DECLINE_PHRASE
    assert answer.declined is True
    assert generator.text_prompts == []


def test_greeting_prefixed_question_is_retrieved(store, settings, make_issue):
    issue = make_issue("Pothole near Sitabuldi", embedding=[1.0, 0.0, 0.0])
    embedder = FakeEmbedder(default=[1.0, 0.0, 0.0])
    generator = FakeGenerator(text_responses=[f"Issue {issue.id} is a pothole."])

    answer = _workflow(store, embedder, generator, settings).answer("hi, any potholes?")

    assert embedder.calls == ["hi, any potholes?"]
    assert [m.issue.id for m in answer.sources] == [issue.id]


def test_small_talk_skips_retrieval(store, settings):
    embedder = FakeEmbedder()
    generator = FakeGenerator(text_responses=["Hello! How can I help you today?"])

    answer = _workflow(store, embedder, generator, settings).answer("Hi")

    assert answer.answer == "Hello! How can I help you today?"
    assert answer.sources == []
    assert embedder.calls == []
    assert "No relevant issues found." in generator.text_prompts[0]


def test_empty_retrieval_declines_without_calling_model(store, settings, make_issue):
    make_issue(embedding=[0.0, 1.0, 0.0])
    embedder = FakeEmbedder(default=[1.0, 0.0, 0.0])
    generator = FakeGenerator()

    answer = _workflow(store, embedder, generator, settings).answer("Which sewage issues are pending in Sitabuldi?")

    assert answer.answer == DECLINE_PHRASE
    assert answer.declined is True
    assert generator.text_prompts == []


def test_answer_uses_retrieved_context(store, settings, make_issue):
    issue = make_issue("Streetlight not working on MG Road", "Dark stretch near the market",
                       embedding=[1.0, 0.0, 0.0], severity="High", age_hours=72)
    embedder = FakeEmbedder(default=[1.0, 0.0, 0.0])
    generator = FakeGenerator(text_responses=[f"Issue {issue.id} is still new."])

    answer = _workflow(store, embedder, generator, settings).answer("What is the status of MG Road lights?")

    assert answer.answer == f"Issue {issue.id} is still new."
    assert [m.issue.id for m in answer.sources] == [issue.id]
    prompt = generator.text_prompts[0]
    assert f"- Issue (ID {issue.id}): Streetlight not working on MG Road" in prompt
    assert "Age: 3 days" in prompt
    assert embedder.calls == ["What is the status of MG Road lights?"]


@pytest.mark.parametrize("question", [None, "", "   "])
def test_blank_question_is_rejected(store, settings, question):
    with pytest.raises(IssueValidationError):
        _workflow(store, FakeEmbedder(), FakeGenerator(), settings).answer(question)


def test_context_line_format():
    issue = Issue(id=12, title="Water  leakage\nnear tank", description="x", status="in_progress",
                  severity="Critical", created_at=datetime.datetime(2026, 4, 1, 9, 30))
    line = format_chat_context_line(issue, datetime.datetime(2026, 4, 11, 8, 0))
    assert line == (
        "- Issue (ID 12): Water leakage near tank "
        "(Status: in_progress, Severity: Critical, Reported: 2026-04-01, Age: 9 days)"
    )


def test_answer_to_dict_lists_sources(store, settings, make_issue):
    issue = make_issue(embedding=[1.0, 0.0])
    generator = FakeGenerator(text_responses=["One pothole."])
    answer = _workflow(store, FakeEmbedder(default=[1.0, 0.0]), generator, settings).answer("Any potholes?")
    data = answer.to_dict()
    assert data["answer"] == "One pothole."
    assert data["sources"][0]["id"] == issue.id
