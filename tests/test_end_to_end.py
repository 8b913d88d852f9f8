"""
Citizen submission through classification, officer review and the batch agents,
with the model server replaced by deterministic fakes.
"""

import io

from conftest import FakeEmbedder, FakeGenerator
from triage.models import SEVERITY_VALUES
from triage.services import TriageServices


def test_streetlight_complaint_lifecycle(session_factory, settings, make_issue):
    # An earlier streetlight complaint gives the classifier some history.
    make_issue("Streetlight flickering near Sitabuldi", "Pole light flickers every night",
               category="Streetlight", severity="Medium", embedding=[0.95, 0.05, 0.0], age_hours=24 * 30)

    embedder = FakeEmbedder(default=[1.0, 0.0, 0.0])
    generator = FakeGenerator(
        json_responses=[
            {"category": "Streetlight", "severity": "High",
             "explanation": "A dark arterial road is a safety risk; similar to the Sitabuldi report."},
        ],
        text_responses=["Weekly Issue Bulletin: one streetlight outage on MG Road needs attention."],
    )
    services = TriageServices.build(settings, session_factory=session_factory, embedder=embedder, generator=generator)

    issue = services.complaints().submit(
        {
            "title": "Broken streetlight on MG Road",
            "description": "Light has been out for 2 weeks",
            "latitude": 21.15,
            "longitude": 79.08,
        },
        io.BytesIO(b"\xff\xd8photo"),
        "image/jpeg",
        "streetlight.jpg",
    )
    assert issue.status == "new"
    assert issue.embedding == [1.0, 0.0, 0.0]
    assert embedder.calls == ["Broken streetlight on MG Road. Light has been out for 2 weeks"]

    result = services.classification().classify(issue.id)
    assert result.category == "Streetlight"
    assert result.severity in SEVERITY_VALUES
    assert isinstance(result.explanation, str) and result.explanation
    assert [m.issue.title for m in result.similar_issues] == ["Streetlight flickering near Sitabuldi"]

    stored = services.store.get_issue(issue.id)
    assert (stored.category, stored.severity, stored.status) == ("Streetlight", "High", "new")

    report = services.summarization().run()
    assert report.status == "created"
    assert report.issue_count == 1
    assert services.store.latest_summaries(limit=1)[0].summary_text.startswith("Weekly Issue Bulletin")

    # Freshly reported, so nothing is stale enough to escalate yet.
    assert services.escalation().run().selected == 0
