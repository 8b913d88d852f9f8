import datetime
import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# We use a shared in-memory database so multiple connections can see the same tables.
# The API module builds its engine at import time, so point it here before any import.
TEST_DB_URL = "sqlite:///file:testdb?mode=memory&cache=shared&uri=true"
os.environ.setdefault("DATABASE_URL", TEST_DB_URL)

from triage.config import TriageSettings  # noqa: E402
from triage.db_session import make_session_factory  # noqa: E402
from triage.models import Base, Issue, utcnow  # noqa: E402
from triage.store import IssueStore  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def shared_engine():
    """
    Creates a single engine for the entire test session.
    """
    # One connection for every thread: TestClient handlers and batch pools run off the main thread.
    engine = create_engine(TEST_DB_URL, poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def mock_db_connect(monkeypatch, shared_engine):
    """
    Anything that calls db_connect() during a test gets the shared test database.
    """
    monkeypatch.setenv("DATABASE_URL", TEST_DB_URL)
    for target in ["triage.models.db_connect", "triage.db_session.db_connect", "triage.db_init.db_connect"]:
        monkeypatch.setattr(target, lambda: shared_engine)
    yield


@pytest.fixture(autouse=True)
def clean_tables(shared_engine):
    """
    We clear the data after every test but keep the tables.
    """
    yield
    with shared_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def session_factory(shared_engine):
    return make_session_factory(shared_engine)


@pytest.fixture
def store(session_factory):
    return IssueStore(session_factory)


@pytest.fixture
def settings(tmp_path):
    return TriageSettings(upload_dir=str(tmp_path / "uploads"), batch_concurrency=1)


@pytest.fixture
def make_issue(session_factory):
    """
    Insert an issue directly, with full control over created_at and derived fields.
    """
    def _make(
        title="Pothole near bus stop",
        description="Deep pothole causing two-wheeler accidents",
        *,
        category=None,
        severity=None,
        status="new",
        embedding=None,
        age_hours=0.0,
        created_at=None,
    ):
        session = session_factory()
        try:
            issue = Issue(
                title=title,
                description=description,
                category=category,
                severity=severity,
                status=status,
                embedding=embedding,
                latitude=21.15,
                longitude=79.08,
                created_at=created_at or (utcnow() - datetime.timedelta(hours=age_hours)),
            )
            session.add(issue)
            session.commit()
            return issue
        finally:
            session.close()

    return _make


class FakeEmbedder:
    """
    Deterministic stand-in for the embedding endpoint. Known texts map to fixed
    vectors; anything else gets `default`.
    """

    def __init__(self, vectors=None, default=(1.0, 0.0, 0.0), error=None):
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.error = error
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))


class FakeGenerator:
    """
    Replays queued responses. An Exception in the queue is raised instead of returned.
    """

    def __init__(self, json_responses=None, text_responses=None, healthy=True):
        self.json_responses = list(json_responses or [])
        self.text_responses = list(text_responses or [])
        self.healthy = healthy
        self.json_prompts = []
        self.text_prompts = []

    def _next(self, queue, fallback):
        item = queue.pop(0) if queue else fallback
        if isinstance(item, Exception):
            raise item
        return item

    def generate(self, prompt):
        self.text_prompts.append(prompt)
        return self._next(self.text_responses, "Generated text.")

    def generate_json(self, prompt):
        self.json_prompts.append(prompt)
        return self._next(self.json_responses, {})

    def health_check(self):
        return self.healthy


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def fake_generator():
    return FakeGenerator()
