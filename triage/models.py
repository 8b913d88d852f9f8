import datetime
import enum
import os

from sqlalchemy import create_engine
from sqlalchemy import Column, Boolean, String, Integer, Float, DateTime, JSON
from sqlalchemy import ForeignKey
from sqlalchemy.orm import relationship, DeclarativeBase
from sqlalchemy.schema import Index


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp. SQLite drops tzinfo, so we never store it."""
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)


def db_connect():
    """
    Connects to the database (PostgreSQL in production, SQLite for local testing).
    """
    database_url = os.getenv('DATABASE_URL')

    if database_url and not database_url.startswith('sqlite'):
        # Pooled connections for the API and the Celery worker.
        return create_engine(
            database_url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800
        )
    if database_url:
        return create_engine(database_url)

    current_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(current_dir)
    db_path = os.path.join(project_root, 'triage_db.sqlite')
    print("WARNING: DATABASE_URL not set. Using local SQLite.")
    return create_engine(f'sqlite:///{db_path}')


def create_tables(engine):
    """
    Creates all the tables defined below if they don't already exist.
    """
    Base.metadata.create_all(engine)


class Category(str, enum.Enum):
    POTHOLE = "Pothole"
    GARBAGE = "Garbage"
    STREETLIGHT = "Streetlight"
    SEWAGE = "Sewage"
    WATER_LEAKAGE = "Water Leakage"
    DAMAGED_SIGNAGE = "Damaged Signage"
    OTHER = "Other"


class Severity(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IssueStatus(str, enum.Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class QueueStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


CATEGORY_VALUES = [c.value for c in Category]
SEVERITY_VALUES = [s.value for s in Severity]
STATUS_VALUES = [s.value for s in IssueStatus]


class Issue(Base):
    """
    A citizen complaint plus the fields officers and the AI derive from it.

    `embedding` is computed once from "title. description" at submission time.
    Later edits to the text do not recompute it. Rows are never hard-deleted;
    `status` carries the lifecycle.
    """
    __tablename__ = 'issues'

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False)

    # Null until classified by the AI or set by an officer.
    category = Column(String, nullable=True, index=True)
    severity = Column(String, nullable=True, index=True)

    status = Column(String, nullable=False, default=IssueStatus.NEW.value, index=True)
    image_url = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # JSON list of floats; null while the embedding is queued.
    embedding = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    drafts = relationship("EscalationDraft", back_populates="issue")

    def to_dict(self, include_embedding: bool = False) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "status": self.status,
            "image_url": self.image_url,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


Index("ix_issues_escalation_scan", Issue.status, Issue.severity, Issue.created_at)


class FeedbackRecord(Base):
    """
    Officer correction of an AI suggestion. Append-only audit trail; it never
    changes the Issue it points at.
    """
    __tablename__ = 'feedback_log'

    id = Column(Integer, primary_key=True)
    issue_id = Column(Integer, ForeignKey('issues.id'), nullable=False, index=True)
    original_category = Column(String, nullable=True)
    original_severity = Column(String, nullable=True)
    corrected_category = Column(String, nullable=True)
    corrected_severity = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class EscalationDraft(Base):
    """
    Generated escalation email waiting for a human to review and send it.
    """
    __tablename__ = 'escalation_drafts'

    id = Column(Integer, primary_key=True)
    issue_id = Column(Integer, ForeignKey('issues.id'), nullable=False, index=True)
    draft_subject = Column(String, nullable=False)
    draft_body = Column(String, nullable=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    issue = relationship("Issue", back_populates="drafts")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "draft_subject": self.draft_subject,
            "draft_body": self.draft_body,
            "is_sent": self.is_sent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class WeeklySummary(Base):
    """One bulletin per scheduled run. Never updated or deleted."""
    __tablename__ = 'weekly_summaries'

    id = Column(Integer, primary_key=True)
    summary_text = Column(String, nullable=False)
    issue_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "summary_text": self.summary_text,
            "issue_count": self.issue_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EmbeddingQueueEntry(Base):
    """
    Deferred embedding job for one issue.

    pending -> in_progress (atomic claim) -> completed
    A claim older than the visibility timeout can be taken over by another
    worker. Repeated failures park the entry as "failed".
    """
    __tablename__ = 'embedding_queue'

    id = Column(Integer, primary_key=True)
    issue_id = Column(Integer, ForeignKey('issues.id'), nullable=False, index=True)
    status = Column(String, nullable=False, default=QueueStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
