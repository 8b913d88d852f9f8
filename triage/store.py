"""
Issue Store: every read and write the workflows make against the database.

Workflows receive an `IssueStore` in their constructor instead of opening
sessions themselves. Each method is one short unit of work with its own
session, so a slow model call never holds a database connection open.

SQLAlchemy errors are translated to `PersistenceError` here, which is the only
database error type the rest of the package knows about.
"""

from __future__ import annotations

import datetime
import json
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import and_, or_, text, update
from sqlalchemy.exc import SQLAlchemyError

from triage.db_session import make_session_factory, session_scope
from triage.errors import IssueNotFoundError, IssueValidationError, PersistenceError
from triage.models import (
    CATEGORY_VALUES,
    SEVERITY_VALUES,
    STATUS_VALUES,
    EmbeddingQueueEntry,
    EscalationDraft,
    FeedbackRecord,
    Issue,
    IssueStatus,
    QueueStatus,
    WeeklySummary,
    utcnow,
)

logger = logging.getLogger("issue-store")


def validate_issue_fields(
    status: Optional[str] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
) -> None:
    """Reject values outside the fixed enumerations with field-level detail."""
    errors: dict[str, list[str]] = {}
    if status is not None and status not in STATUS_VALUES:
        errors["status"] = [f"Must be one of: {STATUS_VALUES}"]
    if category is not None and category not in CATEGORY_VALUES:
        errors["category"] = [f"Must be one of: {CATEGORY_VALUES}"]
    if severity is not None and severity not in SEVERITY_VALUES:
        errors["severity"] = [f"Must be one of: {SEVERITY_VALUES}"]
    if errors:
        raise IssueValidationError(errors, "Invalid issue update")


class IssueStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or make_session_factory()

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def create_issue(
        self,
        *,
        title: str,
        description: str,
        latitude: float,
        longitude: float,
        image_url: Optional[str],
        embedding: Optional[list[float]],
        enqueue_embedding: bool = False,
    ) -> Issue:
        """
        Insert a new complaint with status "new".

        With `enqueue_embedding=True` the issue and its pending queue entry are
        committed in the same transaction, so the queue never points at a
        missing issue and an issue without embedding always has a job.
        """
        try:
            with session_scope(self._session_factory) as session:
                issue = Issue(
                    title=title,
                    description=description,
                    latitude=latitude,
                    longitude=longitude,
                    image_url=image_url,
                    embedding=embedding,
                    status=IssueStatus.NEW.value,
                )
                session.add(issue)
                session.flush()
                if enqueue_embedding:
                    session.add(EmbeddingQueueEntry(issue_id=issue.id, status=QueueStatus.PENDING.value))
                session.commit()
                return issue
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Issue insert failed: {exc}") from exc

    def get_issue(self, issue_id: int) -> Issue:
        try:
            with session_scope(self._session_factory) as session:
                issue = session.get(Issue, issue_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Issue lookup failed: {exc}") from exc
        if issue is None:
            raise IssueNotFoundError(issue_id)
        return issue

    def list_issues(self, status: Optional[str] = None, limit: int = 200) -> list[Issue]:
        try:
            with session_scope(self._session_factory) as session:
                query = session.query(Issue)
                if status:
                    query = query.filter(Issue.status == status)
                return query.order_by(Issue.created_at.desc(), Issue.id.desc()).limit(limit).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Issue listing failed: {exc}") from exc

    def update_issue(
        self,
        issue_id: int,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Issue:
        """
        Officer update. Only the fields passed are changed; text and embedding
        are never touched here.
        """
        validate_issue_fields(status=status, category=category, severity=severity)
        try:
            with session_scope(self._session_factory) as session:
                issue = session.get(Issue, issue_id)
                if issue is None:
                    raise IssueNotFoundError(issue_id)
                if status is not None:
                    issue.status = status
                if category is not None:
                    issue.category = category
                if severity is not None:
                    issue.severity = severity
                session.commit()
                return issue
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Issue update failed: {exc}") from exc

    def apply_classification(self, issue_id: int, category: str, severity: str) -> None:
        validate_issue_fields(category=category, severity=severity)
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(Issue)
                    .where(Issue.id == issue_id)
                    .values(category=category, severity=severity, updated_at=utcnow())
                )
                if result.rowcount != 1:
                    raise PersistenceError(f"Issue {issue_id} was not updated")
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Classification write failed: {exc}") from exc

    def issues_with_embeddings(self) -> list[Issue]:
        try:
            with session_scope(self._session_factory) as session:
                return session.query(Issue).filter(Issue.embedding.isnot(None)).all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Embedding scan failed: {exc}") from exc

    def match_issues_rpc(self, query_vector: list[float], threshold: float, count: int) -> list[dict]:
        """
        Call the database-side `match_issues()` function (pgvector deployments).

        Rows come back as plain dicts with id, title, description, status,
        severity, created_at and similarity.
        """
        statement = text(
            "SELECT id, title, description, status, severity, created_at, similarity "
            "FROM match_issues(:query_embedding, :match_threshold, :match_count)"
        )
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    statement,
                    {
                        "query_embedding": json.dumps(query_vector),
                        "match_threshold": threshold,
                        "match_count": count,
                    },
                )
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"match_issues() call failed: {exc}") from exc

    def get_issues_by_ids(self, issue_ids: Iterable[int]) -> dict[int, Issue]:
        ids = list(issue_ids)
        if not ids:
            return {}
        try:
            with session_scope(self._session_factory) as session:
                rows = session.query(Issue).filter(Issue.id.in_(ids)).all()
                return {row.id: row for row in rows}
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Issue batch lookup failed: {exc}") from exc

    def stale_high_severity_issues(self, older_than: datetime.datetime, limit: int) -> list[Issue]:
        """High/Critical issues still "new" and created before `older_than`, oldest first."""
        try:
            with session_scope(self._session_factory) as session:
                return (
                    session.query(Issue)
                    .filter(
                        Issue.severity.in_(["High", "Critical"]),
                        Issue.status == IssueStatus.NEW.value,
                        Issue.created_at < older_than,
                    )
                    .order_by(Issue.created_at.asc(), Issue.id.asc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Escalation scan failed: {exc}") from exc

    def issues_created_since(self, since: datetime.datetime) -> list[Issue]:
        try:
            with session_scope(self._session_factory) as session:
                return (
                    session.query(Issue)
                    .filter(Issue.created_at > since)
                    .order_by(Issue.created_at.asc(), Issue.id.asc())
                    .all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Summary window scan failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Derived records
    # ------------------------------------------------------------------

    def add_escalation_draft(self, issue_id: int, subject: str, body: str) -> EscalationDraft:
        try:
            with session_scope(self._session_factory) as session:
                draft = EscalationDraft(issue_id=issue_id, draft_subject=subject, draft_body=body, is_sent=False)
                session.add(draft)
                session.commit()
                return draft
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Escalation draft insert failed: {exc}") from exc

    def list_unsent_drafts(self) -> list[EscalationDraft]:
        try:
            with session_scope(self._session_factory) as session:
                return (
                    session.query(EscalationDraft)
                    .filter(EscalationDraft.is_sent.is_(False))
                    .order_by(EscalationDraft.created_at.asc(), EscalationDraft.id.asc())
                    .all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Draft listing failed: {exc}") from exc

    def add_weekly_summary(self, summary_text: str, issue_count: int) -> WeeklySummary:
        try:
            with session_scope(self._session_factory) as session:
                row = WeeklySummary(summary_text=summary_text, issue_count=issue_count)
                session.add(row)
                session.commit()
                return row
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Weekly summary insert failed: {exc}") from exc

    def latest_summaries(self, limit: int = 1) -> list[WeeklySummary]:
        try:
            with session_scope(self._session_factory) as session:
                return (
                    session.query(WeeklySummary)
                    .order_by(WeeklySummary.created_at.desc(), WeeklySummary.id.desc())
                    .limit(limit)
                    .all()
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Summary listing failed: {exc}") from exc

    def add_feedback(
        self,
        issue_id: int,
        *,
        original_category: Optional[str],
        original_severity: Optional[str],
        corrected_category: Optional[str],
        corrected_severity: Optional[str],
    ) -> FeedbackRecord:
        try:
            with session_scope(self._session_factory) as session:
                row = FeedbackRecord(
                    issue_id=issue_id,
                    original_category=original_category,
                    original_severity=original_severity,
                    corrected_category=corrected_category,
                    corrected_severity=corrected_severity,
                )
                session.add(row)
                session.commit()
                return row
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Feedback insert failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Embedding queue
    # ------------------------------------------------------------------

    def claim_embedding_jobs(
        self,
        limit: int,
        visibility_timeout_seconds: int,
        now: Optional[datetime.datetime] = None,
    ) -> list[tuple[EmbeddingQueueEntry, str]]:
        """
        Claim up to `limit` jobs. Returns (entry, claim_token) pairs.

        Each claim is a conditional UPDATE that only matches while the row is
        still claimable. Two workers racing for the same row both run the
        UPDATE, but only one sees rowcount == 1 and owns the job.
        """
        now = now or utcnow()
        expired_before = now - datetime.timedelta(seconds=visibility_timeout_seconds)
        claimable = or_(
            EmbeddingQueueEntry.status == QueueStatus.PENDING.value,
            and_(
                EmbeddingQueueEntry.status == QueueStatus.IN_PROGRESS.value,
                EmbeddingQueueEntry.claimed_at < expired_before,
            ),
        )
        claimed: list[tuple[EmbeddingQueueEntry, str]] = []
        try:
            with session_scope(self._session_factory) as session:
                candidate_ids = [
                    row[0]
                    for row in session.query(EmbeddingQueueEntry.id)
                    .filter(claimable)
                    .order_by(EmbeddingQueueEntry.created_at.asc(), EmbeddingQueueEntry.id.asc())
                    .limit(limit)
                    .all()
                ]
                for entry_id in candidate_ids:
                    token = uuid.uuid4().hex
                    result = session.execute(
                        update(EmbeddingQueueEntry)
                        .where(EmbeddingQueueEntry.id == entry_id, claimable)
                        .values(
                            status=QueueStatus.IN_PROGRESS.value,
                            claim_token=token,
                            claimed_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    session.commit()
                    if result.rowcount == 1:
                        entry = session.get(EmbeddingQueueEntry, entry_id)
                        session.refresh(entry)
                        claimed.append((entry, token))
                    else:
                        logger.info(f"queue_claim_lost entry_id={entry_id}")
                return claimed
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Queue claim failed: {exc}") from exc

    def complete_embedding_job(self, entry_id: int, claim_token: str, issue_id: int, embedding: list[float]) -> bool:
        """
        Write the embedding (only if the issue still has none) and mark the
        job completed. Returns False when the claim was taken over meanwhile.
        """
        try:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(EmbeddingQueueEntry)
                    .where(
                        EmbeddingQueueEntry.id == entry_id,
                        EmbeddingQueueEntry.claim_token == claim_token,
                        EmbeddingQueueEntry.status == QueueStatus.IN_PROGRESS.value,
                    )
                    .values(status=QueueStatus.COMPLETED.value, completed_at=utcnow(), last_error=None)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.execute(
                    update(Issue)
                    .where(Issue.id == issue_id, Issue.embedding.is_(None))
                    .values(embedding=embedding)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                return True
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Queue completion failed: {exc}") from exc

    def release_embedding_job(self, entry_id: int, claim_token: str, error: str, max_attempts: int) -> str:
        """Hand a failed job back to the queue, or park it once attempts run out."""
        try:
            with session_scope(self._session_factory) as session:
                entry = session.get(EmbeddingQueueEntry, entry_id)
                if entry is None or entry.claim_token != claim_token:
                    return "lost"
                entry.attempts = (entry.attempts or 0) + 1
                entry.last_error = error[:500]
                entry.claim_token = None
                entry.claimed_at = None
                if entry.attempts >= max_attempts:
                    entry.status = QueueStatus.FAILED.value
                else:
                    entry.status = QueueStatus.PENDING.value
                session.commit()
                return entry.status
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Queue release failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False
