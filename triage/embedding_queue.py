"""
Embedding queue worker: computes embeddings deferred at submission time.

A drain pass:
1. claims up to `queue_batch_size` entries (atomic conditional UPDATE per row)
2. embeds "title. description" of each claimed issue
3. writes the vector if the issue still has none and marks the entry completed

Claims carry a random token. Completion and release are guarded by that token,
so a worker whose claim expired and was taken over cannot overwrite the new
owner's bookkeeping. A crashed worker's claim becomes claimable again once it
is older than the visibility timeout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from triage.config import TriageSettings
from triage.errors import IssueNotFoundError, PersistenceError, ProviderError
from triage.llm_provider import EmbeddingClient
from triage.metrics import record_workflow_item, record_workflow_run
from triage.store import IssueStore

logger = logging.getLogger("embedding-queue")


def embedding_text(title: str, description: str) -> str:
    return f"{title}. {description}"


@dataclass
class DrainReport:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    lost: int = 0
    completed_issue_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "lost": self.lost,
            "completed_issue_ids": list(self.completed_issue_ids),
        }


class EmbeddingQueueWorker:
    def __init__(self, store: IssueStore, embedder: EmbeddingClient, settings: TriageSettings):
        self.store = store
        self.embedder = embedder
        self.settings = settings

    def drain(self, limit: int | None = None) -> DrainReport:
        limit = self.settings.queue_batch_size if limit is None else max(1, int(limit))
        claimed = self.store.claim_embedding_jobs(limit, self.settings.queue_visibility_timeout_seconds)
        report = DrainReport(claimed=len(claimed))
        if not claimed:
            logger.info("No pending embedding jobs.")
            record_workflow_run("embedding_queue", "empty")
            return report

        logger.info(f"Claimed {len(claimed)} embedding jobs.")
        for entry, token in claimed:
            try:
                issue = self.store.get_issue(entry.issue_id)
                if issue.embedding is not None:
                    # Already embedded (e.g. a previous owner finished late). Just close the job.
                    vector = issue.embedding
                else:
                    vector = self.embedder.embed(embedding_text(issue.title, issue.description))
                ok = self.store.complete_embedding_job(entry.id, token, entry.issue_id, vector)
            except (ProviderError, PersistenceError, IssueNotFoundError) as exc:
                outcome = self._release(entry.id, token, exc)
                if outcome == "failed":
                    report.failed += 1
                elif outcome == "pending":
                    report.retried += 1
                else:
                    report.lost += 1
                continue

            if ok:
                report.completed += 1
                report.completed_issue_ids.append(entry.issue_id)
                logger.info(f"embedding_job_completed entry_id={entry.id} issue_id={entry.issue_id}")
            else:
                report.lost += 1
                logger.warning(f"embedding_job_claim_lost entry_id={entry.id} issue_id={entry.issue_id}")

        record_workflow_item("embedding_queue", "completed", report.completed)
        record_workflow_item("embedding_queue", "retried", report.retried)
        record_workflow_item("embedding_queue", "failed", report.failed)
        record_workflow_run("embedding_queue", "ok" if report.failed == 0 and report.retried == 0 else "partial")
        return report

    def _release(self, entry_id: int, token: str, exc: Exception) -> str:
        logger.error(f"embedding_job_failed entry_id={entry_id} error_type={type(exc).__name__} error={exc}")
        try:
            return self.store.release_embedding_job(
                entry_id, token, f"{type(exc).__name__}: {exc}", self.settings.queue_max_attempts
            )
        except PersistenceError as release_exc:
            # The claim expires on its own after the visibility timeout.
            logger.error(f"embedding_job_release_failed entry_id={entry_id} error={release_exc}")
            return "lost"
