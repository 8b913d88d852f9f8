"""
Escalation Workflow: draft emails for stale high-severity issues.

Selection: severity High/Critical, status "new", created more than
ESCALATION_THRESHOLD_HOURS ago. Oldest first, at most ESCALATION_BATCH_LIMIT.

Each selected issue gets one model call and one EscalationDraft row. One bad
issue (model down, bad JSON, failed insert) is logged and counted; the rest of
the batch still runs.

Runs are not de-duplicated: an issue that stays stale is drafted again on the
next run, and the officer sees the newest draft on top.
"""

from __future__ import annotations

import datetime
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from triage.config import TriageSettings
from triage.errors import InvalidModelOutputError, PersistenceError, ProviderError
from triage.llm_provider import GenerationClient
from triage.metrics import record_workflow_item, record_workflow_run
from triage.models import Issue, utcnow
from triage.prompts import prepare_escalation_prompt
from triage.store import IssueStore

logger = logging.getLogger("escalation-agent")


class EscalationEmail(BaseModel):
    subject: str
    body: str

    @field_validator("subject", "body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


@dataclass
class EscalationReport:
    selected: int = 0
    processed: int = 0
    failed: int = 0
    draft_ids: list[int] = field(default_factory=list)
    failed_issue_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": self.selected,
            "processed": self.processed,
            "failed": self.failed,
            "draft_ids": list(self.draft_ids),
            "failed_issue_ids": list(self.failed_issue_ids),
        }


class EscalationWorkflow:
    def __init__(self, store: IssueStore, generator: GenerationClient, settings: TriageSettings):
        self.store = store
        self.generator = generator
        self.settings = settings

    def select(self, now: Optional[datetime.datetime] = None) -> list[Issue]:
        now = now or utcnow()
        cutoff = now - datetime.timedelta(hours=self.settings.escalation_threshold_hours)
        return self.store.stale_high_severity_issues(cutoff, self.settings.escalation_batch_limit)

    def draft_one(self, issue: Issue) -> Optional[int]:
        """Returns the new draft id, or None when this issue failed."""
        prompt = prepare_escalation_prompt(issue, self.settings.escalation_threshold_hours)
        try:
            payload = self.generator.generate_json(prompt)
            try:
                email = EscalationEmail.model_validate(payload)
            except ValidationError as exc:
                raise InvalidModelOutputError(f"Escalation output failed validation: {exc}") from exc
            draft = self.store.add_escalation_draft(issue.id, email.subject, email.body)
        except (ProviderError, PersistenceError) as exc:
            logger.error(f"escalation_item_failed issue_id={issue.id} error_type={type(exc).__name__} error={exc}")
            return None
        logger.info(f"escalation_draft_saved issue_id={issue.id} draft_id={draft.id}")
        return draft.id

    def run(self, now: Optional[datetime.datetime] = None) -> EscalationReport:
        logger.info("Escalation agent started...")
        issues = self.select(now)
        report = EscalationReport(selected=len(issues))
        if not issues:
            logger.info("No issues found requiring escalation.")
            record_workflow_run("escalation", "empty")
            return report

        logger.info(
            f"Found {len(issues)} issues to escalate (concurrency={self.settings.batch_concurrency})."
        )
        # The inference server has no admission control of its own; the pool
        # size is the only thing bounding concurrent generation calls.
        with ThreadPoolExecutor(max_workers=max(1, self.settings.batch_concurrency)) as executor:
            results = list(executor.map(self.draft_one, issues))

        for issue, draft_id in zip(issues, results):
            if draft_id is None:
                report.failed += 1
                report.failed_issue_ids.append(issue.id)
            else:
                report.processed += 1
                report.draft_ids.append(draft_id)

        record_workflow_item("escalation", "ok", report.processed)
        record_workflow_item("escalation", "failed", report.failed)
        record_workflow_run("escalation", "ok" if report.failed == 0 else "partial")
        logger.info(
            f"escalation_run_done selected={report.selected} processed={report.processed} failed={report.failed}"
        )
        return report
