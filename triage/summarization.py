"""
Summarization Workflow: the weekly bulletin.

Collects every issue created inside the trailing window, asks the model for a
three-part bulletin (overview, key hotspots, priority issues) and appends one
WeeklySummary row. Earlier rows are never touched. Running twice in a row
appends two rows; there is no cross-run de-duplication.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from triage.config import TriageSettings
from triage.errors import InvalidModelOutputError
from triage.llm_provider import GenerationClient
from triage.metrics import record_workflow_run
from triage.models import utcnow
from triage.prompts import prepare_weekly_summary_prompt
from triage.store import IssueStore

logger = logging.getLogger("summary-agent")


@dataclass
class SummaryReport:
    status: str
    issue_count: int = 0
    summary_id: Optional[int] = None
    summary: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "issue_count": self.issue_count,
            "summary_id": self.summary_id,
            "summary": self.summary,
        }


class SummarizationWorkflow:
    def __init__(self, store: IssueStore, generator: GenerationClient, settings: TriageSettings):
        self.store = store
        self.generator = generator
        self.settings = settings

    def run(self, now: Optional[datetime.datetime] = None) -> SummaryReport:
        logger.info("Summarization agent started...")
        now = now or utcnow()
        since = now - datetime.timedelta(days=self.settings.summary_window_days)
        issues = self.store.issues_created_since(since)

        if not issues:
            logger.info(f"No new issues found in the last {self.settings.summary_window_days} days.")
            record_workflow_run("summary", "empty")
            return SummaryReport(status="empty")

        logger.info(f"Found {len(issues)} issues to summarize...")
        prompt = prepare_weekly_summary_prompt(issues, self.settings.summary_window_days)
        summary = self.generator.generate(prompt)
        if not summary:
            record_workflow_run("summary", "invalid_output")
            raise InvalidModelOutputError("Model returned an empty weekly summary")

        row = self.store.add_weekly_summary(summary, len(issues))
        logger.info(f"weekly_summary_saved summary_id={row.id} issue_count={len(issues)}")
        record_workflow_run("summary", "ok")
        return SummaryReport(status="created", issue_count=len(issues), summary_id=row.id, summary=summary)
