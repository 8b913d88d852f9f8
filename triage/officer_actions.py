"""
Officer actions on a single issue.

Status/category/severity updates, accepting the AI suggestion, corrections
(update + feedback record), and the two free-text helpers: a field action plan
and a formal citizen reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from triage.errors import InvalidModelOutputError, IssueValidationError
from triage.feedback import FeedbackRecorder
from triage.llm_provider import GenerationClient
from triage.models import Issue
from triage.prompts import prepare_action_plan_prompt, prepare_reply_prompt
from triage.store import IssueStore, validate_issue_fields

logger = logging.getLogger("officer-actions")


@dataclass
class CorrectionResult:
    issue: Issue
    feedback_logged: bool


class OfficerAssistant:
    def __init__(self, store: IssueStore, generator: GenerationClient, feedback: FeedbackRecorder):
        self.store = store
        self.generator = generator
        self.feedback = feedback

    def update_issue(
        self,
        issue_id: int,
        status: Optional[str] = None,
        category: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Issue:
        if status is None and category is None and severity is None:
            raise IssueValidationError(
                {"status": ["Provide at least one of status, category, severity"]},
                "Nothing to update",
            )
        issue = self.store.update_issue(issue_id, status=status, category=category, severity=severity)
        logger.info(f"issue_updated issue_id={issue_id} status={status} category={category} severity={severity}")
        return issue

    def accept_suggestion(self, issue_id: int, category: str, severity: str) -> Issue:
        """Apply the AI-suggested category and severity as they were shown."""
        validate_issue_fields(category=category, severity=severity)
        return self.store.update_issue(issue_id, category=category, severity=severity)

    def submit_correction(
        self,
        issue_id: int,
        *,
        original_category: Optional[str],
        original_severity: Optional[str],
        corrected_category: str,
        corrected_severity: str,
        status: Optional[str] = None,
    ) -> CorrectionResult:
        """
        Save the officer's values, then record what the AI had suggested.

        The issue update is the primary action. The feedback write happens
        afterwards and its failure never undoes or fails the update.
        """
        issue = self.store.update_issue(
            issue_id,
            status=status,
            category=corrected_category,
            severity=corrected_severity,
        )
        logged = self.feedback.record(
            issue_id,
            original_category=original_category,
            original_severity=original_severity,
            corrected_category=corrected_category,
            corrected_severity=corrected_severity,
        )
        return CorrectionResult(issue=issue, feedback_logged=logged)

    def suggest_action_plan(self, issue: Issue) -> str:
        plan = self.generator.generate(prepare_action_plan_prompt(issue))
        if not plan:
            raise InvalidModelOutputError("Model returned an empty action plan")
        return plan

    def draft_reply(self, issue: Issue) -> str:
        reply = self.generator.generate(prepare_reply_prompt(issue))
        if not reply:
            raise InvalidModelOutputError("Model returned an empty reply")
        return reply
