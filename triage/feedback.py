"""
Feedback Loop: records officer corrections of AI suggestions.

Feedback is advisory telemetry for later audits, not transactional state. A
failed write is logged and counted, then dropped; it never fails the officer
action that triggered it.
"""

from __future__ import annotations

import logging
from typing import Optional

from triage.errors import PersistenceError
from triage.metrics import record_feedback_failure
from triage.store import IssueStore

logger = logging.getLogger("feedback-loop")


class FeedbackRecorder:
    def __init__(self, store: IssueStore):
        self.store = store

    def record(
        self,
        issue_id: int,
        original_category: Optional[str],
        original_severity: Optional[str],
        corrected_category: Optional[str],
        corrected_severity: Optional[str],
    ) -> bool:
        try:
            self.store.add_feedback(
                issue_id,
                original_category=original_category,
                original_severity=original_severity,
                corrected_category=corrected_category,
                corrected_severity=corrected_severity,
            )
        except PersistenceError as exc:
            logger.error(f"feedback_write_failed issue_id={issue_id} error={exc}")
            record_feedback_failure()
            return False
        logger.info(
            f"feedback_logged issue_id={issue_id} "
            f"category={original_category}->{corrected_category} "
            f"severity={original_severity}->{corrected_severity}"
        )
        return True
