"""
Classification Workflow: retrieval-augmented category/severity suggestion.

    issue (with embedding)
      -> similar past issues (Similarity Index)
      -> prompt
      -> JSON model output
      -> schema validation
      -> category/severity written to the issue

Model output is untrusted input. Nothing is written until the response passes
validation, and a failed validation never falls back to a default category:
a confident wrong label misleads officers more than no label.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from triage.config import TriageSettings
from triage.errors import InvalidModelOutputError, IssueValidationError, PersistenceError
from triage.llm_provider import GenerationClient
from triage.metrics import record_workflow_run
from triage.models import CATEGORY_VALUES, SEVERITY_VALUES
from triage.prompts import prepare_classification_prompt
from triage.similarity import SimilarityIndex, SimilarityMatch
from triage.store import IssueStore

logger = logging.getLogger("classification")


def _canonical(value, allowed: list[str], field_name: str) -> str:
    cleaned = " ".join(str(value or "").split()).lower()
    for option in allowed:
        if option.lower() == cleaned:
            return option
    raise ValueError(f"{field_name} {value!r} is not one of {allowed}")


class ClassificationOutput(BaseModel):
    category: str
    severity: str
    explanation: str

    @field_validator("category", mode="before")
    @classmethod
    def _check_category(cls, value):
        return _canonical(value, CATEGORY_VALUES, "category")

    @field_validator("severity", mode="before")
    @classmethod
    def _check_severity(cls, value):
        return _canonical(value, SEVERITY_VALUES, "severity")

    @field_validator("explanation")
    @classmethod
    def _check_explanation(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("explanation must not be empty")
        return value


@dataclass
class ClassificationResult:
    issue_id: int
    category: str
    severity: str
    explanation: str
    similar_issues: list[SimilarityMatch] = field(default_factory=list)
    persisted: bool = True
    persist_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "issue_id": self.issue_id,
            "analysis": {
                "category": self.category,
                "severity": self.severity,
                "explanation": self.explanation,
            },
            "similar_issues": [m.to_dict() for m in self.similar_issues],
            "persisted": self.persisted,
        }


def parse_classification(payload: dict) -> ClassificationOutput:
    try:
        return ClassificationOutput.model_validate(payload)
    except ValidationError as exc:
        raise InvalidModelOutputError(f"Classification output failed validation: {exc}") from exc


class ClassificationWorkflow:
    def __init__(
        self,
        store: IssueStore,
        index: SimilarityIndex,
        generator: GenerationClient,
        settings: TriageSettings,
    ):
        self.store = store
        self.index = index
        self.generator = generator
        self.settings = settings

    def classify(self, issue_id: int) -> ClassificationResult:
        issue = self.store.get_issue(issue_id)
        if issue.embedding is None:
            raise IssueValidationError(
                {"embedding": ["Issue has no embedding yet; it is still queued."]},
                "Issue cannot be classified yet",
            )

        # Ask for one extra so dropping the self-match still leaves top_k.
        matches = self.index.search(
            issue.embedding,
            self.settings.classify_match_threshold,
            self.settings.classify_match_count + 1,
        )
        similar = [m for m in matches if m.issue.id != issue.id][: self.settings.classify_match_count]

        prompt = prepare_classification_prompt(issue, similar)
        try:
            output = parse_classification(self.generator.generate_json(prompt))
        except InvalidModelOutputError:
            record_workflow_run("classification", "invalid_output")
            logger.warning(f"classification_invalid_output issue_id={issue_id}")
            raise

        result = ClassificationResult(
            issue_id=issue.id,
            category=output.category,
            severity=output.severity,
            explanation=output.explanation,
            similar_issues=similar,
        )

        try:
            self.store.apply_classification(issue.id, output.category, output.severity)
        except PersistenceError as exc:
            # The analysis itself succeeded; hand it back instead of discarding it.
            logger.error(f"classification_persist_failed issue_id={issue_id} error={exc}")
            result.persisted = False
            result.persist_error = str(exc)
            record_workflow_run("classification", "persist_failed")
            return result

        logger.info(
            f"classification_ok issue_id={issue_id} category={output.category} "
            f"severity={output.severity} context={len(similar)}"
        )
        record_workflow_run("classification", "ok")
        return result
