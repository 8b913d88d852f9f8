"""
Citizen complaint submission.

    validate form -> store photo (empty or oversized is a 400)
                  -> (sync mode) embed "title. description"
                  -> insert issue (status "new")

A failure after the photo is written removes it again.

In "queue" mode the issue is inserted without an embedding together with a
pending embedding-queue entry; the queue worker fills the vector in later.
The two modes are alternatives chosen by SUBMISSION_EMBEDDING_MODE, never
combined for one issue.

Validation failures raise IssueValidationError with one message list per field,
which the API returns as a 400.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from triage.config import DESCRIPTION_MIN_CHARS, TITLE_MIN_CHARS, TriageSettings
from triage.embedding_queue import embedding_text
from triage.errors import IssueValidationError, PersistenceError, ProviderError
from triage.llm_provider import EmbeddingClient
from triage.metrics import record_workflow_run
from triage.models import Issue
from triage.storage import LocalImageStore
from triage.store import IssueStore

logger = logging.getLogger("complaints")

SUBMISSION_MODES = ("sync", "queue")


class ComplaintSubmission(BaseModel):
    title: str = Field(..., min_length=TITLE_MIN_CHARS)
    description: str = Field(..., min_length=DESCRIPTION_MIN_CHARS)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        name = str(err["loc"][0]) if err.get("loc") else "__root__"
        errors.setdefault(name, []).append(err["msg"])
    return errors


def validate_image(content_type: Optional[str], filename: Optional[str]) -> dict[str, list[str]]:
    if not filename:
        return {"image": ["Image is required"]}
    if not (content_type or "").lower().startswith("image/"):
        return {"image": ["File must be an image"]}
    return {}


class ComplaintService:
    def __init__(
        self,
        store: IssueStore,
        embedder: EmbeddingClient,
        images: LocalImageStore,
        settings: TriageSettings,
    ):
        self.store = store
        self.embedder = embedder
        self.images = images
        self.settings = settings
        if settings.submission_embedding_mode not in SUBMISSION_MODES:
            raise ValueError(
                f"SUBMISSION_EMBEDDING_MODE must be one of {SUBMISSION_MODES}, "
                f"got {settings.submission_embedding_mode!r}"
            )

    def validate(self, form: dict, content_type: Optional[str], filename: Optional[str]) -> ComplaintSubmission:
        errors: dict[str, list[str]] = {}
        submission = None
        try:
            submission = ComplaintSubmission.model_validate(form)
        except ValidationError as exc:
            errors.update(field_errors(exc))
        errors.update(validate_image(content_type, filename))
        if errors:
            raise IssueValidationError(errors, "Invalid complaint")
        return submission

    def submit(
        self,
        form: dict,
        image: BinaryIO,
        content_type: Optional[str],
        filename: Optional[str],
    ) -> Issue:
        submission = self.validate(form, content_type, filename)
        queued = self.settings.submission_embedding_mode == "queue"

        # Size and emptiness are checked while the photo is written, so a bad
        # upload is refused before any model call.
        image_url = self.images.save(image, content_type, filename)

        embedding = None
        if not queued:
            try:
                embedding = self.embedder.embed(embedding_text(submission.title, submission.description))
            except ProviderError:
                self.images.discard(image_url)
                record_workflow_run("submission", "embed_failed")
                raise

        try:
            issue = self.store.create_issue(
                title=submission.title,
                description=submission.description,
                latitude=submission.latitude,
                longitude=submission.longitude,
                image_url=image_url,
                embedding=embedding,
                enqueue_embedding=queued,
            )
        except PersistenceError:
            self.images.discard(image_url)
            record_workflow_run("submission", "persist_failed")
            raise

        logger.info(
            f"complaint_submitted issue_id={issue.id} embedding_mode={'queue' if queued else 'sync'}"
        )
        record_workflow_run("submission", "queued" if queued else "ok")
        return issue
